import pytest

from errors import InvalidState
from models import RequisitionStatus as S
from workflow import TERMINAL, Event, allowed_from, is_terminal, next_status


@pytest.mark.parametrize("current,event,expected", [
    (None, Event.SUBMIT, S.PENDING),
    (S.PENDING, Event.AMEND, S.PENDING),
    (S.PENDING, Event.CONFIRM, S.CONFIRMED),
    (S.PENDING, Event.REJECT, S.REJECTED),
    (S.CONFIRMED, Event.REJECT, S.REJECTED),
    (S.CONFIRMED, Event.APPROVE, S.APPROVED),
    (S.ISSUED, Event.CONFIRM_HANDOVER, S.DELIVERED),
    (S.DELIVERED, Event.CONFIRM_FINAL_RECEIPT, S.COMPLETED),
])
def test_allowed_transitions(current, event, expected):
    assert next_status(current, event) == expected


def test_issue_target_depends_on_receiver():
    assert next_status(S.APPROVED, Event.ISSUE, via_driver=True) == S.ISSUED
    assert next_status(S.APPROVED, Event.ISSUE, via_driver=False) == S.DELIVERED


def test_wrong_status_raises_with_context():
    with pytest.raises(InvalidState) as exc:
        next_status(S.DELIVERED, Event.ISSUE)

    detail = exc.value.to_detail()
    assert detail["error_code"] == "INVALID_STATE"
    assert detail["current_status"] == "Delivered"
    assert detail["expected_status"] == ["Approved"]


def test_reject_is_allowed_from_two_states():
    assert set(allowed_from(Event.REJECT)) == {S.PENDING, S.CONFIRMED}


@pytest.mark.parametrize("terminal", sorted(TERMINAL, key=lambda status: status.value))
def test_terminal_states_accept_nothing(terminal):
    assert is_terminal(terminal)
    for event in Event:
        with pytest.raises(InvalidState) as exc:
            next_status(terminal, event)
        assert exc.value.message == f"Requisition is already {terminal.value} and can no longer change"


def test_wrong_but_open_status_keeps_default_message():
    with pytest.raises(InvalidState) as exc:
        next_status(S.PENDING, Event.APPROVE)
    assert exc.value.message == "Requisition is Pending, expected Confirmed"
