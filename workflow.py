"""
Requisition transition table.

next_status() is the only place a new status value is produced. Every
transition in services.py asks it for the target status, which also
enforces the precondition status.
"""

from enum import Enum
from typing import Dict, Optional, Tuple

from errors import InvalidState
from models import RequisitionStatus


class Event(str, Enum):
    SUBMIT = "submit"
    AMEND = "amend"
    CONFIRM = "confirm"
    REJECT = "reject"
    APPROVE = "approve"
    ISSUE = "issue"
    CONFIRM_HANDOVER = "confirmHandover"
    CONFIRM_FINAL_RECEIPT = "confirmFinalReceipt"


S = RequisitionStatus

# (from status, event) -> target; issuance has two targets picked by receiver type
TRANSITIONS: Dict[Tuple[Optional[RequisitionStatus], Event], Tuple[RequisitionStatus, ...]] = {
    (None, Event.SUBMIT): (S.PENDING,),
    (S.PENDING, Event.AMEND): (S.PENDING,),
    (S.PENDING, Event.CONFIRM): (S.CONFIRMED,),
    (S.PENDING, Event.REJECT): (S.REJECTED,),
    (S.CONFIRMED, Event.REJECT): (S.REJECTED,),
    (S.CONFIRMED, Event.APPROVE): (S.APPROVED,),
    (S.APPROVED, Event.ISSUE): (S.ISSUED, S.DELIVERED),
    (S.ISSUED, Event.CONFIRM_HANDOVER): (S.DELIVERED,),
    (S.DELIVERED, Event.CONFIRM_FINAL_RECEIPT): (S.COMPLETED,),
}

TERMINAL = frozenset({S.REJECTED, S.COMPLETED})


def allowed_from(event: Event):
    """Statuses from which the event may fire"""
    return tuple(source for (source, ev) in TRANSITIONS if ev == event and source is not None)


def next_status(current: Optional[RequisitionStatus], event: Event, via_driver: bool = False) -> RequisitionStatus:
    """
    Resolve the status an event moves a requisition to.

    Raises InvalidState when the event is not allowed from the current
    status. For issuance, via_driver selects Issued (a driver carries the
    goods and a handover follows) over Delivered (received directly).
    """
    targets = TRANSITIONS.get((current, event))
    if targets is None:
        if current is not None and is_terminal(current):
            raise InvalidState(
                current,
                allowed_from(event),
                f"Requisition is already {current.value} and can no longer change",
            )
        raise InvalidState(current, allowed_from(event))
    if event == Event.ISSUE:
        return S.ISSUED if via_driver else S.DELIVERED
    return targets[0]


def is_terminal(status: RequisitionStatus) -> bool:
    return status in TERMINAL
