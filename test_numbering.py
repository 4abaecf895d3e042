import re
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from numbering import COUNTER_ID, DispatchNumberGenerator, format_dispatch_number


def set_counter(store, count, year):
    with store.transaction() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO counters (id, count, last_reset_year) VALUES (?, ?, ?)",
            (COUNTER_ID, count, year),
        )


def test_format_pads_to_six_digits():
    assert format_dispatch_number(2024, 7) == "REQ-2024-000007"
    assert format_dispatch_number(2024, 1000000) == "REQ-2024-1000000"


def test_first_number_of_a_fresh_store(store):
    numbers = DispatchNumberGenerator(store, clock=lambda: datetime(2025, 3, 1))
    assert numbers.next() == "REQ-2025-000001"
    assert numbers.next() == "REQ-2025-000002"


def test_width_is_a_minimum(store):
    set_counter(store, 999999, 2024)
    numbers = DispatchNumberGenerator(store, clock=lambda: datetime(2024, 12, 31))
    assert numbers.next() == "REQ-2024-1000000"


def test_resets_in_a_new_year(store):
    set_counter(store, 4821, 2023)
    numbers = DispatchNumberGenerator(store, clock=lambda: datetime(2025, 1, 2))

    assert numbers.next() == "REQ-2025-000001"
    state = numbers.current()
    assert state.count == 1
    assert state.lastResetYear == 2025


def test_admin_reset(store):
    numbers = DispatchNumberGenerator(store, clock=lambda: datetime(2025, 6, 1))
    numbers.next()
    numbers.reset(99)
    assert numbers.next() == "REQ-2025-000100"


def test_concurrent_numbers_are_unique(store):
    numbers = DispatchNumberGenerator(store, clock=lambda: datetime(2025, 6, 1))

    with ThreadPoolExecutor(max_workers=8) as pool:
        issued = list(pool.map(lambda _: numbers.next(), range(50)))

    assert len(set(issued)) == 50
    assert sorted(int(number.rsplit("-", 1)[1]) for number in issued) == list(range(1, 51))


def test_falls_back_to_timestamp_when_storage_fails(store):
    moment = datetime(2025, 6, 1, 12, 0, 0)
    numbers = DispatchNumberGenerator(store, clock=lambda: moment)
    with store.transaction() as conn:
        conn.execute("DROP TABLE counters")

    number = numbers.next()
    assert number == f"REQ-{int(moment.timestamp() * 1000)}"
    assert re.match(r"^REQ-\d+$", number)


def test_retries_while_locked(store, monkeypatch):
    numbers = DispatchNumberGenerator(store, clock=lambda: datetime(2025, 6, 1), retry_delay=0)
    original = store.transaction
    failures = {"left": 2}

    def flaky_transaction():
        if failures["left"]:
            failures["left"] -= 1
            raise sqlite3.OperationalError("database is locked")
        return original()

    monkeypatch.setattr(store, "transaction", flaky_transaction)
    assert numbers.next() == "REQ-2025-000001"
    assert failures["left"] == 0
