"""
Sequential dispatch numbers: REQ-YYYY-NNNNNN.

- Year-scoped: the counter resets to 0 the first time it is used in a new year
- Zero padded to at least six digits (REQ-2024-1000000 is valid)
- Reset check and increment run in one transaction, retried while the
  database is locked
- Falls back to REQ-<epoch-millis> when the counter can't be reached, so
  submission is never blocked by numbering. Fallbacks handed out by one
  generator are strictly increasing, so two callers in the same
  millisecond still get different numbers
"""

import logging
import re
import sqlite3
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from models import CounterState
from store import Store

logger = logging.getLogger(__name__)

COUNTER_ID = "requisitionCounter"

FALLBACK_NUMBER = re.compile(r"^REQ-\d+$")


def format_dispatch_number(year: int, sequence: int) -> str:
    return f"REQ-{year}-{sequence:06d}"


def is_fallback_number(number: str) -> bool:
    return bool(FALLBACK_NUMBER.match(number or ""))


class DispatchNumberGenerator:
    def __init__(
        self,
        store: Store,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 5,
        retry_delay: float = 0.05,
    ):
        self.store = store
        self.clock = clock or datetime.now
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._fallback_lock = threading.Lock()
        self._last_fallback = 0

    def next(self) -> str:
        now = self.clock()
        try:
            sequence = self._increment(now.year)
        except sqlite3.Error as e:
            fallback = self.fallback()
            logger.error(f"Error generating sequential dispatch number, using {fallback}: {e}")
            return fallback
        return format_dispatch_number(now.year, sequence)

    def fallback(self) -> str:
        """REQ-<epoch-millis>, bumped past the last fallback this generator issued"""
        millis = int(self.clock().timestamp() * 1000)
        with self._fallback_lock:
            millis = max(millis, self._last_fallback + 1)
            self._last_fallback = millis
        return f"REQ-{millis}"

    def _increment(self, year: int) -> int:
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.store.transaction() as conn:
                    row = conn.execute(
                        "SELECT count, last_reset_year FROM counters WHERE id = ?", (COUNTER_ID,)
                    ).fetchone()

                    count = 0
                    if row is not None and row["last_reset_year"] >= year:
                        count = row["count"]
                    elif row is not None:
                        logger.info(f"Requisition counter reset for new year {year}")

                    count += 1
                    conn.execute(
                        """
                        INSERT INTO counters (id, count, last_reset_year) VALUES (?, ?, ?)
                        ON CONFLICT(id) DO UPDATE SET count = excluded.count, last_reset_year = excluded.last_reset_year
                        """,
                        (COUNTER_ID, count, max(year, row["last_reset_year"]) if row else year),
                    )
                    return count
            except sqlite3.OperationalError as e:
                if "locked" not in str(e) or attempt >= self.max_attempts:
                    raise
                logger.warning(f"Counter busy, retrying ({attempt}/{self.max_attempts})")
                time.sleep(self.retry_delay * attempt)

    def current(self) -> CounterState:
        row = self.store.connection().execute(
            "SELECT count, last_reset_year FROM counters WHERE id = ?", (COUNTER_ID,)
        ).fetchone()
        if row is None:
            return CounterState(count=0, lastResetYear=self.clock().year)
        return CounterState(count=row["count"], lastResetYear=row["last_reset_year"])

    def reset(self, value: int = 0) -> CounterState:
        """Admin reset; the next number issued is value + 1"""
        year = self.clock().year
        with self.store.transaction() as conn:
            conn.execute(
                """
                INSERT INTO counters (id, count, last_reset_year) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET count = excluded.count, last_reset_year = excluded.last_reset_year
                """,
                (COUNTER_ID, value, year),
            )
        logger.info(f"Requisition counter reset to {value}")
        return CounterState(count=value, lastResetYear=year)
