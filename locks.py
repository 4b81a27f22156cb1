from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

import config
from domain import ConcurrencyConflict

logger = logging.getLogger(__name__)

LockKey = Tuple[str, date]


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.users = 0


class KeyedLocks:
    """
    One re-entrant lock per (doctor, date).

    Bookings, schedule edits, appointment transitions and leave approvals for
    the same doctor and day serialize on the same lock, so a check and the
    write that depends on it can never interleave with another writer.

    An entry lives only while some thread holds or waits for it, so the
    table stays as small as the number of keys currently in use.
    """

    def __init__(self, timeout: Optional[float] = None) -> None:
        self.timeout = config.LOCK_TIMEOUT_SECONDS if timeout is None else timeout
        self._guard = threading.Lock()
        self._locks: Dict[LockKey, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, key: LockKey) -> threading.RLock:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _Entry()
            entry.users += 1
            return entry.lock

    def _checkin(self, key: LockKey) -> None:
        with self._guard:
            entry = self._locks[key]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[key]

    @contextmanager
    def hold(self, doctor_id: str, day: date) -> Iterator[None]:
        with self.hold_many(doctor_id, [day]):
            yield

    @contextmanager
    def hold_many(self, doctor_id: str, days: Iterable[date]) -> Iterator[None]:
        # Sorted acquisition keeps two multi-day holders from deadlocking.
        keys = sorted({(doctor_id, d) for d in days}, key=lambda k: k[1])
        checked_out: List[LockKey] = []
        acquired: List[threading.RLock] = []
        try:
            for key in keys:
                lock = self._checkout(key)
                checked_out.append(key)
                if not lock.acquire(timeout=self.timeout):
                    logger.warning(
                        "Timed out waiting for lock doctor=%s date=%s", key[0], key[1]
                    )
                    raise ConcurrencyConflict(
                        f"Schedule for doctor {key[0]} on {key[1]} is busy, retry"
                    )
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
            for key in checked_out:
                self._checkin(key)
