from __future__ import annotations

import threading
from datetime import date
from typing import Dict, Tuple


class TokenAllocator:
    """
    Sequential per-doctor, per-date token numbers starting at 1.

    Tokens are never released: a cancelled appointment keeps its number so
    audit trails stay intact and nobody is renumbered mid-queue.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._issued: Dict[Tuple[str, date], int] = {}

    def reset(self) -> None:
        with self._lock:
            self._issued.clear()

    def allocate(self, doctor_id: str, day: date) -> int:
        key = (doctor_id, day)
        with self._lock:
            token = self._issued.get(key, 0) + 1
            self._issued[key] = token
        return token

    def peek(self, doctor_id: str, day: date) -> int:
        """Next token for display only; never use it to allocate."""
        with self._lock:
            return self._issued.get((doctor_id, day), 0) + 1
