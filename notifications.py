from __future__ import annotations

import logging
import threading
from typing import List, Optional, Protocol

from domain import NotificationIntent

logger = logging.getLogger(__name__)

APPOINTMENT_BOOKED = "appointment_booked"
APPOINTMENT_CANCELLED = "appointment_cancelled"
APPOINTMENT_CANCELLED_DUE_TO_LEAVE = "appointment_cancelled_due_to_leave"
APPOINTMENT_MISSED = "appointment_missed"
APPOINTMENT_RESCHEDULED = "appointment_rescheduled"


class NotificationSink(Protocol):
    def emit(self, intent: NotificationIntent) -> None: ...


class NotificationOutbox:
    """In-memory sink; the delivery collaborator drains it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: List[NotificationIntent] = []

    def emit(self, intent: NotificationIntent) -> None:
        with self._lock:
            self._pending.append(intent)
        logger.info("Notification %s queued for %s", intent.kind, intent.recipient)

    def pending(self, recipient: Optional[str] = None) -> List[NotificationIntent]:
        with self._lock:
            return [
                i for i in self._pending if recipient is None or i.recipient == recipient
            ]

    def drain(self) -> List[NotificationIntent]:
        with self._lock:
            intents, self._pending = self._pending, []
        return intents

    def reset(self) -> None:
        self.drain()
