from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Literal, Protocol

logger = logging.getLogger(__name__)

NotificationKind = Literal["reminder_sent", "reminder_failed"]


@dataclass(frozen=True)
class ReminderNotification:
    kind: NotificationKind
    invoice_id: str
    reminder_id: str
    message: str
    created_at: datetime


class NotificationSink(Protocol):
    def emit(self, notification: ReminderNotification) -> None: ...


class InMemoryNotificationLog:
    def __init__(self, *, max_entries: int = 500) -> None:
        self._lock = Lock()
        self._max_entries = max_entries
        self._entries: list[ReminderNotification] = []

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()

    def emit(self, notification: ReminderNotification) -> None:
        logger.info(
            "reminder notification %s invoice=%s reminder=%s",
            notification.kind,
            notification.invoice_id,
            notification.reminder_id,
        )
        with self._lock:
            self._entries.append(notification)
            if len(self._entries) > self._max_entries:
                del self._entries[: len(self._entries) - self._max_entries]

    def recent(self, limit: int = 50) -> list[ReminderNotification]:
        with self._lock:
            return list(reversed(self._entries[-limit:]))
