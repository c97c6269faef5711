from __future__ import annotations

import logging
import threading
import time
from typing import Callable

from .scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

DEFAULT_PROCESS_INTERVAL_SECONDS = 60.0
DEFAULT_DERIVE_INTERVAL_SECONDS = 3600.0


class ReminderWorker:
    """Fixed-cadence polling loop driving ``process_due`` and periodic derivation.

    The worker runs on a daemon thread. ``stop()`` sets the stop event so the loop
    exits at the next wake-up; in-flight processing always finishes first.
    """

    def __init__(
        self,
        scheduler: ReminderScheduler,
        *,
        process_interval_seconds: float = DEFAULT_PROCESS_INTERVAL_SECONDS,
        derive_interval_seconds: float = DEFAULT_DERIVE_INTERVAL_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if process_interval_seconds <= 0:
            raise ValueError("process_interval_seconds must be positive")
        if derive_interval_seconds <= 0:
            raise ValueError("derive_interval_seconds must be positive")
        self._scheduler = scheduler
        self._process_interval = process_interval_seconds
        self._derive_interval = derive_interval_seconds
        self._monotonic = monotonic
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._next_derive_at: float | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> None:
        """One tick: derive when the derive interval has elapsed, then process due reminders."""
        current = self._monotonic()
        if self._next_derive_at is None or current >= self._next_derive_at:
            self._next_derive_at = current + self._derive_interval
            try:
                self._scheduler.schedule_for_unpaid_invoices()
            except Exception:
                logger.exception("reminder derivation run failed")

        try:
            report = self._scheduler.process_due()
        except Exception:
            logger.exception("reminder processing run failed")
            return
        if report.due_count:
            logger.info(
                "reminder run: due=%d sent=%d retried=%d failed=%d cancelled=%d deferred=%d errors=%d",
                report.due_count,
                report.sent_count,
                report.retried_count,
                report.failed_count,
                report.cancelled_count,
                report.deferred_count,
                report.error_count,
            )

    def run_forever(self) -> None:
        logger.info(
            "reminder worker started (process every %ss, derive every %ss)",
            self._process_interval,
            self._derive_interval,
        )
        while not self._stop_event.is_set():
            self.run_once()
            self._stop_event.wait(self._process_interval)
        logger.info("reminder worker stopped")

    def start(self) -> None:
        if self.running:
            logger.warning("reminder worker already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run_forever, name="reminder-worker", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        self._thread = None
