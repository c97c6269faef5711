from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from .invoices import InvoiceNotFoundError, InvoiceRepository
from .ledger import ReminderRecord
from .scheduler import ReminderScheduler

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentRecorded:
    invoice_id: str


@dataclass(frozen=True)
class StatusChanged:
    invoice_id: str
    from_status: str
    to_status: str


@dataclass(frozen=True)
class DueDateChanged:
    invoice_id: str


@dataclass(frozen=True)
class ManualReminderRequested:
    invoice_id: str
    reminder_type: str = "after_due"


@dataclass(frozen=True)
class InvoiceDeleted:
    invoice_id: str


InvoiceEvent = Union[PaymentRecorded, StatusChanged, DueDateChanged, ManualReminderRequested, InvoiceDeleted]


@dataclass
class EventOutcome:
    invoice_id: str
    cancelled_count: int = 0
    created: list[ReminderRecord] = field(default_factory=list)
    manual: ReminderRecord | None = None


class ReminderOrchestrator:
    """Translates invoice domain events into scheduler commands."""

    def __init__(self, scheduler: ReminderScheduler, invoices: InvoiceRepository) -> None:
        self._scheduler = scheduler
        self._invoices = invoices

    def handle(self, event: InvoiceEvent, *, now: datetime | None = None) -> EventOutcome:
        if isinstance(event, PaymentRecorded):
            return self._on_payment_recorded(event, now)
        if isinstance(event, StatusChanged):
            return self._on_status_changed(event, now)
        if isinstance(event, DueDateChanged):
            return self._on_due_date_changed(event, now)
        if isinstance(event, ManualReminderRequested):
            return self._on_manual_requested(event, now)
        if isinstance(event, InvoiceDeleted):
            cancelled = self._scheduler.cancel_for_invoice(event.invoice_id, reason="invoice deleted", now=now)
            return EventOutcome(invoice_id=event.invoice_id, cancelled_count=cancelled)
        raise TypeError(f"unsupported invoice event: {type(event).__name__}")

    def _on_payment_recorded(self, event: PaymentRecorded, now: datetime | None) -> EventOutcome:
        invoice = self._invoices.get(event.invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(event.invoice_id)
        if invoice.status != "paid":
            logger.info("partial payment on invoice %s; reminders left in place", event.invoice_id)
            return EventOutcome(invoice_id=event.invoice_id)
        cancelled = self._scheduler.cancel_for_invoice(event.invoice_id, reason="invoice paid", now=now)
        return EventOutcome(invoice_id=event.invoice_id, cancelled_count=cancelled)

    def _on_status_changed(self, event: StatusChanged, now: datetime | None) -> EventOutcome:
        if event.to_status == "paid":
            cancelled = self._scheduler.cancel_for_invoice(event.invoice_id, reason="invoice paid", now=now)
            return EventOutcome(invoice_id=event.invoice_id, cancelled_count=cancelled)
        if event.from_status == "draft" and event.to_status == "sent":
            created = self._scheduler.schedule_for_invoice(event.invoice_id, now=now)
            return EventOutcome(invoice_id=event.invoice_id, created=created)
        return EventOutcome(invoice_id=event.invoice_id)

    def _on_due_date_changed(self, event: DueDateChanged, now: datetime | None) -> EventOutcome:
        cancelled, created = self._scheduler.reschedule_for_invoice(event.invoice_id, now=now)
        return EventOutcome(invoice_id=event.invoice_id, cancelled_count=cancelled, created=created)

    def _on_manual_requested(self, event: ManualReminderRequested, now: datetime | None) -> EventOutcome:
        record = self._scheduler.send_manual_reminder(event.invoice_id, event.reminder_type, now=now)
        return EventOutcome(invoice_id=event.invoice_id, manual=record)
