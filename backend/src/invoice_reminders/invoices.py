from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from threading import Lock
from typing import Protocol

from .models import InvoiceRecord, InvoiceUpsertRequest, ReminderHistoryEntry
from .timing import coerce_utc, now_utc


class InvoiceNotFoundError(KeyError):
    """Raised when an operation references an invoice id that does not exist."""


class InvoiceRepository(Protocol):
    def get(self, invoice_id: str) -> InvoiceRecord | None: ...

    def update_by_id(self, invoice_id: str, **changes: object) -> InvoiceRecord | None: ...

    def list_unpaid(self) -> list[InvoiceRecord]: ...


@dataclass
class _InvoiceRecord:
    invoice_id: str
    number: str
    client_name: str
    contact_channel: str
    contact_target: str
    currency: str
    total: float
    amount_paid: float
    balance_due: float
    due_date: date | None
    status: str
    updated_at: datetime
    last_payment_at: datetime | None = None
    reminder_history: list[ReminderHistoryEntry] = field(default_factory=list)


_UPDATABLE_FIELDS = frozenset({"status", "due_date", "reminder_history"})


class InMemoryInvoiceStore:
    """Thin invoice store used by the API and tests; reminder logic only needs the protocol."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._invoices: dict[str, _InvoiceRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._invoices.clear()

    def upsert_invoices(self, payload: InvoiceUpsertRequest) -> list[InvoiceRecord]:
        now = now_utc()
        upserted: list[InvoiceRecord] = []

        with self._lock:
            for item in payload.invoices:
                record = self._invoices.get(item.invoice_id)
                if record is None:
                    record = _InvoiceRecord(
                        invoice_id=item.invoice_id,
                        number=item.number,
                        client_name=item.client_name,
                        contact_channel=item.contact_channel,
                        contact_target=item.contact_target,
                        currency=item.currency,
                        total=self._round_amount(item.total),
                        amount_paid=self._round_amount(item.amount_paid),
                        balance_due=self._round_amount(item.total - item.amount_paid),
                        due_date=item.due_date,
                        status=item.status,
                        updated_at=now,
                    )
                    self._invoices[item.invoice_id] = record
                else:
                    record.number = item.number
                    record.client_name = item.client_name
                    record.contact_channel = item.contact_channel
                    record.contact_target = item.contact_target
                    record.currency = item.currency
                    record.total = self._round_amount(item.total)
                    record.amount_paid = self._round_amount(item.amount_paid)
                    record.balance_due = self._round_amount(record.total - record.amount_paid)
                    record.due_date = item.due_date
                    record.status = item.status
                    record.updated_at = now

                self._refresh_invoice_status(record, now)
                upserted.append(self._to_invoice_record(record))

        return upserted

    def get(self, invoice_id: str) -> InvoiceRecord | None:
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                return None
            self._refresh_invoice_status(record, now_utc())
            return self._to_invoice_record(record)

    def require(self, invoice_id: str) -> InvoiceRecord:
        invoice = self.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        return invoice

    def update_by_id(self, invoice_id: str, **changes: object) -> InvoiceRecord | None:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported invoice fields: {', '.join(sorted(unknown))}")
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                return None
            for field_name, value in changes.items():
                if field_name == "reminder_history":
                    value = list(value)  # type: ignore[call-overload]
                setattr(record, field_name, value)
            record.updated_at = now_utc()
            return self._to_invoice_record(record)

    def list_invoices(self) -> list[InvoiceRecord]:
        with self._lock:
            now = now_utc()
            records = sorted(self._invoices.values(), key=self._order_key)
            for record in records:
                self._refresh_invoice_status(record, now)
            return [self._to_invoice_record(record) for record in records]

    def list_unpaid(self) -> list[InvoiceRecord]:
        return [invoice for invoice in self.list_invoices() if invoice.status != "paid"]

    def record_payment(self, invoice_id: str, *, amount: float, paid_at: datetime | None = None) -> InvoiceRecord:
        now = now_utc()
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                raise InvoiceNotFoundError(invoice_id)
            record.amount_paid = self._round_amount(min(record.total, record.amount_paid + amount))
            record.balance_due = self._round_amount(max(record.total - record.amount_paid, 0))
            paid_at = coerce_utc(paid_at) if paid_at is not None else now
            if record.last_payment_at is None or paid_at > record.last_payment_at:
                record.last_payment_at = paid_at
            if record.status == "draft":
                record.status = "sent"
            record.updated_at = now
            self._refresh_invoice_status(record, now)
            return self._to_invoice_record(record)

    def set_status(self, invoice_id: str, status: str) -> tuple[str, InvoiceRecord]:
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                raise InvoiceNotFoundError(invoice_id)
            previous = record.status
            record.status = status
            record.updated_at = now_utc()
            return previous, self._to_invoice_record(record)

    def set_due_date(self, invoice_id: str, due_date: date) -> InvoiceRecord:
        with self._lock:
            record = self._invoices.get(invoice_id)
            if record is None:
                raise InvoiceNotFoundError(invoice_id)
            record.due_date = due_date
            record.updated_at = now_utc()
            self._refresh_invoice_status(record, record.updated_at)
            return self._to_invoice_record(record)

    def delete(self, invoice_id: str) -> bool:
        with self._lock:
            return self._invoices.pop(invoice_id, None) is not None

    def _refresh_invoice_status(self, record: _InvoiceRecord, now: datetime) -> None:
        if record.status == "draft":
            return

        if record.balance_due <= 0 or record.status == "paid":
            record.status = "paid"
            return

        if record.due_date is not None and now.date() > record.due_date:
            record.status = "overdue"
            return

        if record.amount_paid > 0:
            record.status = "partial"
            return

        record.status = "sent"

    def _to_invoice_record(self, record: _InvoiceRecord) -> InvoiceRecord:
        return InvoiceRecord(
            invoice_id=record.invoice_id,
            number=record.number,
            client_name=record.client_name,
            contact_channel=record.contact_channel,
            contact_target=record.contact_target,
            currency=record.currency,
            total=record.total,
            amount_paid=record.amount_paid,
            balance_due=record.balance_due,
            due_date=record.due_date,
            status=record.status,
            reminder_history=list(record.reminder_history),
            updated_at=record.updated_at,
        )

    def _order_key(self, record: _InvoiceRecord) -> tuple[date, str]:
        return (record.due_date or date.max, record.invoice_id)

    def _round_amount(self, value: float) -> float:
        return round(float(value), 2)
