from __future__ import annotations

from datetime import date, datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

InvoiceStatus = Literal["draft", "sent", "partial", "paid", "overdue"]
ContactChannel = Literal["email", "sms"]
ReminderType = Literal["before_due", "on_due", "after_due"]
ReminderStatus = Literal["scheduled", "pending", "sent", "failed", "cancelled"]

REMINDER_TYPES: tuple[ReminderType, ...] = ("before_due", "on_due", "after_due")
MINUTES_PER_DAY = 24 * 60

DEFAULT_TEMPLATES: dict[str, str] = {
    "before_due": "reminder-before-due",
    "on_due": "reminder-on-due",
    "after_due": "reminder-after-due",
}


def _normalize_offsets(value: list[int]) -> list[int]:
    normalized: set[int] = set()
    for raw in value:
        offset = int(raw)
        if offset <= 0:
            raise ValueError("reminder offsets must be positive day counts")
        normalized.add(offset)
    return sorted(normalized)


class BusinessHours(BaseModel):
    enabled: bool = False
    start_minute: int = Field(default=9 * 60, ge=0, le=MINUTES_PER_DAY)
    end_minute: int = Field(default=17 * 60, ge=0, le=MINUTES_PER_DAY)
    timezone: str = Field(default="UTC", min_length=1, max_length=64)

    @model_validator(mode="after")
    def _validate_window(self) -> BusinessHours:
        if self.end_minute <= self.start_minute:
            raise ValueError("business hours end_minute must be greater than start_minute")
        return self


class ReminderPolicy(BaseModel):
    enabled: bool = True
    before_due_offsets: list[int] = Field(default_factory=lambda: [7, 3, 1])
    after_due_offsets: list[int] = Field(default_factory=lambda: [1, 7, 14, 30])
    max_reminders_per_invoice: int = Field(default=5, ge=1)
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    templates: dict[ReminderType, str] = Field(default_factory=lambda: dict(DEFAULT_TEMPLATES))

    @field_validator("before_due_offsets", "after_due_offsets")
    @classmethod
    def _dedupe_offsets(cls, value: list[int]) -> list[int]:
        return _normalize_offsets(value)

    @field_validator("templates")
    @classmethod
    def _normalize_templates(cls, value: dict[str, str]) -> dict[str, str]:
        normalized: dict[str, str] = {}
        for key, raw_template in value.items():
            template_id = str(raw_template).strip()
            if not template_id:
                raise ValueError("template ids cannot be blank")
            normalized[key] = template_id
        return normalized


class ReminderHistoryEntry(BaseModel):
    reminder_id: str
    type: ReminderType
    offset_days: int | None = None
    sent_at: datetime
    message_id: str | None = None
    manual: bool = False


class InvoiceUpsertItem(BaseModel):
    invoice_id: str = Field(min_length=1, max_length=128)
    number: str = Field(min_length=1, max_length=64)
    client_name: str = Field(min_length=1, max_length=256)
    contact_channel: ContactChannel = "email"
    contact_target: str = Field(min_length=1, max_length=256)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    total: float = Field(ge=0)
    amount_paid: float = Field(default=0.0, ge=0)
    due_date: date | None = None
    status: InvoiceStatus = "sent"

    @field_validator("invoice_id", "number", "client_name", "contact_target")
    @classmethod
    def _normalize_text(cls, value: str) -> str:
        normalized = str(value).strip()
        if not normalized:
            raise ValueError("invoice fields cannot be blank")
        return normalized

    @field_validator("currency")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return value.strip().upper()

    @model_validator(mode="after")
    def _validate_amounts(self) -> InvoiceUpsertItem:
        if self.amount_paid > self.total:
            raise ValueError("amount_paid cannot exceed total")
        return self


class InvoiceUpsertRequest(BaseModel):
    invoices: list[InvoiceUpsertItem] = Field(min_length=1, max_length=500)


class InvoiceRecord(BaseModel):
    invoice_id: str
    number: str
    client_name: str
    contact_channel: ContactChannel
    contact_target: str
    currency: str
    total: float
    amount_paid: float
    balance_due: float
    due_date: date | None = None
    status: InvoiceStatus
    reminder_history: list[ReminderHistoryEntry] = Field(default_factory=list)
    updated_at: datetime


class InvoiceUpsertResponse(BaseModel):
    processed_count: int
    invoices: list[InvoiceRecord]


class PaymentRecordRequest(BaseModel):
    amount: float = Field(gt=0)
    paid_at: datetime | None = None


class StatusChangeRequest(BaseModel):
    status: InvoiceStatus


class DueDateChangeRequest(BaseModel):
    due_date: date


class ManualReminderRequest(BaseModel):
    type: ReminderType = "after_due"


class ReminderItem(BaseModel):
    reminder_id: str
    invoice_id: str
    type: ReminderType
    offset_days: int | None = None
    status: ReminderStatus
    attempts: int
    next_attempt_at: datetime
    last_attempt_at: datetime | None = None
    sent_at: datetime | None = None
    failed_at: datetime | None = None
    cancelled_at: datetime | None = None
    error: str | None = None
    reason: str | None = None
    rescheduled_reason: str | None = None
    message_id: str | None = None
    manual: bool = False
    created_at: datetime
    updated_at: datetime


class ReminderListResponse(BaseModel):
    invoice_id: str | None = None
    reminders: list[ReminderItem]


class ScheduleResponse(BaseModel):
    invoice_id: str
    created_count: int
    reminders: list[ReminderItem]


class CancelResponse(BaseModel):
    invoice_id: str
    cancelled_count: int


class EventResponse(BaseModel):
    invoice_id: str
    status: InvoiceStatus
    cancelled_count: int = 0
    created_count: int = 0


class DeriveResponse(BaseModel):
    invoice_count: int
    created_count: int


class ProcessDueResponse(BaseModel):
    run_at: datetime
    skipped: bool
    due_count: int
    sent_count: int
    retried_count: int
    failed_count: int
    cancelled_count: int
    deferred_count: int
    error_count: int


class ReminderSummaryResponse(BaseModel):
    scheduled: int
    pending: int
    sent: int
    failed: int
    cancelled: int
    sent_today: int
    upcoming_7d: int


class NotificationItem(BaseModel):
    kind: Literal["reminder_sent", "reminder_failed"]
    invoice_id: str
    reminder_id: str
    message: str
    created_at: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationItem]
