from __future__ import annotations

import logging
from dataclasses import asdict

from fastapi import APIRouter, HTTPException, Query, status

from .config import Settings, get_settings
from .events import InMemoryNotificationLog
from .invoices import InMemoryInvoiceStore, InvoiceNotFoundError
from .ledger import ReminderLedger, ReminderRecord, create_reminder_ledger
from .models import (
    CancelResponse,
    DeriveResponse,
    DueDateChangeRequest,
    EventResponse,
    InvoiceRecord,
    InvoiceUpsertRequest,
    InvoiceUpsertResponse,
    ManualReminderRequest,
    NotificationItem,
    NotificationListResponse,
    PaymentRecordRequest,
    ProcessDueResponse,
    ReminderItem,
    ReminderListResponse,
    ReminderPolicy,
    ReminderSummaryResponse,
    ScheduleResponse,
    StatusChangeRequest,
)
from .notifier import HttpNotifier, NotificationChannel, StubNotifier
from .orchestrator import (
    DueDateChanged,
    EventOutcome,
    InvoiceDeleted,
    InvoiceEvent,
    ManualReminderRequested,
    PaymentRecorded,
    ReminderOrchestrator,
    StatusChanged,
)
from .policy_store import PolicyStore, create_policy_store
from .scheduler import ReminderScheduler

logger = logging.getLogger(__name__)

_settings = get_settings()
router = APIRouter(prefix=f"{_settings.api_prefix}/reminders", tags=["reminders"])


def _create_notifier(settings: Settings) -> NotificationChannel:
    if settings.notifier_sender_type == "http":
        return HttpNotifier(
            base_url=settings.notifier_api_base_url,
            api_key=settings.notifier_api_key,
            channels=settings.notifier_channels,
            timeout_seconds=settings.notifier_timeout_seconds,
        )
    return StubNotifier(enabled=settings.notifier_enabled, channel=settings.notifier_channel)


policy_store: PolicyStore = create_policy_store(
    backend=_settings.policy_store_backend,
    database_url=_settings.database_url,
)
reminder_ledger: ReminderLedger = create_reminder_ledger(
    backend=_settings.reminder_store_backend,
    database_url=_settings.database_url,
)
invoice_store = InMemoryInvoiceStore()
notification_log = InMemoryNotificationLog()
reminder_scheduler = ReminderScheduler(
    ledger=reminder_ledger,
    policy_store=policy_store,
    invoices=invoice_store,
    channel=_create_notifier(_settings),
    notifications=notification_log,
    max_retries=max(1, _settings.reminder_max_retries),
)
orchestrator = ReminderOrchestrator(reminder_scheduler, invoice_store)


def reset_runtime_state_for_tests() -> None:
    policy_store.reset()
    reminder_ledger.reset()
    invoice_store.reset()
    notification_log.reset()
    reminder_scheduler.channel = _create_notifier(_settings)


def _to_item(record: ReminderRecord) -> ReminderItem:
    return ReminderItem(**asdict(record))


def _require_invoice(invoice_id: str) -> InvoiceRecord:
    try:
        return invoice_store.require(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc


def _dispatch_event(event: InvoiceEvent) -> EventOutcome:
    try:
        return orchestrator.handle(event)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {event.invoice_id}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _event_response(outcome: EventOutcome) -> EventResponse:
    invoice = _require_invoice(outcome.invoice_id)
    return EventResponse(
        invoice_id=invoice.invoice_id,
        status=invoice.status,
        cancelled_count=outcome.cancelled_count,
        created_count=len(outcome.created),
    )


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


@router.get("/policy", response_model=ReminderPolicy)
def get_policy() -> ReminderPolicy:
    return policy_store.get()


@router.put("/policy", response_model=ReminderPolicy)
def update_policy(payload: ReminderPolicy) -> ReminderPolicy:
    policy_store.set(payload)
    logger.info(
        "reminder policy updated: enabled=%s before=%s after=%s max=%d",
        payload.enabled,
        payload.before_due_offsets,
        payload.after_due_offsets,
        payload.max_reminders_per_invoice,
    )
    return policy_store.get()


# ---------------------------------------------------------------------------
# Invoice events
# ---------------------------------------------------------------------------


@router.post("/invoices/upsert", response_model=InvoiceUpsertResponse)
def upsert_invoices(payload: InvoiceUpsertRequest) -> InvoiceUpsertResponse:
    previous = {item.invoice_id: invoice_store.get(item.invoice_id) for item in payload.invoices}
    upserted = invoice_store.upsert_invoices(payload)

    for record in upserted:
        before = previous.get(record.invoice_id)
        if before is None:
            reminder_scheduler.schedule_for_invoice(record.invoice_id)
        elif record.status == "paid" and before.status != "paid":
            orchestrator.handle(StatusChanged(record.invoice_id, before.status, record.status))
        elif record.due_date != before.due_date:
            orchestrator.handle(DueDateChanged(record.invoice_id))
        elif before.status != record.status:
            orchestrator.handle(StatusChanged(record.invoice_id, before.status, record.status))

    invoices = [_require_invoice(record.invoice_id) for record in upserted]
    return InvoiceUpsertResponse(processed_count=len(invoices), invoices=invoices)


@router.get("/invoices/{invoice_id}", response_model=InvoiceRecord)
def get_invoice(invoice_id: str) -> InvoiceRecord:
    return _require_invoice(invoice_id)


@router.post("/invoices/{invoice_id}/payments", response_model=EventResponse)
def record_payment(invoice_id: str, payload: PaymentRecordRequest) -> EventResponse:
    try:
        invoice_store.record_payment(invoice_id, amount=payload.amount, paid_at=payload.paid_at)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return _event_response(_dispatch_event(PaymentRecorded(invoice_id)))


@router.post("/invoices/{invoice_id}/status", response_model=EventResponse)
def change_status(invoice_id: str, payload: StatusChangeRequest) -> EventResponse:
    try:
        previous, _ = invoice_store.set_status(invoice_id, payload.status)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return _event_response(_dispatch_event(StatusChanged(invoice_id, previous, payload.status)))


@router.post("/invoices/{invoice_id}/due-date", response_model=EventResponse)
def change_due_date(invoice_id: str, payload: DueDateChangeRequest) -> EventResponse:
    try:
        invoice_store.set_due_date(invoice_id, payload.due_date)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return _event_response(_dispatch_event(DueDateChanged(invoice_id)))


@router.delete("/invoices/{invoice_id}", response_model=CancelResponse)
def delete_invoice(invoice_id: str) -> CancelResponse:
    if not invoice_store.delete(invoice_id):
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}")
    outcome = orchestrator.handle(InvoiceDeleted(invoice_id))
    return CancelResponse(invoice_id=invoice_id, cancelled_count=outcome.cancelled_count)


# ---------------------------------------------------------------------------
# Reminder commands
# ---------------------------------------------------------------------------


@router.get("/invoices/{invoice_id}/reminders", response_model=ReminderListResponse)
def list_invoice_reminders(invoice_id: str) -> ReminderListResponse:
    reminders = reminder_ledger.list_for_invoice(invoice_id)
    if not reminders:
        _require_invoice(invoice_id)
    return ReminderListResponse(invoice_id=invoice_id, reminders=[_to_item(value) for value in reminders])


@router.post("/invoices/{invoice_id}/schedule", response_model=ScheduleResponse)
def schedule_invoice_reminders(invoice_id: str) -> ScheduleResponse:
    try:
        created = reminder_scheduler.schedule_for_invoice(invoice_id)
    except InvoiceNotFoundError as exc:
        raise HTTPException(status_code=404, detail=f"invoice not found: {invoice_id}") from exc
    return ScheduleResponse(
        invoice_id=invoice_id,
        created_count=len(created),
        reminders=[_to_item(value) for value in created],
    )


@router.post("/invoices/{invoice_id}/cancel", response_model=CancelResponse)
def cancel_invoice_reminders(invoice_id: str) -> CancelResponse:
    cancelled = reminder_scheduler.cancel_for_invoice(invoice_id, reason="cancelled by request")
    return CancelResponse(invoice_id=invoice_id, cancelled_count=cancelled)


@router.post("/invoices/{invoice_id}/manual", response_model=ReminderItem, status_code=status.HTTP_201_CREATED)
def send_manual_reminder(invoice_id: str, payload: ManualReminderRequest | None = None) -> ReminderItem:
    request_payload = payload or ManualReminderRequest()
    outcome = _dispatch_event(ManualReminderRequested(invoice_id, request_payload.type))
    if outcome.manual is None:
        raise HTTPException(status_code=500, detail="manual reminder was not recorded")
    return _to_item(outcome.manual)


@router.post("/process-due", response_model=ProcessDueResponse)
def process_due_reminders() -> ProcessDueResponse:
    report = reminder_scheduler.process_due()
    return ProcessDueResponse(**asdict(report))


@router.post("/derive", response_model=DeriveResponse)
def derive_reminders() -> DeriveResponse:
    invoice_count = len(invoice_store.list_unpaid())
    created = reminder_scheduler.schedule_for_unpaid_invoices()
    return DeriveResponse(invoice_count=invoice_count, created_count=created)


@router.get("/upcoming", response_model=ReminderListResponse)
def list_upcoming_reminders(days: int = Query(default=7, ge=1, le=365)) -> ReminderListResponse:
    upcoming = reminder_scheduler.upcoming_reminders(days)
    return ReminderListResponse(reminders=[_to_item(value) for value in upcoming])


@router.get("/summary", response_model=ReminderSummaryResponse)
def get_reminder_summary() -> ReminderSummaryResponse:
    stats = reminder_scheduler.reminder_stats()
    return ReminderSummaryResponse(
        **asdict(stats),
        upcoming_7d=len(reminder_scheduler.upcoming_reminders(7)),
    )


@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(limit: int = Query(default=50, ge=1, le=500)) -> NotificationListResponse:
    return NotificationListResponse(
        notifications=[NotificationItem(**asdict(value)) for value in notification_log.recent(limit)]
    )
