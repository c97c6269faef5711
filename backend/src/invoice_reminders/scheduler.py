"""Reminder derivation and dispatch.

The scheduler owns no storage of its own: it reads invoices and policy through the
injected collaborators, records every reminder transition in the ledger and delivers
through the notification channel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Iterable

from .events import NotificationKind, NotificationSink, ReminderNotification
from .invoices import InvoiceNotFoundError, InvoiceRepository
from .ledger import ReminderDraft, ReminderLedger, ReminderRecord
from .models import REMINDER_TYPES, InvoiceRecord, ReminderHistoryEntry, ReminderPolicy
from .notifier import DeliveryResult, NotificationChannel, mask_contact_target
from .policy_store import PolicyStore
from .timing import (
    backoff,
    coerce_utc,
    due_at,
    next_business_window,
    now_utc,
    target_at,
    within_business_hours,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
CANCELLABLE_STATUSES = frozenset({"scheduled", "pending"})
# Only a reschedule releases a key for re-derivation; any other cancellation keeps it.
RELEASING_CANCEL_REASONS = frozenset({"rescheduled"})

ReminderKey = tuple[str, str, "int | None"]


@dataclass(frozen=True)
class PlannedReminder:
    type: str
    offset_days: int | None
    target_at: datetime


@dataclass
class ProcessDueReport:
    run_at: datetime
    skipped: bool = False
    due_count: int = 0
    sent_count: int = 0
    retried_count: int = 0
    failed_count: int = 0
    cancelled_count: int = 0
    deferred_count: int = 0
    error_count: int = 0

    def record(self, outcome: str) -> None:
        if outcome == "sent":
            self.sent_count += 1
        elif outcome == "retried":
            self.retried_count += 1
        elif outcome == "failed":
            self.failed_count += 1
        elif outcome == "cancelled":
            self.cancelled_count += 1
        elif outcome == "deferred":
            self.deferred_count += 1


@dataclass(frozen=True)
class ReminderStats:
    scheduled: int
    pending: int
    sent: int
    failed: int
    cancelled: int
    sent_today: int


def _holds_key(reminder: ReminderRecord) -> bool:
    return reminder.status != "cancelled" or reminder.reason not in RELEASING_CANCEL_REASONS


def derive_reminder_keys(invoice: InvoiceRecord, policy: ReminderPolicy, now: datetime) -> list[PlannedReminder]:
    """Return the reminders the policy implies for ``invoice``, ignoring ledger state."""
    if not policy.enabled:
        return []
    if invoice.status == "paid" or invoice.due_date is None:
        return []

    zone = policy.business_hours.timezone
    planned: list[PlannedReminder] = []

    for offset in policy.before_due_offsets:
        target = target_at(invoice.due_date, "before_due", offset, zone)
        if target > now:
            planned.append(PlannedReminder(type="before_due", offset_days=offset, target_at=target))

    due_instant = due_at(invoice.due_date, zone)
    # Once the due instant passes without an on_due reminder, after_due reminders take over.
    if due_instant >= now:
        planned.append(PlannedReminder(type="on_due", offset_days=None, target_at=due_instant))

    for offset in policy.after_due_offsets:
        target = target_at(invoice.due_date, "after_due", offset, zone)
        planned.append(PlannedReminder(type="after_due", offset_days=offset, target_at=target))

    return sorted(planned, key=lambda value: (value.target_at, value.type))


class ReminderScheduler:
    def __init__(
        self,
        *,
        ledger: ReminderLedger,
        policy_store: PolicyStore,
        invoices: InvoiceRepository,
        channel: NotificationChannel,
        notifications: NotificationSink | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self._ledger = ledger
        self._policy_store = policy_store
        self._invoices = invoices
        self.channel = channel
        self._notifications = notifications
        self._max_retries = max_retries
        self._clock = clock or now_utc
        self._run_lock = Lock()
        self._derive_lock = Lock()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def _resolve_now(self, now: datetime | None) -> datetime:
        return coerce_utc(now) if now is not None else coerce_utc(self._clock())

    # Derivation

    def materialize_reminders(
        self,
        policy: ReminderPolicy,
        invoices: Iterable[InvoiceRecord],
        *,
        now: datetime | None = None,
    ) -> list[ReminderRecord]:
        current = self._resolve_now(now)
        created: list[ReminderRecord] = []
        with self._derive_lock:
            for invoice in invoices:
                created.extend(self._materialize_for_invoice(invoice, policy, current))
        return created

    def _materialize_for_invoice(
        self,
        invoice: InvoiceRecord,
        policy: ReminderPolicy,
        now: datetime,
    ) -> list[ReminderRecord]:
        planned = derive_reminder_keys(invoice, policy, now)
        if not planned:
            return []

        existing = self._ledger.list_for_invoice(invoice.invoice_id)
        live = [value for value in existing if value.status != "cancelled"]
        budget = policy.max_reminders_per_invoice - len(live)
        if budget <= 0:
            logger.info("max reminders reached for invoice %s", invoice.invoice_id)
            return []

        taken: set[ReminderKey] = {value.key for value in existing if not value.manual and _holds_key(value)}
        for entry in invoice.reminder_history:
            if not entry.manual:
                taken.add((invoice.invoice_id, entry.type, entry.offset_days))

        created: list[ReminderRecord] = []
        for plan in planned:
            key = (invoice.invoice_id, plan.type, plan.offset_days)
            if key in taken:
                continue
            if len(created) >= budget:
                logger.info("reminder cap leaves no room for %s on invoice %s", plan.type, invoice.invoice_id)
                break
            record = self._ledger.append(
                ReminderDraft(
                    invoice_id=invoice.invoice_id,
                    type=plan.type,
                    offset_days=plan.offset_days,
                    next_attempt_at=plan.target_at,
                )
            )
            taken.add(key)
            created.append(record)
            logger.info(
                "scheduled %s reminder %s for invoice %s at %s",
                plan.type,
                record.reminder_id,
                invoice.invoice_id,
                plan.target_at.isoformat(),
            )
        return created

    # Commands

    def schedule_for_invoice(self, invoice_id: str, *, now: datetime | None = None) -> list[ReminderRecord]:
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)
        policy = self._policy_store.get()
        return self.materialize_reminders(policy, [invoice], now=now)

    def schedule_for_unpaid_invoices(self, *, now: datetime | None = None) -> int:
        policy = self._policy_store.get()
        if not policy.enabled:
            logger.info("reminders disabled by policy; skipping derivation")
            return 0
        invoices = self._invoices.list_unpaid()
        created = self.materialize_reminders(policy, invoices, now=now)
        logger.info("derived %d reminders across %d unpaid invoices", len(created), len(invoices))
        return len(created)

    def cancel_for_invoice(
        self,
        invoice_id: str,
        *,
        reason: str = "cancelled",
        now: datetime | None = None,
    ) -> int:
        current = self._resolve_now(now)
        cancelled = 0
        for reminder in self._ledger.list_for_invoice(invoice_id):
            if reminder.status not in CANCELLABLE_STATUSES:
                continue
            if self._transition(reminder, status="cancelled", cancelled_at=current, reason=reason):
                cancelled += 1
        if cancelled:
            logger.info("cancelled %d reminders for invoice %s (%s)", cancelled, invoice_id, reason)
        return cancelled

    def reschedule_for_invoice(
        self,
        invoice_id: str,
        *,
        now: datetime | None = None,
    ) -> tuple[int, list[ReminderRecord]]:
        current = self._resolve_now(now)
        cancelled = self.cancel_for_invoice(invoice_id, reason="rescheduled", now=current)
        created = self.schedule_for_invoice(invoice_id, now=current)
        return cancelled, created

    def send_manual_reminder(
        self,
        invoice_id: str,
        reminder_type: str,
        *,
        now: datetime | None = None,
    ) -> ReminderRecord:
        """Deliver one reminder immediately, outside derivation and business hours."""
        if reminder_type not in REMINDER_TYPES:
            raise ValueError(f"unsupported reminder type: {reminder_type}")
        current = self._resolve_now(now)
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        policy = self._policy_store.get()
        # Created as pending so a concurrent process_due never claims it.
        record = self._ledger.append(
            ReminderDraft(
                invoice_id=invoice_id,
                type=reminder_type,
                offset_days=None,
                next_attempt_at=current,
                status="pending",
                manual=True,
            )
        )
        self.dispatch(record, policy=policy, now=current, bypass_business_hours=True)
        final = self._ledger.get(record.reminder_id)
        return final if final is not None else record

    def process_due(self, *, now: datetime | None = None) -> ProcessDueReport:
        current = self._resolve_now(now)
        if not self._run_lock.acquire(blocking=False):
            logger.warning("reminder processing already in progress; skipping overlapping run")
            return ProcessDueReport(run_at=current, skipped=True)

        try:
            policy = self._policy_store.get()
            due = self._ledger.list_due(current)
            report = ProcessDueReport(run_at=current, due_count=len(due))
            if due:
                logger.info("processing %d due reminders", len(due))

            for reminder in due:
                latest = self._ledger.get(reminder.reminder_id)
                if latest is None or latest.status != "scheduled":
                    continue
                try:
                    outcome = self.dispatch(latest, policy=policy, now=current)
                except Exception as exc:
                    report.error_count += 1
                    logger.exception("dispatch failed for reminder %s", latest.reminder_id)
                    self._record_dispatch_error(latest, exc, current)
                    continue
                report.record(outcome)
            return report
        finally:
            self._run_lock.release()

    # Dispatch state machine

    def dispatch(
        self,
        reminder: ReminderRecord,
        *,
        policy: ReminderPolicy,
        now: datetime,
        bypass_business_hours: bool = False,
    ) -> str:
        """Run one reminder through the state machine and return its outcome.

        Every transition is conditional on the status ``reminder`` was read with, so a
        reminder cancelled concurrently is left alone and reported as ``"skipped"``.
        """
        invoice = self._invoices.get(reminder.invoice_id)
        if invoice is None:
            logger.warning("invoice %s not found; cancelling reminder %s", reminder.invoice_id, reminder.reminder_id)
            if not self._transition(reminder, status="cancelled", cancelled_at=now, error="invoice not found"):
                return "skipped"
            return "cancelled"

        if invoice.status == "paid":
            logger.info("invoice %s is paid; cancelling reminder %s", invoice.invoice_id, reminder.reminder_id)
            if not self._transition(reminder, status="cancelled", cancelled_at=now, reason="invoice paid"):
                return "skipped"
            return "cancelled"

        if not bypass_business_hours and not within_business_hours(now, policy.business_hours):
            next_attempt_at = next_business_window(now, policy.business_hours)
            if not self._transition(
                reminder,
                next_attempt_at=next_attempt_at,
                rescheduled_reason="outside business hours",
            ):
                return "skipped"
            logger.info(
                "outside business hours; deferred reminder %s to %s",
                reminder.reminder_id,
                next_attempt_at.isoformat(),
            )
            return "deferred"

        attempts = reminder.attempts + 1
        if not self._transition(reminder, status="pending", attempts=attempts, last_attempt_at=now):
            logger.info("reminder %s changed before delivery; skipping", reminder.reminder_id)
            return "skipped"

        try:
            result = self.channel.send(invoice, reminder.type, template_id=policy.templates.get(reminder.type))
        except Exception as exc:
            logger.exception("notification channel raised for reminder %s", reminder.reminder_id)
            result = DeliveryResult(
                success=False,
                attempted_at=now,
                error_code="channel_exception",
                error=str(exc) or exc.__class__.__name__,
            )

        if result.success:
            self._record_success(reminder, invoice, result, now)
            return "sent"
        return self._record_failure(reminder, invoice, attempts, result, now)

    def _record_success(
        self,
        reminder: ReminderRecord,
        invoice: InvoiceRecord,
        result: DeliveryResult,
        now: datetime,
    ) -> None:
        recorded = self._ledger.update_by_id(
            reminder.reminder_id,
            expected_status="pending",
            status="sent",
            sent_at=now,
            message_id=result.message_id,
            error=None,
        )
        if recorded is None:
            # Cancelled mid-delivery; the message went out, so it is still recorded.
            logger.warning("reminder %s was cancelled during delivery but sent anyway", reminder.reminder_id)
            self._ledger.update_by_id(
                reminder.reminder_id,
                status="sent",
                sent_at=now,
                message_id=result.message_id,
                error=None,
            )
            if not reminder.manual:
                self._retire_duplicates(reminder, now)
        self._append_history(reminder, result.message_id, now)
        logger.info(
            "sent %s reminder %s for invoice %s to %s",
            reminder.type,
            reminder.reminder_id,
            invoice.invoice_id,
            mask_contact_target(invoice.contact_target, invoice.contact_channel),
        )
        self._notify(
            "reminder_sent",
            reminder,
            f"Reminder sent for invoice {invoice.number} ({reminder.type})",
            now,
        )

    def _record_failure(
        self,
        reminder: ReminderRecord,
        invoice: InvoiceRecord,
        attempts: int,
        result: DeliveryResult,
        now: datetime,
    ) -> str:
        error = result.error or result.error_code or "delivery failed"
        if result.retryable and attempts < self._max_retries:
            next_attempt_at = now + backoff(attempts)
            recorded = self._ledger.update_by_id(
                reminder.reminder_id,
                expected_status="pending",
                status="scheduled",
                next_attempt_at=next_attempt_at,
                error=error,
            )
            if recorded is None:
                return self._record_cancelled_failure(reminder, error)
            logger.warning(
                "reminder %s attempt %d failed (%s); retrying at %s",
                reminder.reminder_id,
                attempts,
                error,
                next_attempt_at.isoformat(),
            )
            return "retried"

        recorded = self._ledger.update_by_id(
            reminder.reminder_id,
            expected_status="pending",
            status="failed",
            failed_at=now,
            error=error,
        )
        if recorded is None:
            return self._record_cancelled_failure(reminder, error)
        logger.error("reminder %s failed after %d attempts: %s", reminder.reminder_id, attempts, error)
        self._notify(
            "reminder_failed",
            reminder,
            f"Failed to send reminder for invoice {invoice.number}",
            now,
        )
        return "failed"

    def _record_cancelled_failure(self, reminder: ReminderRecord, error: str) -> str:
        self._ledger.update_by_id(reminder.reminder_id, error=error)
        logger.info("reminder %s was cancelled during delivery; failure recorded without retry", reminder.reminder_id)
        return "cancelled"

    def _transition(self, reminder: ReminderRecord, **changes: object) -> bool:
        updated = self._ledger.update_by_id(reminder.reminder_id, expected_status=reminder.status, **changes)
        return updated is not None

    def _retire_duplicates(self, reminder: ReminderRecord, now: datetime) -> None:
        for other in self._ledger.list_for_invoice(reminder.invoice_id):
            if other.reminder_id == reminder.reminder_id or other.manual or other.key != reminder.key:
                continue
            if other.status not in CANCELLABLE_STATUSES:
                continue
            if self._transition(other, status="cancelled", cancelled_at=now, reason="already sent"):
                logger.info(
                    "cancelled reminder %s; %s already delivered the same reminder",
                    other.reminder_id,
                    reminder.reminder_id,
                )

    def _append_history(self, reminder: ReminderRecord, message_id: str | None, now: datetime) -> None:
        invoice = self._invoices.get(reminder.invoice_id)
        if invoice is None:
            logger.warning(
                "invoice %s disappeared before reminder %s could be recorded in its history",
                reminder.invoice_id,
                reminder.reminder_id,
            )
            return
        if any(entry.reminder_id == reminder.reminder_id for entry in invoice.reminder_history):
            return
        history = list(invoice.reminder_history)
        history.append(
            ReminderHistoryEntry(
                reminder_id=reminder.reminder_id,
                type=reminder.type,
                offset_days=reminder.offset_days,
                sent_at=now,
                message_id=message_id,
                manual=reminder.manual,
            )
        )
        self._invoices.update_by_id(invoice.invoice_id, reminder_history=history)

    def _record_dispatch_error(self, reminder: ReminderRecord, exc: Exception, now: datetime) -> None:
        changes: dict[str, object] = {"error": str(exc) or exc.__class__.__name__}
        latest = self._ledger.get(reminder.reminder_id)
        if latest is None:
            return
        if latest.status == "pending":
            changes["status"] = "scheduled"
            changes["next_attempt_at"] = now + backoff(max(latest.attempts, 1))
        try:
            self._ledger.update_by_id(reminder.reminder_id, expected_status=latest.status, **changes)
        except Exception:
            logger.exception("unable to record dispatch error for reminder %s", reminder.reminder_id)

    def _notify(self, kind: NotificationKind, reminder: ReminderRecord, message: str, now: datetime) -> None:
        if self._notifications is None:
            return
        self._notifications.emit(
            ReminderNotification(
                kind=kind,
                invoice_id=reminder.invoice_id,
                reminder_id=reminder.reminder_id,
                message=message,
                created_at=now,
            )
        )

    # Reporting

    def upcoming_reminders(self, days: int = 7, *, now: datetime | None = None) -> list[ReminderRecord]:
        cutoff = self._resolve_now(now) + timedelta(days=days)
        upcoming = [
            value
            for value in self._ledger.list()
            if value.status == "scheduled" and value.next_attempt_at <= cutoff
        ]
        return sorted(upcoming, key=lambda value: value.next_attempt_at)

    def reminder_stats(self, *, now: datetime | None = None) -> ReminderStats:
        today = self._resolve_now(now).date()
        counts = {status: 0 for status in ("scheduled", "pending", "sent", "failed", "cancelled")}
        sent_today = 0
        for value in self._ledger.list():
            counts[value.status] = counts.get(value.status, 0) + 1
            if value.status == "sent" and value.sent_at is not None and value.sent_at.date() == today:
                sent_today += 1
        return ReminderStats(sent_today=sent_today, **counts)
