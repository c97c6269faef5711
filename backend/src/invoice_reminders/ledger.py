from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Protocol

from sqlalchemy import Boolean, DateTime, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .timing import coerce_utc, now_utc


@dataclass(frozen=True)
class ReminderDraft:
    invoice_id: str
    type: str
    offset_days: int | None
    next_attempt_at: datetime
    status: str = "scheduled"
    manual: bool = False


@dataclass(frozen=True)
class ReminderRecord:
    reminder_id: str
    invoice_id: str
    type: str
    offset_days: int | None
    status: str
    attempts: int
    next_attempt_at: datetime
    last_attempt_at: datetime | None
    sent_at: datetime | None
    failed_at: datetime | None
    cancelled_at: datetime | None
    error: str | None
    reason: str | None
    rescheduled_reason: str | None
    message_id: str | None
    manual: bool
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> tuple[str, str, int | None]:
        return (self.invoice_id, self.type, self.offset_days)


_UPDATABLE_FIELDS = frozenset(
    {
        "status",
        "attempts",
        "next_attempt_at",
        "last_attempt_at",
        "sent_at",
        "failed_at",
        "cancelled_at",
        "error",
        "reason",
        "rescheduled_reason",
        "message_id",
    }
)


def _check_changes(changes: dict[str, object]) -> None:
    unknown = set(changes) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported reminder fields: {', '.join(sorted(unknown))}")


def _sort_key(record: ReminderRecord) -> tuple[datetime, datetime, str]:
    return (record.next_attempt_at, record.created_at, record.reminder_id)


class ReminderLedger(Protocol):
    def reset(self) -> None: ...

    def list(self) -> list[ReminderRecord]: ...

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]: ...

    def list_due(self, now: datetime) -> list[ReminderRecord]: ...

    def get(self, reminder_id: str) -> ReminderRecord | None: ...

    def append(self, draft: ReminderDraft) -> ReminderRecord: ...

    def update_by_id(
        self,
        reminder_id: str,
        *,
        expected_status: str | None = None,
        **changes: object,
    ) -> ReminderRecord | None: ...


class InMemoryReminderLedger:
    def __init__(self) -> None:
        self._lock = Lock()
        self._counter = 1
        self._reminders: dict[str, ReminderRecord] = {}

    def reset(self) -> None:
        with self._lock:
            self._counter = 1
            self._reminders.clear()

    def list(self) -> list[ReminderRecord]:
        with self._lock:
            return sorted(self._reminders.values(), key=_sort_key)

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._lock:
            rows = [value for value in self._reminders.values() if value.invoice_id == invoice_id]
        return sorted(rows, key=_sort_key)

    def list_due(self, now: datetime) -> list[ReminderRecord]:
        cutoff = coerce_utc(now)
        with self._lock:
            rows = [
                value
                for value in self._reminders.values()
                if value.status == "scheduled" and value.next_attempt_at <= cutoff
            ]
        return sorted(rows, key=_sort_key)

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._lock:
            return self._reminders.get(reminder_id)

    def append(self, draft: ReminderDraft) -> ReminderRecord:
        with self._lock:
            reminder_id = f"rem_{self._counter:06d}"
            self._counter += 1
            created_at = now_utc()
            record = ReminderRecord(
                reminder_id=reminder_id,
                invoice_id=draft.invoice_id,
                type=draft.type,
                offset_days=draft.offset_days,
                status=draft.status,
                attempts=0,
                next_attempt_at=coerce_utc(draft.next_attempt_at),
                last_attempt_at=None,
                sent_at=None,
                failed_at=None,
                cancelled_at=None,
                error=None,
                reason=None,
                rescheduled_reason=None,
                message_id=None,
                manual=draft.manual,
                created_at=created_at,
                updated_at=created_at,
            )
            self._reminders[reminder_id] = record
            return record

    def update_by_id(
        self,
        reminder_id: str,
        *,
        expected_status: str | None = None,
        **changes: object,
    ) -> ReminderRecord | None:
        _check_changes(changes)
        with self._lock:
            row = self._reminders.get(reminder_id)
            if row is None:
                return None
            if expected_status is not None and row.status != expected_status:
                return None
            updated = ReminderRecord(**{**row.__dict__, **changes, "updated_at": now_utc()})
            self._reminders[reminder_id] = updated
            return updated


class ReminderLedgerBase(DeclarativeBase):
    pass


class _ReminderRow(ReminderLedgerBase):
    __tablename__ = "invoice_reminders"

    reminder_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    invoice_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    offset_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rescheduled_reason: Mapped[str | None] = mapped_column(String(128), nullable=True)
    message_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    manual: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def _optional_utc(value: datetime | None) -> datetime | None:
    return coerce_utc(value) if value is not None else None


def _to_record(row: _ReminderRow) -> ReminderRecord:
    return ReminderRecord(
        reminder_id=row.reminder_id,
        invoice_id=row.invoice_id,
        type=row.type,
        offset_days=row.offset_days,
        status=row.status,
        attempts=row.attempts,
        next_attempt_at=coerce_utc(row.next_attempt_at),
        last_attempt_at=_optional_utc(row.last_attempt_at),
        sent_at=_optional_utc(row.sent_at),
        failed_at=_optional_utc(row.failed_at),
        cancelled_at=_optional_utc(row.cancelled_at),
        error=row.error,
        reason=row.reason,
        rescheduled_reason=row.rescheduled_reason,
        message_id=row.message_id,
        manual=row.manual,
        created_at=coerce_utc(row.created_at),
        updated_at=coerce_utc(row.updated_at),
    )


class SqlAlchemyReminderLedger:
    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for REMINDER_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            ReminderLedgerBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_ReminderRow).delete()

    def list(self) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow).order_by(
                    _ReminderRow.next_attempt_at.asc(),
                    _ReminderRow.created_at.asc(),
                    _ReminderRow.reminder_id.asc(),
                )
            ).scalars()
            return [_to_record(row) for row in rows]

    def list_for_invoice(self, invoice_id: str) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.invoice_id == invoice_id)
                .order_by(_ReminderRow.next_attempt_at.asc(), _ReminderRow.created_at.asc())
            ).scalars()
            return [_to_record(row) for row in rows]

    def list_due(self, now: datetime) -> list[ReminderRecord]:
        with self._session() as session:
            rows = session.execute(
                select(_ReminderRow)
                .where(_ReminderRow.status == "scheduled")
                .where(_ReminderRow.next_attempt_at <= coerce_utc(now))
                .order_by(_ReminderRow.next_attempt_at.asc(), _ReminderRow.created_at.asc())
            ).scalars()
            return [_to_record(row) for row in rows]

    def get(self, reminder_id: str) -> ReminderRecord | None:
        with self._session() as session:
            row = session.get(_ReminderRow, reminder_id)
            if row is None:
                return None
            return _to_record(row)

    def append(self, draft: ReminderDraft) -> ReminderRecord:
        created_at = now_utc()
        row = _ReminderRow(
            reminder_id=f"rem_{secrets.token_hex(8)}",
            invoice_id=draft.invoice_id,
            type=draft.type,
            offset_days=draft.offset_days,
            status=draft.status,
            attempts=0,
            next_attempt_at=coerce_utc(draft.next_attempt_at),
            manual=draft.manual,
            created_at=created_at,
            updated_at=created_at,
        )
        with self._session() as session:
            with session.begin():
                session.add(row)
            return _to_record(row)

    def update_by_id(
        self,
        reminder_id: str,
        *,
        expected_status: str | None = None,
        **changes: object,
    ) -> ReminderRecord | None:
        _check_changes(changes)
        with self._session() as session:
            with session.begin():
                row = session.get(_ReminderRow, reminder_id, with_for_update=True)
                if row is None:
                    return None
                if expected_status is not None and row.status != expected_status:
                    return None
                for field_name, value in changes.items():
                    if isinstance(value, datetime):
                        value = coerce_utc(value)
                    setattr(row, field_name, value)
                row.updated_at = now_utc()
            return _to_record(row)


def create_reminder_ledger(*, backend: str, database_url: str) -> ReminderLedger:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyReminderLedger(database_url)
    if normalized == "inmemory":
        return InMemoryReminderLedger()
    raise RuntimeError(f"unsupported REMINDER_STORE_BACKEND: {backend}")
