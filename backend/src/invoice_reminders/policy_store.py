from __future__ import annotations

from datetime import datetime
from threading import Lock
from typing import Protocol

from sqlalchemy import DateTime, String, Text, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker

from .models import ReminderPolicy
from .timing import now_utc


class PolicyStore(Protocol):
    def reset(self) -> None: ...

    def get(self) -> ReminderPolicy: ...

    def set(self, policy: ReminderPolicy) -> None: ...


class InMemoryPolicyStore:
    def __init__(self, policy: ReminderPolicy | None = None) -> None:
        self._lock = Lock()
        self._initial = policy or ReminderPolicy()
        self._policy = self._initial

    def reset(self) -> None:
        with self._lock:
            self._policy = self._initial

    def get(self) -> ReminderPolicy:
        with self._lock:
            return self._policy.model_copy(deep=True)

    def set(self, policy: ReminderPolicy) -> None:
        with self._lock:
            self._policy = policy.model_copy(deep=True)


class PolicyStoreBase(DeclarativeBase):
    pass


class _PolicyStateRow(PolicyStoreBase):
    __tablename__ = "reminder_policy_state"

    store_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class SqlAlchemyPolicyStore:
    _STORE_KEY = "default"

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required for POLICY_STORE_BACKEND=postgres")
        self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)
        if database_url.startswith("sqlite"):
            PolicyStoreBase.metadata.create_all(self._engine)

    def _session(self):
        return self._session_factory()

    def reset(self) -> None:
        with self._session() as session:
            with session.begin():
                session.query(_PolicyStateRow).delete()

    def get(self) -> ReminderPolicy:
        with self._session() as session:
            row = session.get(_PolicyStateRow, self._STORE_KEY)
            if row is None:
                return ReminderPolicy()
            return ReminderPolicy.model_validate_json(row.payload_json)

    def set(self, policy: ReminderPolicy) -> None:
        payload = policy.model_dump_json()
        now = now_utc()
        with self._session() as session:
            with session.begin():
                row = session.get(_PolicyStateRow, self._STORE_KEY)
                if row is None:
                    session.add(_PolicyStateRow(store_key=self._STORE_KEY, payload_json=payload, updated_at=now))
                    return
                row.payload_json = payload
                row.updated_at = now


def create_policy_store(*, backend: str, database_url: str) -> PolicyStore:
    normalized = backend.strip().lower()
    if normalized == "postgres":
        return SqlAlchemyPolicyStore(database_url)
    if normalized == "inmemory":
        return InMemoryPolicyStore()
    raise RuntimeError(f"unsupported POLICY_STORE_BACKEND: {backend}")
