from __future__ import annotations

import os
from dataclasses import dataclass


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _as_int(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def _as_float(value: str | None, default: float) -> float:
    if value is None:
        return default
    try:
        return float(value.strip())
    except ValueError:
        return default


def _normalize_mode(value: str | None, *, default: str, allowed: set[str]) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized if normalized in allowed else default


def _is_placeholder(value: str) -> bool:
    normalized = value.strip().lower()
    return not normalized or normalized in {"change-me", "replace-me", "placeholder", "changeme"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Invoice Reminders"
    api_prefix: str = "/api/v1"
    reminder_store_backend: str = "inmemory"
    policy_store_backend: str = "inmemory"
    database_url: str = ""
    notifier_enabled: bool = False
    notifier_sender_type: str = "stub"
    notifier_channel: str = "email,sms"
    notifier_api_base_url: str = ""
    notifier_api_key: str = ""
    notifier_timeout_seconds: int = 30
    reminder_max_retries: int = 3
    reminder_worker_enabled: bool = False
    reminder_process_interval_seconds: float = 60.0
    reminder_derive_interval_seconds: float = 3600.0
    cors_allow_origins: tuple[str, ...] = ()
    runtime_config_guard_mode: str = "warn"

    @property
    def notifier_channels(self) -> set[str]:
        return {item.strip().lower() for item in self.notifier_channel.split(",") if item.strip()}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("REMINDER_APP_NAME", "Invoice Reminders"),
        api_prefix=os.getenv("REMINDER_API_PREFIX", "/api/v1"),
        reminder_store_backend=os.getenv("REMINDER_STORE_BACKEND", "inmemory"),
        policy_store_backend=os.getenv("POLICY_STORE_BACKEND", "inmemory"),
        database_url=os.getenv("DATABASE_URL", ""),
        notifier_enabled=_as_bool(os.getenv("NOTIFIER_ENABLED"), False),
        notifier_sender_type=_normalize_mode(
            os.getenv("NOTIFIER_SENDER_TYPE"),
            default="stub",
            allowed={"stub", "http"},
        ),
        notifier_channel=os.getenv("NOTIFIER_CHANNEL", "email,sms"),
        notifier_api_base_url=os.getenv("NOTIFIER_API_BASE_URL", ""),
        notifier_api_key=os.getenv("NOTIFIER_API_KEY", ""),
        notifier_timeout_seconds=_as_int(os.getenv("NOTIFIER_TIMEOUT_SECONDS"), 30),
        reminder_max_retries=_as_int(os.getenv("REMINDER_MAX_RETRIES"), 3),
        reminder_worker_enabled=_as_bool(os.getenv("REMINDER_WORKER_ENABLED"), False),
        reminder_process_interval_seconds=_as_float(os.getenv("REMINDER_PROCESS_INTERVAL_SECONDS"), 60.0),
        reminder_derive_interval_seconds=_as_float(os.getenv("REMINDER_DERIVE_INTERVAL_SECONDS"), 3600.0),
        cors_allow_origins=tuple(
            item.strip() for item in os.getenv("CORS_ALLOW_ORIGINS", "").split(",") if item.strip()
        ),
        runtime_config_guard_mode=_normalize_mode(
            os.getenv("RUNTIME_CONFIG_GUARD_MODE"),
            default="warn",
            allowed={"off", "warn", "enforce"},
        ),
    )


def runtime_config_issues(settings: Settings) -> tuple[str, ...]:
    issues: list[str] = []
    backends = {
        "REMINDER_STORE_BACKEND": settings.reminder_store_backend,
        "POLICY_STORE_BACKEND": settings.policy_store_backend,
    }
    for key, backend in backends.items():
        normalized = backend.strip().lower()
        if normalized not in {"inmemory", "postgres"}:
            issues.append(f"{key} must be one of inmemory, postgres (got {backend!r})")
        elif normalized == "postgres" and not settings.database_url.strip():
            issues.append(f"DATABASE_URL is required when {key}=postgres")
    if settings.notifier_sender_type == "http":
        if not settings.notifier_api_base_url.strip():
            issues.append("NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http")
        if _is_placeholder(settings.notifier_api_key):
            issues.append("NOTIFIER_API_KEY is empty or uses a placeholder value")
    if not settings.notifier_channels:
        issues.append("NOTIFIER_CHANNEL must list at least one channel")
    if settings.reminder_max_retries < 1:
        issues.append("REMINDER_MAX_RETRIES must be at least 1")
    if settings.reminder_process_interval_seconds <= 0:
        issues.append("REMINDER_PROCESS_INTERVAL_SECONDS must be positive")
    if settings.reminder_derive_interval_seconds <= 0:
        issues.append("REMINDER_DERIVE_INTERVAL_SECONDS must be positive")
    return tuple(issues)
