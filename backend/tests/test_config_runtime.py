from __future__ import annotations

import os

import pytest

from invoice_reminders.config import Settings, get_settings, runtime_config_issues
from invoice_reminders.main import create_app


def _set_env(overrides: dict[str, str | None]) -> dict[str, str | None]:
    previous: dict[str, str | None] = {}
    for key, value in overrides.items():
        previous[key] = os.environ.get(key)
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value
    return previous


def _restore_env(previous: dict[str, str | None]) -> None:
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


def test_get_settings_reads_environment_and_normalizes_modes() -> None:
    previous = _set_env(
        {
            "REMINDER_MAX_RETRIES": "5",
            "REMINDER_WORKER_ENABLED": "yes",
            "REMINDER_PROCESS_INTERVAL_SECONDS": "15",
            "NOTIFIER_SENDER_TYPE": "carrier-pigeon",
            "RUNTIME_CONFIG_GUARD_MODE": "ENFORCE",
            "CORS_ALLOW_ORIGINS": "http://localhost:3000, https://billing.example.com",
        }
    )
    try:
        settings = get_settings()
        assert settings.reminder_max_retries == 5
        assert settings.reminder_worker_enabled is True
        assert settings.reminder_process_interval_seconds == 15.0
        assert settings.notifier_sender_type == "stub"
        assert settings.runtime_config_guard_mode == "enforce"
        assert settings.cors_allow_origins == ("http://localhost:3000", "https://billing.example.com")
    finally:
        _restore_env(previous)


def test_invalid_numbers_fall_back_to_defaults() -> None:
    previous = _set_env({"REMINDER_MAX_RETRIES": "three", "NOTIFIER_TIMEOUT_SECONDS": ""})
    try:
        settings = get_settings()
        assert settings.reminder_max_retries == 3
        assert settings.notifier_timeout_seconds == 30
    finally:
        _restore_env(previous)


def test_default_settings_have_no_runtime_issues() -> None:
    assert runtime_config_issues(Settings()) == ()


def test_runtime_config_issues_flag_missing_database_and_notifier_credentials() -> None:
    settings = Settings(
        reminder_store_backend="postgres",
        policy_store_backend="redis",
        notifier_sender_type="http",
        notifier_api_key="change-me",
        reminder_max_retries=0,
    )

    issues = runtime_config_issues(settings)

    assert "DATABASE_URL is required when REMINDER_STORE_BACKEND=postgres" in issues
    assert any(issue.startswith("POLICY_STORE_BACKEND must be one of") for issue in issues)
    assert "NOTIFIER_API_BASE_URL is required when NOTIFIER_SENDER_TYPE=http" in issues
    assert "NOTIFIER_API_KEY is empty or uses a placeholder value" in issues
    assert "REMINDER_MAX_RETRIES must be at least 1" in issues


def test_create_app_blocks_startup_in_enforce_mode() -> None:
    previous = _set_env(
        {
            "RUNTIME_CONFIG_GUARD_MODE": "enforce",
            "NOTIFIER_SENDER_TYPE": "http",
            "NOTIFIER_API_BASE_URL": None,
            "NOTIFIER_API_KEY": None,
        }
    )
    try:
        with pytest.raises(RuntimeError, match="runtime config guard blocked startup"):
            create_app()
    finally:
        _restore_env(previous)


def test_create_app_warns_but_starts_in_warn_mode(caplog: pytest.LogCaptureFixture) -> None:
    previous = _set_env(
        {
            "RUNTIME_CONFIG_GUARD_MODE": "warn",
            "NOTIFIER_SENDER_TYPE": "http",
            "NOTIFIER_API_BASE_URL": None,
            "NOTIFIER_API_KEY": None,
            "REMINDER_APP_NAME": "Reminder Test",
        }
    )
    try:
        with caplog.at_level("WARNING", logger="invoice_reminders.main"):
            app = create_app()
        assert app.title == "Reminder Test"
        assert any("NOTIFIER_API_BASE_URL" in record.getMessage() for record in caplog.records)
    finally:
        _restore_env(previous)
