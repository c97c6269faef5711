from __future__ import annotations

import json
import socket
import urllib.error
from datetime import date, datetime, timezone
from unittest.mock import MagicMock, patch

import pytest

from invoice_reminders.models import InvoiceRecord
from invoice_reminders.notifier import HttpNotifier, StubNotifier, mask_contact_target, render_reminder


def _make_invoice(
    *,
    contact_channel: str = "email",
    contact_target: str = "client@example.com",
) -> InvoiceRecord:
    return InvoiceRecord(
        invoice_id="INV-001",
        number="2024-0042",
        client_name="Acme Studio",
        contact_channel=contact_channel,  # type: ignore[arg-type]
        contact_target=contact_target,
        currency="USD",
        total=500.0,
        amount_paid=250.0,
        balance_due=250.0,
        due_date=date(2024, 10, 10),
        status="partial",
        updated_at=datetime(2024, 10, 1, tzinfo=timezone.utc),
    )


def _make_notifier(*, channels: set[str] | None = None) -> HttpNotifier:
    return HttpNotifier(
        base_url="https://messages.example.test/",
        api_key="test-api-key-abc123",
        channels=channels or {"email", "sms"},
    )


def _mock_response(body: dict[str, str]) -> MagicMock:
    response = MagicMock()
    response.read.return_value = json.dumps(body).encode("utf-8")
    response.__enter__ = MagicMock(return_value=response)
    response.__exit__ = MagicMock(return_value=False)
    return response


def _http_error(code: int) -> urllib.error.HTTPError:
    return urllib.error.HTTPError(
        url="https://messages.example.test/v1/messages/send",
        code=code,
        msg="error",
        hdrs={},  # type: ignore[arg-type]
        fp=None,
    )


def test_render_reminder_uses_bound_template_and_falls_back_by_type() -> None:
    invoice = _make_invoice()

    subject, body = render_reminder(invoice, "before_due", "reminder-before-due")
    assert subject == "Invoice 2024-0042 is due on 2024-10-10"
    assert "USD 250.00" in body
    assert "Acme Studio" in body

    fallback_subject, _ = render_reminder(invoice, "after_due", "unknown-template")
    assert fallback_subject == "Invoice 2024-0042 is overdue"


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_notifier_success(mock_urlopen: MagicMock) -> None:
    mock_urlopen.return_value = _mock_response({"message_id": "msg-123"})

    result = _make_notifier().send(_make_invoice(), "on_due", template_id="reminder-on-due")

    assert result.success is True
    assert result.message_id == "msg-123"
    assert result.attempted_at.tzinfo == timezone.utc

    request_arg = mock_urlopen.call_args[0][0]
    assert request_arg.full_url == "https://messages.example.test/v1/messages/send"
    assert request_arg.get_header("Authorization") == "Bearer test-api-key-abc123"
    sent_body = json.loads(request_arg.data.decode("utf-8"))
    assert sent_body["channel"] == "email"
    assert sent_body["recipient"] == "client@example.com"
    assert sent_body["subject"] == "Invoice 2024-0042 is due today"
    assert sent_body["metadata"] == {"invoice_id": "INV-001", "reminder_type": "on_due"}


@pytest.mark.parametrize(("code", "retryable"), [(500, True), (503, True), (429, True), (400, False), (401, False)])
@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_notifier_classifies_http_errors(mock_urlopen: MagicMock, code: int, retryable: bool) -> None:
    mock_urlopen.side_effect = _http_error(code)

    result = _make_notifier().send(_make_invoice(), "after_due")

    assert result.success is False
    assert result.error_code == f"http_{code}"
    assert result.retryable is retryable
    assert "c***@example.com" in (result.error or "")


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_notifier_network_errors_are_retryable(mock_urlopen: MagicMock) -> None:
    mock_urlopen.side_effect = urllib.error.URLError("Connection refused")
    result = _make_notifier().send(_make_invoice(), "after_due")
    assert result.error_code == "connection_error"
    assert result.retryable is True

    mock_urlopen.side_effect = socket.timeout("timed out")
    result = _make_notifier().send(_make_invoice(), "after_due")
    assert result.error_code == "timeout"
    assert result.retryable is True


@patch("invoice_reminders.notifier.urllib.request.urlopen")
def test_http_notifier_rejects_unconfigured_channel_without_request(mock_urlopen: MagicMock) -> None:
    result = _make_notifier(channels={"email"}).send(
        _make_invoice(contact_channel="sms", contact_target="+15555550123"),
        "after_due",
    )

    assert result.success is False
    assert result.error_code == "channel_not_configured"
    assert result.retryable is False
    mock_urlopen.assert_not_called()


def test_http_notifier_requires_credentials() -> None:
    with pytest.raises(ValueError):
        HttpNotifier(base_url="", api_key="key", channels={"email"})
    with pytest.raises(ValueError):
        HttpNotifier(base_url="https://messages.example.test", api_key=" ", channels={"email"})


def test_stub_notifier_records_deliveries_and_forced_failures() -> None:
    notifier = StubNotifier()

    ok = notifier.send(_make_invoice(), "before_due")
    failed = notifier.send(_make_invoice(contact_target="fail@example.com"), "before_due")

    assert ok.success is True
    assert ok.message_id == "stub-INV-001-1"
    assert failed.success is False
    assert failed.retryable is True
    assert len(notifier.deliveries) == 1


def test_disabled_stub_notifier_fails_without_retry() -> None:
    result = StubNotifier(enabled=False).send(_make_invoice(), "before_due")
    assert result.success is False
    assert result.error_code == "notifier_disabled"
    assert result.retryable is False


def test_mask_contact_target() -> None:
    assert mask_contact_target("client@example.com", "email") == "c***@example.com"
    assert mask_contact_target("+1 (555) 555-0123", "sms") == "***0123"
    assert mask_contact_target("", "email") == "***"
