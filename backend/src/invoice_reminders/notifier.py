from __future__ import annotations

import json
import socket
import urllib.error
import urllib.request
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from .models import DEFAULT_TEMPLATES, ContactChannel, InvoiceRecord
from .timing import now_utc

RETRYABLE_HTTP_STATUSES = frozenset({408, 425, 429})


@dataclass(frozen=True)
class ReminderTemplate:
    subject: str
    body: str


REMINDER_TEMPLATES: dict[str, ReminderTemplate] = {
    "reminder-before-due": ReminderTemplate(
        subject="Invoice {number} is due on {due_date}",
        body=(
            "Hi {client_name}, this is a friendly reminder that invoice {number} for "
            "{currency} {balance_due:.2f} is due on {due_date}."
        ),
    ),
    "reminder-on-due": ReminderTemplate(
        subject="Invoice {number} is due today",
        body=(
            "Hi {client_name}, invoice {number} for {currency} {balance_due:.2f} is due "
            "today ({due_date}). Please submit payment at your earliest convenience."
        ),
    ),
    "reminder-after-due": ReminderTemplate(
        subject="Invoice {number} is overdue",
        body=(
            "Hi {client_name}, invoice {number} for {currency} {balance_due:.2f} was due "
            "on {due_date} and is now overdue. Please arrange payment as soon as possible."
        ),
    ),
}


@dataclass(frozen=True)
class DeliveryResult:
    success: bool
    attempted_at: datetime
    message_id: str | None = None
    error_code: str | None = None
    error: str | None = None
    retryable: bool = True


class NotificationChannel(Protocol):
    def send(
        self,
        invoice: InvoiceRecord,
        reminder_type: str,
        *,
        template_id: str | None = None,
    ) -> DeliveryResult: ...


def render_reminder(invoice: InvoiceRecord, reminder_type: str, template_id: str | None = None) -> tuple[str, str]:
    template = REMINDER_TEMPLATES.get(template_id or "")
    if template is None:
        template = REMINDER_TEMPLATES[DEFAULT_TEMPLATES.get(reminder_type, "reminder-after-due")]
    fields = {
        "number": invoice.number,
        "client_name": invoice.client_name,
        "currency": invoice.currency,
        "balance_due": invoice.balance_due,
        "due_date": invoice.due_date.isoformat() if invoice.due_date else "n/a",
    }
    return template.subject.format(**fields), template.body.format(**fields)


def _parse_channels(channel: str) -> set[str]:
    normalized = channel.strip().lower()
    parsed = {item.strip() for item in normalized.split(",") if item.strip()}
    return parsed or {"email", "sms"}


class StubNotifier:
    """Test-mode channel: records deliveries instead of contacting a provider."""

    def __init__(self, *, enabled: bool = True, channel: str = "email,sms") -> None:
        self._enabled = enabled
        self._channels = _parse_channels(channel)
        self.deliveries: list[tuple[str, str, str]] = []

    def send(
        self,
        invoice: InvoiceRecord,
        reminder_type: str,
        *,
        template_id: str | None = None,
    ) -> DeliveryResult:
        attempted_at = now_utc()

        if not self._enabled:
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="notifier_disabled",
                error="Reminder delivery is disabled",
                retryable=False,
            )

        if invoice.contact_channel not in self._channels:
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="channel_mismatch",
                error=f"Configured channels are {', '.join(sorted(self._channels))}",
                retryable=False,
            )

        if "fail" in invoice.contact_target.lower():
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="stub_delivery_failed",
                error="Stub notifier forced failure for contact target",
            )

        subject, _ = render_reminder(invoice, reminder_type, template_id)
        self.deliveries.append((invoice.invoice_id, reminder_type, subject))
        message_id = f"stub-{invoice.invoice_id}-{len(self.deliveries)}"
        return DeliveryResult(success=True, attempted_at=attempted_at, message_id=message_id)


class _NotifierSendError(Exception):
    """Internal error raised when a provider HTTP request fails."""

    def __init__(self, error_code: str, message: str, *, retryable: bool) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.retryable = retryable


class HttpNotifier:
    """Production channel that delivers reminders through a JSON messaging endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        channels: set[str],
        timeout_seconds: int = 30,
    ) -> None:
        stripped_url = base_url.strip().rstrip("/")
        stripped_key = api_key.strip()
        if not stripped_url:
            raise ValueError("base_url must not be empty")
        if not stripped_key:
            raise ValueError("api_key must not be empty")
        self._base_url = stripped_url
        self._api_key = stripped_key
        self._channels: frozenset[str] = frozenset(channels)
        self._timeout_seconds = timeout_seconds

    def send(
        self,
        invoice: InvoiceRecord,
        reminder_type: str,
        *,
        template_id: str | None = None,
    ) -> DeliveryResult:
        attempted_at = now_utc()

        if invoice.contact_channel not in self._channels:
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="channel_not_configured",
                error=(
                    f"Channel '{invoice.contact_channel}' is not configured; "
                    f"available channels: {', '.join(sorted(self._channels))}"
                ),
                retryable=False,
            )

        if not invoice.contact_target.strip():
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code="recipient_missing",
                error=f"Recipient missing for channel {invoice.contact_channel}",
                retryable=False,
            )

        subject, body = render_reminder(invoice, reminder_type, template_id)
        request_payload = {
            "channel": invoice.contact_channel,
            "recipient": invoice.contact_target,
            "subject": subject,
            "message": body,
            "idempotency_key": f"reminder-{invoice.invoice_id}-{reminder_type}-{int(attempted_at.timestamp())}",
            "metadata": {"invoice_id": invoice.invoice_id, "reminder_type": reminder_type},
        }

        try:
            response_data = self._post(request_payload)
        except _NotifierSendError as exc:
            masked = mask_contact_target(invoice.contact_target, invoice.contact_channel)
            return DeliveryResult(
                success=False,
                attempted_at=attempted_at,
                error_code=exc.error_code,
                error=f"{exc.message} (recipient: {masked})",
                retryable=exc.retryable,
            )
        message_id = response_data.get("message_id")
        return DeliveryResult(
            success=True,
            attempted_at=attempted_at,
            message_id=str(message_id) if message_id is not None else None,
        )

    def _post(self, body: dict[str, object]) -> dict[str, object]:
        """Send a POST request to the provider messages endpoint."""
        url = f"{self._base_url}/v1/messages/send"
        data = json.dumps(body).encode("utf-8")
        request = urllib.request.Request(
            url,
            data=data,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_seconds) as response:
                return json.loads(response.read().decode("utf-8"))  # type: ignore[no-any-return]
        except urllib.error.HTTPError as exc:
            raise _NotifierSendError(
                error_code=f"http_{exc.code}",
                message=f"HTTP {exc.code}: {exc.reason}",
                retryable=exc.code >= 500 or exc.code in RETRYABLE_HTTP_STATUSES,
            ) from exc
        except urllib.error.URLError as exc:
            raise _NotifierSendError(
                error_code="connection_error",
                message=f"Connection error: {exc.reason}",
                retryable=True,
            ) from exc
        except (socket.timeout, TimeoutError) as exc:
            raise _NotifierSendError(
                error_code="timeout",
                message=f"Request timed out: {exc}",
                retryable=True,
            ) from exc


def mask_contact_target(contact_target: str, channel: ContactChannel | str) -> str:
    normalized = contact_target.strip()
    if not normalized:
        return "***"

    if channel == "email" and "@" in normalized:
        local, domain = normalized.split("@", 1)
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}***@{domain}"

    if channel == "sms":
        digits = "".join(ch for ch in normalized if ch.isdigit())
        if len(digits) >= 4:
            return f"***{digits[-4:]}"

    if len(normalized) <= 4:
        return "*" * len(normalized)

    return f"{normalized[:2]}***{normalized[-2:]}"
