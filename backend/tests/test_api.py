from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from fastapi.testclient import TestClient

from invoice_reminders import api as api_module
from invoice_reminders.main import create_app
from invoice_reminders.notifier import StubNotifier

BASE = "/api/v1/reminders"


def _today() -> date:
    return datetime.now(timezone.utc).date()


def _invoice_payload(
    *,
    invoice_id: str,
    due_in_days: int,
    contact_target: str = "client@example.com",
    status: str = "sent",
) -> dict:
    return {
        "invoice_id": invoice_id,
        "number": f"N-{invoice_id}",
        "client_name": "Acme Studio",
        "contact_channel": "email",
        "contact_target": contact_target,
        "currency": "usd",
        "total": 500.0,
        "amount_paid": 0.0,
        "due_date": (_today() + timedelta(days=due_in_days)).isoformat(),
        "status": status,
    }


def _client() -> TestClient:
    api_module.reset_runtime_state_for_tests()
    api_module.reminder_scheduler.channel = StubNotifier(enabled=True, channel="email,sms")
    return TestClient(create_app())


def _upsert(client: TestClient, *payloads: dict) -> dict:
    response = client.post(f"{BASE}/invoices/upsert", json={"invoices": list(payloads)})
    assert response.status_code == 200
    return response.json()


def test_policy_round_trip_and_validation() -> None:
    client = _client()

    policy = client.get(f"{BASE}/policy")
    assert policy.status_code == 200
    assert policy.json()["before_due_offsets"] == [1, 3, 7]
    assert policy.json()["max_reminders_per_invoice"] == 5

    updated = client.put(
        f"{BASE}/policy",
        json={
            "before_due_offsets": [5, 2, 5],
            "after_due_offsets": [3],
            "max_reminders_per_invoice": 4,
            "business_hours": {"enabled": True, "start_minute": 480, "end_minute": 1080, "timezone": "UTC"},
        },
    )
    assert updated.status_code == 200
    assert updated.json()["before_due_offsets"] == [2, 5]
    assert client.get(f"{BASE}/policy").json()["business_hours"]["start_minute"] == 480

    invalid = client.put(
        f"{BASE}/policy",
        json={"business_hours": {"enabled": True, "start_minute": 900, "end_minute": 600}},
    )
    assert invalid.status_code == 422


def test_upsert_derives_reminders_up_to_the_cap() -> None:
    client = _client()

    data = _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=10))
    assert data["processed_count"] == 1
    assert data["invoices"][0]["currency"] == "USD"

    reminders = client.get(f"{BASE}/invoices/inv-1/reminders").json()["reminders"]
    assert [(value["type"], value["offset_days"]) for value in reminders] == [
        ("before_due", 7),
        ("before_due", 3),
        ("before_due", 1),
        ("on_due", None),
        ("after_due", 1),
    ]
    assert {value["status"] for value in reminders} == {"scheduled"}

    again = client.post(f"{BASE}/invoices/inv-1/schedule")
    assert again.status_code == 200
    assert again.json()["created_count"] == 0


def test_full_payment_cancels_outstanding_reminders() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=10))

    partial = client.post(f"{BASE}/invoices/inv-1/payments", json={"amount": 100.0})
    assert partial.status_code == 200
    assert partial.json()["status"] == "partial"
    assert partial.json()["cancelled_count"] == 0

    paid = client.post(f"{BASE}/invoices/inv-1/payments", json={"amount": 400.0})
    assert paid.json()["status"] == "paid"
    assert paid.json()["cancelled_count"] == 5

    reminders = client.get(f"{BASE}/invoices/inv-1/reminders").json()["reminders"]
    assert {value["reason"] for value in reminders} == {"invoice paid"}

    invalid = client.post(f"{BASE}/invoices/inv-1/payments", json={"amount": 0})
    assert invalid.status_code == 422


def test_process_due_sends_overdue_reminder_and_logs_notification() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="late-1", due_in_days=-2))

    reminders = client.get(f"{BASE}/invoices/late-1/reminders").json()["reminders"]
    assert [(value["type"], value["offset_days"]) for value in reminders] == [
        ("after_due", 1),
        ("after_due", 7),
        ("after_due", 14),
        ("after_due", 30),
    ]

    run = client.post(f"{BASE}/process-due")
    assert run.status_code == 200
    assert run.json()["skipped"] is False
    assert run.json()["due_count"] == 1
    assert run.json()["sent_count"] == 1

    invoice = client.get(f"{BASE}/invoices/late-1").json()
    assert invoice["status"] == "overdue"
    assert [entry["type"] for entry in invoice["reminder_history"]] == ["after_due"]

    notifications = client.get(f"{BASE}/notifications").json()["notifications"]
    assert [value["kind"] for value in notifications] == ["reminder_sent"]

    second = client.post(f"{BASE}/process-due").json()
    assert second["due_count"] == 0


def test_failed_delivery_is_retried_and_reported() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="late-1", due_in_days=-2, contact_target="fail@example.com"))

    run = client.post(f"{BASE}/process-due").json()
    assert run["retried_count"] == 1

    reminders = client.get(f"{BASE}/invoices/late-1/reminders").json()["reminders"]
    retried = [value for value in reminders if value["attempts"] == 1]
    assert len(retried) == 1
    assert retried[0]["status"] == "scheduled"
    assert retried[0]["error"] == "Stub notifier forced failure for contact target"


def test_manual_reminder_endpoint() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=10))

    manual = client.post(f"{BASE}/invoices/inv-1/manual", json={"type": "before_due"})
    assert manual.status_code == 201
    assert manual.json()["status"] == "sent"
    assert manual.json()["manual"] is True

    history = client.get(f"{BASE}/invoices/inv-1").json()["reminder_history"]
    assert len(history) == 1
    assert history[0]["manual"] is True

    missing = client.post(f"{BASE}/invoices/missing/manual")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "invoice not found: missing"


def test_due_date_change_reschedules_and_status_change_cancels() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=10))

    moved = client.post(
        f"{BASE}/invoices/inv-1/due-date",
        json={"due_date": (_today() + timedelta(days=20)).isoformat()},
    )
    assert moved.status_code == 200
    assert moved.json()["cancelled_count"] == 5
    assert moved.json()["created_count"] == 5

    paid = client.post(f"{BASE}/invoices/inv-1/status", json={"status": "paid"})
    assert paid.status_code == 200
    assert paid.json()["status"] == "paid"
    assert paid.json()["cancelled_count"] == 5

    missing = client.post(f"{BASE}/invoices/missing/status", json={"status": "paid"})
    assert missing.status_code == 404


def test_upsert_with_changed_due_date_reschedules() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=10))
    _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=15))

    reminders = client.get(f"{BASE}/invoices/inv-1/reminders").json()["reminders"]
    assert sum(1 for value in reminders if value["status"] == "cancelled") == 5
    assert sum(1 for value in reminders if value["status"] == "scheduled") == 5


def test_cancel_delete_and_summary() -> None:
    client = _client()
    _upsert(
        client,
        _invoice_payload(invoice_id="inv-1", due_in_days=10),
        _invoice_payload(invoice_id="inv-2", due_in_days=3),
    )

    summary = client.get(f"{BASE}/summary").json()
    assert summary["scheduled"] == 10
    assert summary["sent_today"] == 0

    upcoming = client.get(f"{BASE}/upcoming", params={"days": 7}).json()["reminders"]
    assert all(value["status"] == "scheduled" for value in upcoming)
    assert {value["invoice_id"] for value in upcoming} == {"inv-1", "inv-2"}

    cancelled = client.post(f"{BASE}/invoices/inv-1/cancel")
    assert cancelled.json()["cancelled_count"] == 5
    assert client.post(f"{BASE}/invoices/inv-1/cancel").json()["cancelled_count"] == 0

    deleted = client.delete(f"{BASE}/invoices/inv-2")
    assert deleted.status_code == 200
    assert deleted.json()["cancelled_count"] == 5
    assert client.get(f"{BASE}/invoices/inv-2").status_code == 404
    assert client.delete(f"{BASE}/invoices/inv-2").status_code == 404

    summary = client.get(f"{BASE}/summary").json()
    assert summary["cancelled"] == 10
    assert summary["upcoming_7d"] == 0


def test_derive_endpoint_keeps_explicitly_cancelled_reminders_cancelled() -> None:
    client = _client()
    _upsert(client, _invoice_payload(invoice_id="inv-1", due_in_days=10))
    client.post(f"{BASE}/invoices/inv-1/cancel")

    derived = client.post(f"{BASE}/derive")
    assert derived.status_code == 200
    assert derived.json() == {"invoice_count": 1, "created_count": 0}

    reminders = client.get(f"{BASE}/invoices/inv-1/reminders").json()["reminders"]
    assert {value["status"] for value in reminders} == {"cancelled"}


def test_unknown_invoice_reminder_list_is_404() -> None:
    client = _client()
    assert client.get(f"{BASE}/invoices/missing/reminders").status_code == 404
