from __future__ import annotations

from fastapi.testclient import TestClient

from sms_relay.config import Settings
from sms_relay.store import StatusStore

from conftest import FakeProvider

SEND_URL = "/v1/emergency/send-sms"


def test_single_recipient_example(
    client: TestClient, provider: FakeProvider, auth: dict[str, str]
) -> None:
    resp = client.post(
        SEND_URL,
        json={"recipients": ["+15551234567"], "message": "Evacuate now"},
        headers=auth,
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["message_id"].startswith("msg_")
    assert data["status"] == "sent"
    assert data["sent_count"] == 1
    assert data["failed_count"] == 0
    assert len(data["results"]) == 1
    result = data["results"][0]
    assert result["recipient"] == "+15551234567"
    assert result["status"] == "sent"
    assert result["provider_id"].startswith("SM")
    assert result["error"] is None

    sent = provider.sent[0]
    assert sent["to"] == "+15551234567"
    assert sent["body"] == "Evacuate now"
    assert sent["status_callback"] == (
        f"https://relay.example.org/v1/emergency/sms-webhook/{data['message_id']}"
    )


def test_partial_failure_keeps_order_and_counts(
    client: TestClient, provider: FakeProvider, auth: dict[str, str]
) -> None:
    """A failing recipient in the middle must not stop the ones after it."""
    provider.fail_for = {"+15550000002"}
    recipients = ["+15550000001", "+15550000002", "+15550000003"]

    resp = client.post(
        SEND_URL, json={"recipients": recipients, "message": "Shelter in place"}, headers=auth
    )
    assert resp.status_code == 201
    data = resp.json()

    assert [r["recipient"] for r in data["results"]] == recipients
    assert [r["status"] for r in data["results"]] == ["sent", "failed", "sent"]
    assert data["status"] == "partial"
    assert data["sent_count"] == 2
    assert data["failed_count"] == 1
    assert data["sent_count"] + data["failed_count"] == len(recipients)

    failed = data["results"][1]
    assert failed["provider_id"] is None
    assert "not valid" in failed["error"]

    # every recipient was attempted, in order
    assert [s["to"] for s in provider.sent] == recipients


def test_all_failed_is_partial(
    client: TestClient, provider: FakeProvider, auth: dict[str, str]
) -> None:
    provider.fail_for = {"+15550000001"}
    resp = client.post(
        SEND_URL, json={"recipients": ["+15550000001"], "message": "Test"}, headers=auth
    )
    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "partial"
    assert data["sent_count"] == 0
    assert data["failed_count"] == 1


def test_metadata_is_stored(
    client: TestClient, store: StatusStore, auth: dict[str, str]
) -> None:
    resp = client.post(
        SEND_URL,
        json={
            "recipients": ["+15551234567"],
            "message": "Flood warning",
            "metadata": {"incident": "flood-42"},
            "provider": "twilio",
        },
        headers=auth,
    )
    assert resp.status_code == 201
    record = store.get_record(resp.json()["message_id"])
    assert record is not None
    assert record.metadata == {"incident": "flood-42"}


def test_no_callback_without_base_url(
    client: TestClient, settings: Settings, provider: FakeProvider, auth: dict[str, str]
) -> None:
    settings.base_url = None
    resp = client.post(
        SEND_URL, json={"recipients": ["+15551234567"], "message": "Hi"}, headers=auth
    )
    assert resp.status_code == 201
    assert provider.sent[0]["status_callback"] is None


def test_validation_errors_have_no_side_effects(
    client: TestClient, provider: FakeProvider, store: StatusStore, auth: dict[str, str]
) -> None:
    bad_bodies = [
        {"recipients": [], "message": "Hi"},
        {"recipients": "+15551234567", "message": "Hi"},
        {"recipients": ["not-a-phone"], "message": "Hi"},
        {"recipients": ["+15551234567"], "message": ""},
        {"recipients": ["+15551234567"], "message": "x" * 1601},
        {"recipients": ["+15551234567"], "message": "Hi", "provider": "pigeon"},
        {"message": "Hi"},
    ]
    for body in bad_bodies:
        resp = client.post(SEND_URL, json=body, headers=auth)
        assert resp.status_code == 400, body
        data = resp.json()
        assert data["error"] == "Validation failed"
        assert data["details"]
        assert all("field" in d and "message" in d for d in data["details"])

    assert provider.sent == []
    assert len(store) == 0


def test_validation_points_at_bad_recipient(client: TestClient, auth: dict[str, str]) -> None:
    resp = client.post(
        SEND_URL,
        json={"recipients": ["+15551234567", "12ab"], "message": "Hi"},
        headers=auth,
    )
    assert resp.status_code == 400
    detail = resp.json()["details"][0]
    assert detail["field"] == "recipients"
    assert "Invalid phone number format" in detail["message"]


def test_max_length_message_is_accepted(client: TestClient, auth: dict[str, str]) -> None:
    resp = client.post(
        SEND_URL,
        json={"recipients": ["(555) 123-4567"], "message": "x" * 1600},
        headers=auth,
    )
    assert resp.status_code == 201
