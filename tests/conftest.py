from __future__ import annotations

from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from sms_relay.config import Settings
from sms_relay.main import create_app
from sms_relay.store import StatusStore

API_KEY = "test-key"


class FakeProvider:
    """Fake SmsProvider that records every send and fails for chosen numbers."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_for = fail_for or set()
        self.configured = True

    def send(self, to: str, body: str, status_callback: str | None = None) -> str:
        self.sent.append({"to": to, "body": body, "status_callback": status_callback})
        if to in self.fail_for:
            raise RuntimeError(f"Unable to create record: The 'To' number {to} is not valid")
        return f"SM{len(self.sent):032d}"


@pytest.fixture
def settings() -> Settings:
    return Settings(
        client_api_key=API_KEY,
        base_url="https://relay.example.org",
        environment="test",
        twilio_account_sid=None,
        twilio_auth_token=None,
        twilio_from_number=None,
        allowed_origins=["http://localhost:3000"],
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def store() -> StatusStore:
    return StatusStore()


@pytest.fixture
def app(settings: Settings, provider: FakeProvider, store: StatusStore) -> FastAPI:
    return create_app(settings=settings, provider=provider, store=store)


@pytest.fixture
def client(app: FastAPI) -> TestClient:
    return TestClient(app)


@pytest.fixture
def auth() -> dict[str, str]:
    return {"X-API-Key": API_KEY}
