from __future__ import annotations

from typing import Protocol

from twilio.rest import Client

from .config import Settings, get_settings


class SmsProvider(Protocol):
    """Anything that can hand one SMS to a carrier and return its message id."""

    @property
    def configured(self) -> bool: ...

    def send(self, to: str, body: str, status_callback: str | None = None) -> str: ...


def get_twilio_client(settings: Settings | None = None) -> Client:
    settings = settings or get_settings()

    if not settings.twilio_account_sid or not settings.twilio_auth_token:
        raise RuntimeError(
            "Twilio credentials are not configured (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN)"
        )

    return Client(settings.twilio_account_sid, settings.twilio_auth_token)


class TwilioProvider:
    """
    SmsProvider backed by the Twilio REST API.

    The client is built on first use, so a service without credentials still
    starts; every send then fails with a configuration error instead.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._client: Client | None = None

    @property
    def configured(self) -> bool:
        return self.settings.twilio_configured

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = get_twilio_client(self.settings)
        return self._client

    def send(self, to: str, body: str, status_callback: str | None = None) -> str:
        """
        Send an SMS using the configured Twilio account and return its SID.

        Errors from the SDK (TwilioRestException, transport errors) propagate.
        """
        if not self.settings.twilio_from_number:
            raise RuntimeError("TWILIO_FROM_NUMBER is not configured")

        params: dict[str, str] = {
            "to": to,
            "from_": self.settings.twilio_from_number,
            "body": body,
        }
        if status_callback:
            params["status_callback"] = status_callback

        message = self.client.messages.create(**params)
        return str(message.sid)
