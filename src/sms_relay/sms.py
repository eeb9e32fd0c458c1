from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

# Optional leading "+", then 7-15 digits once separators are removed.
PHONE_RE = re.compile(r"^\+?[1-9]\d{6,14}$")
PHONE_SEPARATORS_RE = re.compile(r"[\s\-.()]")


def is_phone_number(value: str) -> bool:
    return PHONE_RE.match(PHONE_SEPARATORS_RE.sub("", value)) is not None


def _check_recipients(recipients: list[str]) -> list[str]:
    for recipient in recipients:
        if not is_phone_number(recipient):
            raise ValueError(f"Invalid phone number format: {recipient!r}")
    return recipients


# --- Requests ---


class SendSmsRequest(BaseModel):
    recipients: list[str] = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=1600)
    provider: Literal["twilio", "vonage", "aws"] | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("recipients")
    @classmethod
    def recipients_are_phones(cls, value: list[str]) -> list[str]:
        return _check_recipients(value)


class ShareLocationRequest(BaseModel):
    recipients: list[str] = Field(..., min_length=1)
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    label: str | None = Field(default=None, max_length=100)
    custom_message: str | None = None

    @field_validator("recipients")
    @classmethod
    def recipients_are_phones(cls, value: list[str]) -> list[str]:
        return _check_recipients(value)


# --- Responses ---


class RecipientResult(BaseModel):
    recipient: str
    status: Literal["sent", "failed"]
    provider_id: str | None = None
    error: str | None = None


class SendSmsResponse(BaseModel):
    message_id: str
    status: Literal["sent", "partial"]
    sent_count: int
    failed_count: int
    results: list[RecipientResult]


class Location(BaseModel):
    lat: float
    lon: float


class ShareLocationResponse(BaseModel):
    message_id: str
    location: Location
    map_link: str
    sent_count: int
    failed_count: int
    results: list[RecipientResult]


class DeliveryInfo(BaseModel):
    recipient: str
    status: str
    provider_id: str | None
    created_at: datetime
    updated_at: datetime


class SmsStatusResponse(BaseModel):
    message_id: str
    status: str
    timestamp: datetime
    recipients_count: int
    sent_count: int
    failed_count: int
    deliveries: list[DeliveryInfo]


class HistoryEntry(BaseModel):
    id: str
    recipients: list[str]
    message: str
    timestamp: datetime
    status: str
    sent_count: int
    failed_count: int
    metadata: dict[str, Any]


class HistoryResponse(BaseModel):
    messages: list[HistoryEntry]
    total: int
    limit: int
