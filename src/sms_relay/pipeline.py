from __future__ import annotations

import logging
import secrets
import string
import time
from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Final, Literal

from .config import Settings
from .sms import SendSmsRequest, ShareLocationRequest
from .store import Result, SendRecord, StatusStore, utcnow
from .twilio_client import SmsProvider

logger = logging.getLogger(__name__)

PREVIEW_CHARS: Final[int] = 100
DEFAULT_LOCATION_LABEL: Final[str] = "Emergency Location"

_ID_ALPHABET: Final[str] = string.digits + string.ascii_lowercase


def new_message_id(prefix: str = "msg") -> str:
    """
    Build an opaque id like ``msg_1718030000123_k3j9x0a1b``.

    Millisecond timestamp plus nine random base-36 characters.
    """
    millis = time.time_ns() // 1_000_000
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{millis}_{suffix}"


def truncate_preview(text: str, limit: int = PREVIEW_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def overall_status(results: Sequence[Result]) -> Literal["sent", "partial"]:
    return "sent" if all(r.status == "sent" for r in results) else "partial"


def format_coordinate(value: float) -> str:
    """Render 40.0 as "40", 40.7128 as "40.7128" and -5e-05 as "-0.00005"."""
    if value.is_integer():
        return str(int(value))
    return format(Decimal(repr(value)), "f")


def build_map_link(lat: float, lon: float) -> str:
    return f"https://maps.google.com/?q={format_coordinate(lat)},{format_coordinate(lon)}"


def build_location_message(
    map_link: str, label: str | None = None, custom_message: str | None = None
) -> str:
    if custom_message:
        return f"{custom_message}\n\n{map_link}"
    return f"{label if label is not None else DEFAULT_LOCATION_LABEL}\n\nLocation: {map_link}"


def send_one(
    provider: SmsProvider, recipient: str, body: str, status_callback: str | None = None
) -> Result:
    """One provider call. Any error becomes a failed Result instead of propagating."""
    try:
        provider_id = provider.send(recipient, body, status_callback=status_callback)
    except Exception as exc:
        logger.warning(
            "dispatch.recipient_failed",
            extra={"recipient": recipient, "error": str(exc)},
        )
        return Result.failed(recipient, str(exc))
    return Result.sent(recipient, provider_id)


def send_to_recipients(
    provider: SmsProvider,
    recipients: Sequence[str],
    body: str,
    status_callback: str | None = None,
) -> list[Result]:
    """
    Send ``body`` to every recipient, strictly one after another.

    Returns exactly one Result per recipient, in input order; a failure for one
    recipient never stops the others.
    """
    return [send_one(provider, r, body, status_callback) for r in recipients]


def dispatch_sms(
    store: StatusStore,
    provider: SmsProvider,
    settings: Settings,
    request: SendSmsRequest,
) -> SendRecord:
    """
    Core send-SMS flow:
    - allocate a message id
    - send to each recipient with a delivery-status callback
    - track delivery state for every accepted recipient
    - append the SendRecord to history
    """
    message_id = new_message_id("msg")
    callback = settings.status_callback_url(message_id)

    logger.info(
        "dispatch.start",
        extra={"message_id": message_id, "recipients": len(request.recipients)},
    )

    results = send_to_recipients(provider, request.recipients, request.message, callback)

    for result in results:
        if result.status == "sent":
            store.track_delivery(message_id, result.recipient, result.provider_id)

    record = SendRecord(
        id=message_id,
        recipients=tuple(request.recipients),
        message=request.message,
        timestamp=utcnow(),
        status=overall_status(results),
        results=tuple(results),
        metadata=dict(request.metadata),
    )
    store.add_record(record)

    logger.info(
        "dispatch.done",
        extra={
            "message_id": message_id,
            "status": record.status,
            "sent_count": record.sent_count,
            "failed_count": record.failed_count,
        },
    )
    return record


@dataclass
class LocationShare:
    message_id: str
    lat: float
    lon: float
    map_link: str
    body: str
    results: list[Result]

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.results if r.status == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")


def share_location(provider: SmsProvider, request: ShareLocationRequest) -> LocationShare:
    """
    Send a map link to every recipient.

    Same per-recipient loop as dispatch_sms, but no status callback and no
    SendRecord: location shares never show up in history or status lookups.
    """
    message_id = new_message_id("loc")
    map_link = build_map_link(request.lat, request.lon)
    body = build_location_message(map_link, request.label, request.custom_message)

    logger.info(
        "location.start",
        extra={"message_id": message_id, "recipients": len(request.recipients)},
    )

    results = send_to_recipients(provider, request.recipients, body)
    share = LocationShare(
        message_id=message_id,
        lat=request.lat,
        lon=request.lon,
        map_link=map_link,
        body=body,
        results=results,
    )

    logger.info(
        "location.done",
        extra={
            "message_id": message_id,
            "sent_count": share.sent_count,
            "failed_count": share.failed_count,
        },
    )
    return share
