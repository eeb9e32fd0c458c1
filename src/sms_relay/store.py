from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

RecipientStatus = Literal["sent", "failed"]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Result:
    """Outcome of one provider call for one recipient."""

    recipient: str
    status: RecipientStatus
    provider_id: str | None = None
    error: str | None = None

    @classmethod
    def sent(cls, recipient: str, provider_id: str) -> Result:
        return cls(recipient=recipient, status="sent", provider_id=provider_id)

    @classmethod
    def failed(cls, recipient: str, error: str) -> Result:
        return cls(recipient=recipient, status="failed", error=error)


@dataclass(frozen=True)
class SendRecord:
    id: str
    recipients: tuple[str, ...]
    message: str
    timestamp: datetime
    status: Literal["sent", "partial"]
    results: tuple[Result, ...]
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def sent_count(self) -> int:
        return sum(1 for r in self.results if r.status == "sent")

    @property
    def failed_count(self) -> int:
        return sum(1 for r in self.results if r.status == "failed")


@dataclass
class DeliveryStatus:
    message_id: str
    recipient: str
    status: str
    provider_id: str | None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


class StatusStore:
    """
    Process-lifetime storage for send history and per-recipient delivery state.

    One instance is created per application and handed to the request
    handlers; nothing survives a restart. There is no locking: every
    operation is a single list append, dict lookup or attribute assignment.
    """

    def __init__(self) -> None:
        self._history: list[SendRecord] = []
        self._deliveries: dict[tuple[str, str], DeliveryStatus] = {}

    def __len__(self) -> int:
        return len(self._history)

    def ping(self) -> bool:
        return True

    # --- Send history ---

    def add_record(self, record: SendRecord) -> None:
        self._history.append(record)

    def get_record(self, message_id: str) -> SendRecord | None:
        for record in self._history:
            if record.id == message_id:
                return record
        return None

    def list_records(
        self, limit: int, since: datetime | None = None
    ) -> tuple[list[SendRecord], int]:
        """
        Return up to ``limit`` records newest-first, plus the number of records
        that matched the ``since`` filter before the cap was applied.
        """
        # History is append-only, so reverse insertion order is newest-first.
        matching = [
            r for r in reversed(self._history) if since is None or r.timestamp >= since
        ]
        return matching[:limit], len(matching)

    # --- Delivery status ---

    def track_delivery(
        self, message_id: str, recipient: str, provider_id: str | None, status: str = "sent"
    ) -> DeliveryStatus:
        entry = DeliveryStatus(
            message_id=message_id,
            recipient=recipient,
            status=status,
            provider_id=provider_id,
        )
        self._deliveries[(message_id, recipient)] = entry
        return entry

    def get_delivery(self, message_id: str, recipient: str) -> DeliveryStatus | None:
        return self._deliveries.get((message_id, recipient))

    def deliveries_for(self, message_id: str) -> list[DeliveryStatus]:
        return [d for (mid, _), d in self._deliveries.items() if mid == message_id]

    def update_delivery(
        self,
        message_id: str,
        recipient: str,
        status: str,
        provider_id: str | None = None,
    ) -> bool:
        """
        Apply a provider status callback.

        Returns False (and changes nothing) when the pair was never tracked.
        """
        entry = self._deliveries.get((message_id, recipient))
        if entry is None:
            return False

        entry.status = status
        if provider_id:
            entry.provider_id = provider_id
        entry.updated_at = utcnow()
        return True
