"""Webhook domain primitives."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from webhook_service.domain.enums import DeliveryStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WebhookSubscription(BaseModel):
    """A business's webhook endpoint and the events it wants."""

    business_id: str
    url: str
    events: dict[str, bool] = Field(default_factory=dict)
    secret: str | None = None
    created_at: datetime
    updated_at: datetime

    def is_subscribed(self, event_type: str) -> bool:
        return bool(self.events.get(event_type, False))

    def public_view(self) -> dict[str, Any]:
        """JSON view with the signing secret stripped."""
        return self.model_dump(mode="json", exclude={"secret"})


class WebhookEnvelope(BaseModel):
    """The JSON body POSTed to a business endpoint."""

    event_type: str
    event_id: UUID = Field(default_factory=uuid4)
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())
    business_id: str
    data: Any = None


class WebhookDelivery(BaseModel):
    """Outbox row for one logical event; all retries share ``event_id``."""

    event_id: UUID
    business_id: str
    event_type: str
    payload: dict[str, Any]
    target_url: str
    secret: str | None = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    attempt_count: int = 0
    max_retries: int = 3
    replay_count: int = 0
    last_status_code: int | None = None
    error_message: str | None = None
    next_attempt_at: datetime | None = None
    locked_at: datetime | None = None
    last_attempt_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def public_view(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"secret"})


class DeliveryAttempt(BaseModel):
    """A single HTTP POST try."""

    event_id: UUID
    replay_number: int = 0
    attempt_number: int
    success: bool
    http_status: int | None = None
    error_message: str | None = None
    duration_ms: float | None = None
    attempted_at: datetime = Field(default_factory=utcnow)


class DeliveryResult(BaseModel):
    """Outcome returned to whoever triggered a delivery."""

    success: bool
    status: int | None = None
    message: str | None = None
    retry_count: int = 0
    event_id: UUID | None = None
    skipped: bool = False


class SubscriptionStore(Protocol):
    async def get(self, business_id: str) -> WebhookSubscription | None: ...

    async def upsert(
        self,
        *,
        business_id: str,
        url: str,
        events: dict[str, bool],
        secret: str,
    ) -> WebhookSubscription: ...

    async def delete(self, business_id: str) -> None: ...

    async def rotate_secret(self, business_id: str, secret: str) -> WebhookSubscription: ...


class DeliveryLogStore(Protocol):
    """Durable delivery bookkeeping keyed by event id."""

    async def record(self, delivery: WebhookDelivery) -> WebhookDelivery: ...

    async def update_status(
        self,
        event_id: UUID,
        status: DeliveryStatus,
        *,
        attempt_count: int,
        error: str | None = None,
        http_status: int | None = None,
        next_attempt_at: datetime | None = None,
    ) -> None: ...

    async def record_attempt(self, attempt: DeliveryAttempt) -> None: ...


class DeliveryOutbox(DeliveryLogStore, Protocol):
    """Delivery log plus the queue operations used by the dispatcher and API."""

    async def claim_due(self, *, limit: int) -> list[WebhookDelivery]: ...

    async def get(self, business_id: str, event_id: UUID) -> WebhookDelivery: ...

    async def list_by_business(
        self,
        business_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[WebhookDelivery], int]: ...

    async def list_attempts(self, event_id: UUID) -> list[DeliveryAttempt]: ...

    async def requeue(self, business_id: str, event_id: UUID) -> None:
        """Reset a pending or finished delivery; raises InvalidStatusTransitionError otherwise."""

    async def reclaim_stuck(self, locked_before: datetime) -> int: ...

    async def delete_old_succeeded(self, created_before: datetime) -> int: ...
