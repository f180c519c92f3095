"""Webhook domain service (configuration, emitting events, delivery history)."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, List
from uuid import UUID

import structlog
from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from webhook_service.core.exceptions import InvalidWebhookUrlError, UnknownEventTypeError
from webhook_service.delivery import build_delivery
from webhook_service.domain.enums import DeliveryStatus, WebhookEventType
from webhook_service.domain.transitions import validate_delivery_transition
from webhook_service.domain.webhooks import (
    DeliveryAttempt,
    DeliveryOutbox,
    DeliveryResult,
    SubscriptionStore,
    WebhookDelivery,
    WebhookEnvelope,
    WebhookSubscription,
)
from webhook_service.signing import generate_secret
from webhook_service.subscription_filter import TargetLookup, resolve_target

logger = structlog.get_logger(__name__)

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)

QUEUED_MESSAGE = "Delivery queued"


def validate_webhook_url(url: str) -> str:
    """Return ``url`` unchanged if it is an absolute http(s) URL."""
    try:
        _URL_ADAPTER.validate_python(url)
    except ValidationError as exc:
        raise InvalidWebhookUrlError("Invalid webhook URL") from exc
    return url


def validate_event_types(names) -> None:
    unknown = sorted(set(names) - WebhookEventType.values())
    if unknown:
        raise UnknownEventTypeError(f"Unsupported event types: {', '.join(unknown)}")


class WebhookService:
    def __init__(
        self,
        subscription_store: SubscriptionStore,
        delivery_outbox: DeliveryOutbox,
        *,
        max_retries: int = 3,
    ):
        self._subscriptions = subscription_store
        self._deliveries = delivery_outbox
        self._max_retries = max_retries

    async def save_config(
        self,
        *,
        business_id: str,
        url: str,
        events: dict[str, bool],
        secret: str | None = None,
    ) -> WebhookSubscription:
        """Create or replace the business's webhook configuration.

        Validation happens before storage is touched. An existing secret is
        kept unless a new one is supplied.
        """
        validate_webhook_url(url)
        validate_event_types(events)
        if secret is None:
            existing = await self._subscriptions.get(business_id)
            secret = existing.secret if existing and existing.secret else generate_secret()
        subscription = await self._subscriptions.upsert(
            business_id=business_id,
            url=url,
            events=events,
            secret=secret,
        )
        logger.info(
            "Webhook configuration updated",
            business_id=business_id,
            url=url,
            events=sorted(name for name, enabled in events.items() if enabled),
        )
        return subscription

    async def get_config(self, business_id: str) -> WebhookSubscription | None:
        return await self._subscriptions.get(business_id)

    async def delete_config(self, business_id: str) -> None:
        await self._subscriptions.delete(business_id)

    async def rotate_secret(self, business_id: str) -> WebhookSubscription:
        return await self._subscriptions.rotate_secret(business_id, generate_secret())

    async def resolve_target(self, business_id: str, event_type: str) -> TargetLookup:
        return await resolve_target(self._subscriptions, business_id, event_type)

    async def emit(self, *, business_id: str, event_type: str, data: Any) -> DeliveryResult:
        """Queue an event for asynchronous delivery and return immediately."""
        validate_event_types([event_type])
        lookup = await self.resolve_target(business_id, event_type)
        if not lookup.should_deliver:
            return DeliveryResult(success=False, skipped=True, message=lookup.reason)
        assert lookup.subscription is not None

        envelope = WebhookEnvelope(event_type=event_type, business_id=business_id, data=data)
        delivery = build_delivery(
            lookup.subscription,
            envelope,
            max_retries=self._max_retries,
            next_attempt_at=datetime.now(timezone.utc),
        )
        await self._deliveries.record(delivery)
        logger.info(
            "webhook_delivery queued",
            business_id=business_id,
            event_type=event_type,
            event_id=str(delivery.event_id),
        )
        return DeliveryResult(success=True, message=QUEUED_MESSAGE, event_id=delivery.event_id)

    async def list_deliveries(
        self,
        business_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDelivery], int]:
        return await self._deliveries.list_by_business(
            business_id, status=status, limit=limit, offset=offset
        )

    async def get_delivery(
        self, business_id: str, event_id: UUID
    ) -> tuple[WebhookDelivery, List[DeliveryAttempt]]:
        delivery = await self._deliveries.get(business_id, event_id)
        attempts = await self._deliveries.list_attempts(event_id)
        return delivery, attempts

    async def replay_delivery(self, business_id: str, event_id: UUID) -> None:
        """Re-queue a finished delivery; the receiver sees the same event id.

        The status check is repeated by ``requeue`` in the same statement that
        resets the row, so a claim racing with the replay wins.
        """
        delivery = await self._deliveries.get(business_id, event_id)
        validate_delivery_transition(delivery.status, DeliveryStatus.PENDING)
        await self._deliveries.requeue(business_id, event_id)
        logger.info(
            "webhook_delivery replay requested",
            business_id=business_id,
            event_id=str(event_id),
            previous_status=delivery.status.value,
        )
