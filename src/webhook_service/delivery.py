"""Webhook delivery engine: signed POSTs, outcome classification, retries."""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import aiohttp
import structlog

from webhook_service.core.exceptions import RepositoryError, SubscriptionLookupError
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import (
    DeliveryAttempt,
    DeliveryLogStore,
    DeliveryResult,
    SubscriptionStore,
    WebhookDelivery,
    WebhookEnvelope,
    WebhookSubscription,
)
from webhook_service.retry import RetryPolicy, Transition
from webhook_service.signing import compute_signature, serialize_envelope
from webhook_service.subscription_filter import resolve_target

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-BMGlass-Signature"
EVENT_HEADER = "X-BMGlass-Event"
EVENT_ID_HEADER = "X-BMGlass-Event-Id"
ATTEMPT_HEADER = "X-BMGlass-Delivery-Attempt"

_MAX_ERROR_BODY = 500

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class AttemptOutcome:
    ok: bool
    http_status: int | None = None
    error: str | None = None
    duration_ms: float = 0.0


def build_delivery(
    subscription: WebhookSubscription,
    envelope: WebhookEnvelope,
    *,
    max_retries: int,
    status: DeliveryStatus = DeliveryStatus.PENDING,
    attempt_count: int = 0,
    next_attempt_at: datetime | None = None,
) -> WebhookDelivery:
    now = datetime.now(timezone.utc)
    return WebhookDelivery(
        event_id=envelope.event_id,
        business_id=subscription.business_id,
        event_type=envelope.event_type,
        payload=envelope.model_dump(mode="json"),
        target_url=subscription.url,
        secret=subscription.secret,
        status=status,
        attempt_count=attempt_count,
        max_retries=max_retries,
        next_attempt_at=next_attempt_at,
        last_attempt_at=now if attempt_count else None,
        created_at=now,
        updated_at=now,
    )


class WebhookDeliveryEngine:
    """Sends deliveries and drives them through the retry state machine.

    ``deliver`` is the blocking path: it retries in-process, sleeping
    between attempts, and returns only once the delivery is terminal.
    ``deliver_claimed`` performs exactly one attempt for a delivery claimed
    from the outbox and schedules the next one, so nothing waits.
    """

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryLogStore,
        session: aiohttp.ClientSession,
        *,
        policy: RetryPolicy | None = None,
        timeout_seconds: float = 5.0,
        sleep: SleepFn = asyncio.sleep,
    ):
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._session = session
        self._policy = policy or RetryPolicy()
        self._timeout_seconds = timeout_seconds
        self._sleep = sleep

    def _policy_for(self, delivery: WebhookDelivery) -> RetryPolicy:
        if delivery.max_retries == self._policy.max_retries:
            return self._policy
        return RetryPolicy(
            max_retries=delivery.max_retries,
            base_delay_seconds=self._policy.base_delay_seconds,
        )

    async def send(self, delivery: WebhookDelivery, attempt_number: int) -> AttemptOutcome:
        """POST the signed envelope once and classify the response."""
        envelope = WebhookEnvelope.model_validate(delivery.payload)
        body_bytes = serialize_envelope(envelope)
        headers = {
            "Content-Type": "application/json",
            EVENT_HEADER: delivery.event_type,
            EVENT_ID_HEADER: str(delivery.event_id),
            ATTEMPT_HEADER: str(attempt_number),
        }
        if delivery.secret:
            headers[SIGNATURE_HEADER] = compute_signature(delivery.secret, body_bytes)

        started = time.monotonic()
        try:
            async with self._session.post(
                delivery.target_url,
                data=body_bytes,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self._timeout_seconds),
                # a redirect would be replayed as a body-less GET
                allow_redirects=False,
            ) as resp:
                if 200 <= resp.status < 300:
                    return AttemptOutcome(True, resp.status, None, _elapsed_ms(started))
                text = (await resp.text(errors="replace"))[:_MAX_ERROR_BODY]
                error = f"HTTP {resp.status}: {text}" if text else f"HTTP {resp.status}"
                return AttemptOutcome(False, resp.status, error, _elapsed_ms(started))
        except asyncio.TimeoutError:
            error = f"Request timed out after {self._timeout_seconds:g}s"
        except aiohttp.ClientError as exc:
            error = str(exc) or type(exc).__name__
        return AttemptOutcome(False, None, error, _elapsed_ms(started))

    async def attempt(self, delivery: WebhookDelivery, attempt_number: int) -> AttemptOutcome:
        """Send once and append the attempt to the delivery's audit trail."""
        outcome = await self.send(delivery, attempt_number)
        await self._deliveries.record_attempt(
            DeliveryAttempt(
                event_id=delivery.event_id,
                replay_number=delivery.replay_count,
                attempt_number=attempt_number,
                success=outcome.ok,
                http_status=outcome.http_status,
                error_message=outcome.error,
                duration_ms=outcome.duration_ms,
            )
        )
        log = logger.bind(
            business_id=delivery.business_id,
            event_id=str(delivery.event_id),
            event_type=delivery.event_type,
            attempt=attempt_number,
            max_attempts=self._policy_for(delivery).max_attempts,
            http_status=outcome.http_status,
            duration_ms=outcome.duration_ms,
        )
        if outcome.ok:
            log.info("webhook_delivery attempt succeeded")
        else:
            log.warning("webhook_delivery attempt failed", error=outcome.error)
        return outcome

    async def deliver(self, business_id: str, event_type: str, data: Any) -> DeliveryResult:
        """Deliver one event to the business's endpoint, retrying in-process.

        Never raises: lookup and bookkeeping failures come back as an
        unsuccessful result.
        """
        try:
            lookup = await resolve_target(self._subscriptions, business_id, event_type)
        except SubscriptionLookupError as exc:
            logger.error(
                "webhook_delivery lookup failed",
                business_id=business_id,
                event_type=event_type,
                error=str(exc),
            )
            return DeliveryResult(success=False, message=str(exc))
        if not lookup.should_deliver:
            logger.info(
                "webhook_delivery skipped",
                business_id=business_id,
                event_type=event_type,
                reason=lookup.reason,
            )
            return DeliveryResult(success=False, skipped=True, message=lookup.reason)

        assert lookup.subscription is not None
        envelope = WebhookEnvelope(event_type=event_type, business_id=business_id, data=data)
        delivery = build_delivery(
            lookup.subscription,
            envelope,
            max_retries=self._policy.max_retries,
            status=DeliveryStatus.RETRYING,
            attempt_count=1,
        )
        try:
            await self._deliveries.record(delivery)
            return await self._run_inline(delivery)
        except RepositoryError as exc:
            logger.error(
                "webhook_delivery bookkeeping failed",
                business_id=business_id,
                event_id=str(delivery.event_id),
                event_type=event_type,
                error=str(exc),
            )
            return DeliveryResult(
                success=False,
                message=f"Failed to record webhook delivery: {exc}",
                event_id=delivery.event_id,
            )

    async def _run_inline(self, delivery: WebhookDelivery) -> DeliveryResult:
        attempt_number = 1
        while True:
            if attempt_number > 1:
                await self._deliveries.update_status(
                    delivery.event_id,
                    DeliveryStatus.RETRYING,
                    attempt_count=attempt_number,
                    error=delivery.error_message,
                    http_status=delivery.last_status_code,
                )
            outcome = await self.attempt(delivery, attempt_number)
            transition = self._policy.next_transition(attempt_number, outcome.ok)

            if transition.status.is_terminal:
                await self._finish(delivery, transition, attempt_number, outcome)
                return DeliveryResult(
                    success=outcome.ok,
                    status=outcome.http_status,
                    message=outcome.error,
                    retry_count=attempt_number - 1,
                    event_id=delivery.event_id,
                )

            await self._deliveries.update_status(
                delivery.event_id,
                DeliveryStatus.RETRYING,
                attempt_count=attempt_number,
                error=outcome.error,
                http_status=outcome.http_status,
            )
            delivery = delivery.model_copy(
                update={"error_message": outcome.error, "last_status_code": outcome.http_status}
            )
            assert transition.delay_seconds is not None
            await self._sleep(transition.delay_seconds)
            attempt_number += 1

    async def deliver_claimed(self, delivery: WebhookDelivery) -> Transition:
        """One attempt for an outbox delivery; reschedules it on failure."""
        attempt_number = delivery.attempt_count + 1
        outcome = await self.attempt(delivery, attempt_number)
        transition = self._policy_for(delivery).next_transition(attempt_number, outcome.ok)
        if transition.status.is_terminal:
            await self._finish(delivery, transition, attempt_number, outcome)
            return transition

        assert transition.delay_seconds is not None
        next_at = datetime.now(timezone.utc) + timedelta(seconds=transition.delay_seconds)
        await self._deliveries.update_status(
            delivery.event_id,
            DeliveryStatus.RETRYING,
            attempt_count=attempt_number,
            error=outcome.error,
            http_status=outcome.http_status,
            next_attempt_at=next_at,
        )
        return transition

    async def _finish(
        self,
        delivery: WebhookDelivery,
        transition: Transition,
        attempt_number: int,
        outcome: AttemptOutcome,
    ) -> None:
        await self._deliveries.update_status(
            delivery.event_id,
            transition.status,
            attempt_count=attempt_number,
            error=outcome.error,
            http_status=outcome.http_status,
        )
        log = logger.bind(
            business_id=delivery.business_id,
            event_id=str(delivery.event_id),
            event_type=delivery.event_type,
            attempts=attempt_number,
        )
        if transition.status is DeliveryStatus.SUCCESS:
            log.info("webhook_delivery succeeded", target_url=delivery.target_url)
        else:
            log.error("webhook_delivery failed", target_url=delivery.target_url, error=outcome.error)


def _elapsed_ms(started: float) -> float:
    return round((time.monotonic() - started) * 1000, 2)
