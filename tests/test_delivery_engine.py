"""Delivery engine tests against a real local HTTP receiver.

Backoff sleeps go through a recording fake so the suite never waits
seconds; one test uses a scaled-down real sleep to check wall time.
"""
from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone

import pytest
from aiohttp import web

from tests.fakes import FailingDeliveryOutbox, FailingSubscriptionStore
from webhook_service.delivery import (
    ATTEMPT_HEADER,
    EVENT_HEADER,
    EVENT_ID_HEADER,
    SIGNATURE_HEADER,
    WebhookDeliveryEngine,
    build_delivery,
)
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import WebhookEnvelope
from webhook_service.retry import RetryPolicy
from webhook_service.signing import verify_signature
from webhook_service.subscription_filter import NO_CONFIG_MESSAGE, NOT_SUBSCRIBED_MESSAGE

BUSINESS = "biz_42"


@pytest.mark.asyncio
async def test_delivers_signed_envelope(engine, subscriptions, outbox, receiver):
    sub = subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})

    result = await engine.deliver(BUSINESS, "payment.success", {"amount": 100})

    assert result.success is True
    assert result.status == 200
    assert result.retry_count == 0
    assert len(receiver.requests) == 1

    sent = receiver.requests[0]
    assert sent.headers["Content-Type"] == "application/json"
    assert sent.headers[EVENT_HEADER] == "payment.success"
    assert sent.headers[ATTEMPT_HEADER] == "1"
    assert verify_signature(sub.secret, sent.body, sent.headers[SIGNATURE_HEADER])

    body = json.loads(sent.body)
    assert body["event_type"] == "payment.success"
    assert body["business_id"] == BUSINESS
    assert body["data"] == {"amount": 100}
    assert body["event_id"] == sent.headers[EVENT_ID_HEADER] == str(result.event_id)

    stored = outbox.deliveries[result.event_id]
    assert stored.status is DeliveryStatus.SUCCESS
    assert stored.attempt_count == 1
    assert stored.secret == sub.secret


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "events",
    [
        {},
        {"payment.failed": True},
        {"payment.success": False, "payment.failed": True},
    ],
)
async def test_unsubscribed_event_makes_no_http_call(
    engine, subscriptions, outbox, receiver, fake_sleep, events
):
    subscriptions.add(BUSINESS, receiver.url, events)

    started = time.monotonic()
    result = await engine.deliver(BUSINESS, "payment.success", {"amount": 1})
    elapsed = time.monotonic() - started

    assert result.success is False
    assert result.skipped is True
    assert result.message == NOT_SUBSCRIBED_MESSAGE
    assert receiver.requests == []
    assert outbox.deliveries == {}
    assert fake_sleep.delays == []
    assert elapsed < 0.5


@pytest.mark.asyncio
async def test_missing_configuration_is_skipped(engine, receiver):
    result = await engine.deliver("unknown", "payment.success", {})
    assert result.success is False
    assert result.skipped is True
    assert result.message == NO_CONFIG_MESSAGE
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_configuration_lookup_failure_is_not_retried(outbox, http_session, fake_sleep):
    engine = WebhookDeliveryEngine(
        FailingSubscriptionStore(), outbox, http_session, sleep=fake_sleep
    )
    result = await engine.deliver(BUSINESS, "payment.success", {})
    assert result.success is False
    assert result.skipped is False
    assert "Failed to load webhook configuration" in result.message
    assert fake_sleep.delays == []
    assert outbox.deliveries == {}


@pytest.mark.asyncio
@pytest.mark.parametrize("failures", [0, 1, 2, 3, 4, 6])
async def test_attempt_count_follows_failures(
    engine, subscriptions, outbox, receiver, fake_sleep, failures
):
    receiver.statuses = [500] * failures + [200]
    subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})

    result = await engine.deliver(BUSINESS, "payment.success", {})

    expected_attempts = 1 + min(failures, 3)
    assert len(receiver.requests) == expected_attempts
    assert fake_sleep.delays == [2 ** (k - 1) for k in range(1, expected_attempts)]
    assert result.success is (failures <= 3)
    assert result.retry_count == expected_attempts - 1
    assert len(outbox.attempts) == expected_attempts


@pytest.mark.asyncio
async def test_all_attempts_failing(engine, subscriptions, outbox, receiver, fake_sleep):
    receiver.statuses = [503]
    subscriptions.add(BUSINESS, receiver.url, {"payment.failed": True})

    result = await engine.deliver(BUSINESS, "payment.failed", {"reason": "declined"})

    assert result.success is False
    assert result.retry_count == 3
    assert result.status == 503
    assert result.message == "HTTP 503: receiver error"
    assert fake_sleep.delays == [1, 2, 4]

    stored = outbox.deliveries[result.event_id]
    assert stored.status is DeliveryStatus.FAILED
    assert stored.attempt_count == 4
    assert stored.error_message == "HTTP 503: receiver error"
    assert [a.attempt_number for a in outbox.attempts] == [1, 2, 3, 4]
    assert not any(a.success for a in outbox.attempts)


@pytest.mark.asyncio
async def test_retries_reuse_event_id(engine, subscriptions, receiver):
    receiver.statuses = [500, 500, 500, 200]
    sub = subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})

    result = await engine.deliver(BUSINESS, "payment.success", {"amount": 5})

    assert result.success is True
    assert result.retry_count == 3
    event_ids = {r.headers[EVENT_ID_HEADER] for r in receiver.requests}
    assert event_ids == {str(result.event_id)}
    bodies = {r.body for r in receiver.requests}
    assert len(bodies) == 1
    assert [r.headers[ATTEMPT_HEADER] for r in receiver.requests] == ["1", "2", "3", "4"]
    for sent in receiver.requests:
        assert verify_signature(sub.secret, sent.body, sent.headers[SIGNATURE_HEADER])


@pytest.mark.asyncio
async def test_status_history_during_retries(engine, subscriptions, outbox, receiver):
    receiver.statuses = [500, 200]
    subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})

    result = await engine.deliver(BUSINESS, "payment.success", {})

    history = [(status, count) for event_id, status, count in outbox.status_history]
    assert history[0] == (DeliveryStatus.RETRYING, 1)
    assert history[-1] == (DeliveryStatus.SUCCESS, 2)
    assert all(eid == result.event_id for eid, _, _ in outbox.status_history)


@pytest.mark.asyncio
async def test_backoff_elapses_real_time(subscriptions, outbox, http_session, receiver):
    receiver.statuses = [500, 500, 500, 200]
    subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})
    engine = WebhookDeliveryEngine(
        subscriptions,
        outbox,
        http_session,
        policy=RetryPolicy(base_delay_seconds=0.02),
    )

    started = time.monotonic()
    result = await engine.deliver(BUSINESS, "payment.success", {})
    elapsed = time.monotonic() - started

    assert result.success is True
    assert result.retry_count == 3
    assert elapsed >= 0.02 * (1 + 2 + 4)


@pytest.mark.asyncio
async def test_timeout_counts_as_failure(aiohttp_server, subscriptions, outbox, http_session, fake_sleep):
    async def slow(_request: web.Request) -> web.Response:
        await asyncio.sleep(1)
        return web.Response(status=200)

    app = web.Application()
    app.router.add_post("/hook", slow)
    server = await aiohttp_server(app)
    subscriptions.add(BUSINESS, str(server.make_url("/hook")), {"payment.success": True})
    engine = WebhookDeliveryEngine(
        subscriptions,
        outbox,
        http_session,
        policy=RetryPolicy(max_retries=0),
        timeout_seconds=0.1,
        sleep=fake_sleep,
    )

    result = await engine.deliver(BUSINESS, "payment.success", {})

    assert result.success is False
    assert result.status is None
    assert result.message == "Request timed out after 0.1s"


@pytest.mark.asyncio
async def test_connection_error_counts_as_failure(subscriptions, outbox, http_session, fake_sleep):
    subscriptions.add(BUSINESS, "http://127.0.0.1:1/hook", {"payment.success": True})
    engine = WebhookDeliveryEngine(subscriptions, outbox, http_session, sleep=fake_sleep)

    result = await engine.deliver(BUSINESS, "payment.success", {})

    assert result.success is False
    assert result.retry_count == 3
    assert result.status is None
    assert result.message
    assert fake_sleep.delays == [1, 2, 4]


def _queued_delivery(subscription, *, attempt_count=0):
    envelope = WebhookEnvelope(event_type="payment.success", business_id=BUSINESS, data={})
    delivery = build_delivery(
        subscription,
        envelope,
        max_retries=3,
        attempt_count=attempt_count,
        next_attempt_at=datetime.now(timezone.utc),
    )
    return delivery


@pytest.mark.asyncio
async def test_claimed_delivery_is_rescheduled_on_failure(engine, subscriptions, outbox, receiver):
    receiver.statuses = [500]
    sub = subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})
    delivery = await outbox.record(_queued_delivery(sub))

    before = datetime.now(timezone.utc)
    transition = await engine.deliver_claimed(delivery)

    assert transition.status is DeliveryStatus.RETRYING
    assert transition.delay_seconds == 1
    stored = outbox.deliveries[delivery.event_id]
    assert stored.status is DeliveryStatus.RETRYING
    assert stored.attempt_count == 1
    assert stored.next_attempt_at is not None and stored.next_attempt_at > before
    assert stored.last_status_code == 500


@pytest.mark.asyncio
async def test_claimed_delivery_fails_after_last_retry(engine, subscriptions, outbox, receiver):
    receiver.statuses = [500]
    sub = subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})
    delivery = await outbox.record(_queued_delivery(sub, attempt_count=3))

    transition = await engine.deliver_claimed(delivery)

    assert transition.status is DeliveryStatus.FAILED
    stored = outbox.deliveries[delivery.event_id]
    assert stored.status is DeliveryStatus.FAILED
    assert stored.attempt_count == 4
    assert stored.next_attempt_at is None
    assert receiver.requests[0].headers[ATTEMPT_HEADER] == "4"


@pytest.mark.asyncio
async def test_claimed_delivery_uses_stored_secret(engine, subscriptions, outbox, receiver):
    sub = subscriptions.add(BUSINESS, receiver.url, {"payment.success": True}, secret="old-secret-000000")
    delivery = await outbox.record(_queued_delivery(sub))
    await subscriptions.rotate_secret(BUSINESS, "new-secret-111111")

    await engine.deliver_claimed(delivery)

    sent = receiver.requests[0]
    assert verify_signature("old-secret-000000", sent.body, sent.headers[SIGNATURE_HEADER])
    assert outbox.deliveries[delivery.event_id].status is DeliveryStatus.SUCCESS


@pytest.mark.asyncio
async def test_redirect_is_not_followed(aiohttp_server, subscriptions, outbox, http_session, fake_sleep):
    seen: list[str] = []

    async def moved(request: web.Request) -> web.Response:
        seen.append(request.method)
        raise web.HTTPFound("/landing")

    async def landing(request: web.Request) -> web.Response:
        seen.append(request.method)
        return web.Response(status=200)

    app = web.Application()
    app.router.add_post("/hook", moved)
    app.router.add_route("*", "/landing", landing)
    server = await aiohttp_server(app)
    subscriptions.add(BUSINESS, str(server.make_url("/hook")), {"payment.success": True})
    engine = WebhookDeliveryEngine(subscriptions, outbox, http_session, sleep=fake_sleep)

    result = await engine.deliver(BUSINESS, "payment.success", {"amount": 7})

    assert result.success is False
    assert result.status == 302
    assert result.retry_count == 3
    assert seen == ["POST"] * 4
    stored = outbox.deliveries[result.event_id]
    assert stored.status is DeliveryStatus.FAILED
    assert stored.last_status_code == 302


@pytest.mark.asyncio
async def test_unrecordable_delivery_is_reported_not_raised(
    subscriptions, http_session, receiver, fake_sleep
):
    subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})
    engine = WebhookDeliveryEngine(
        subscriptions, FailingDeliveryOutbox(), http_session, sleep=fake_sleep
    )

    result = await engine.deliver(BUSINESS, "payment.success", {})

    assert result.success is False
    assert result.skipped is False
    assert "db down" in result.message
    assert result.event_id is not None
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_status_write_failure_mid_retry_is_reported(
    subscriptions, http_session, receiver, fake_sleep
):
    receiver.statuses = [500]
    subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})
    outbox = FailingDeliveryOutbox(healthy_writes=1)
    engine = WebhookDeliveryEngine(subscriptions, outbox, http_session, sleep=fake_sleep)

    result = await engine.deliver(BUSINESS, "payment.success", {})

    assert result.success is False
    assert "db down" in result.message
    assert len(receiver.requests) == 1
    assert fake_sleep.delays == []


@pytest.mark.asyncio
async def test_replayed_delivery_numbers_attempts_per_replay(
    engine, subscriptions, outbox, receiver
):
    receiver.statuses = [500, 500, 500, 500, 200]
    subscriptions.add(BUSINESS, receiver.url, {"payment.success": True})
    result = await engine.deliver(BUSINESS, "payment.success", {})
    assert result.success is False

    await outbox.requeue(BUSINESS, result.event_id)
    replayed = outbox.deliveries[result.event_id]
    assert replayed.replay_count == 1
    assert replayed.attempt_count == 0

    [claimed] = await outbox.claim_due(limit=1)
    transition = await engine.deliver_claimed(claimed)
    assert transition.status is DeliveryStatus.SUCCESS

    attempts = await outbox.list_attempts(result.event_id)
    keys = [(a.replay_number, a.attempt_number) for a in attempts]
    assert keys == [(0, 1), (0, 2), (0, 3), (0, 4), (1, 1)]
    assert len(set(keys)) == len(keys)
    assert receiver.requests[-1].headers[ATTEMPT_HEADER] == "1"
