"""Background webhook dispatcher (polls the outbox and delivers HTTP POSTs)."""
from __future__ import annotations

import asyncio

import structlog
from aiohttp import web

from webhook_service.core.exceptions import RepositoryError
from webhook_service.delivery import WebhookDeliveryEngine
from webhook_service.domain.webhooks import DeliveryOutbox, WebhookDelivery

logger = structlog.get_logger(__name__)

_DISPATCHER_TASK_KEY = "webhook_dispatcher_task"


class WebhookDispatcher:
    """Claims due deliveries and runs one attempt for each.

    Retries are not awaited here: a failed attempt is rescheduled by the
    engine and picked up by a later sweep once ``next_attempt_at`` passes.
    """

    def __init__(
        self,
        outbox: DeliveryOutbox,
        engine: WebhookDeliveryEngine,
        *,
        batch_size: int = 100,
        max_concurrency: int = 10,
        interval_seconds: float = 0.5,
    ):
        self._outbox = outbox
        self._engine = engine
        self._batch_size = batch_size
        self._max_concurrency = max(1, max_concurrency)
        self._interval_seconds = interval_seconds

    async def dispatch_once(self) -> int:
        """Process one batch of due deliveries. Returns how many were claimed."""
        due = await self._outbox.claim_due(limit=self._batch_size)
        if not due:
            return 0

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _run(delivery: WebhookDelivery) -> None:
            async with semaphore:
                await self._engine.deliver_claimed(delivery)

        results = await asyncio.gather(*(_run(d) for d in due), return_exceptions=True)
        for delivery, result in zip(due, results):
            # the claim stays in_progress; the reclaim worker releases it later
            if isinstance(result, Exception):
                logger.error(
                    "webhook_dispatch delivery crashed",
                    event_id=str(delivery.event_id),
                    business_id=delivery.business_id,
                    error=str(result),
                    error_type=type(result).__name__,
                )
        return len(due)

    async def run(self) -> None:
        logger.info(
            "webhook_dispatcher started",
            batch_size=self._batch_size,
            max_concurrency=self._max_concurrency,
        )
        while True:
            try:
                if not await self.dispatch_once():
                    await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                logger.info("webhook_dispatcher stopped")
                raise
            except RepositoryError:
                logger.exception("webhook_dispatcher sweep failed")
                await asyncio.sleep(self._interval_seconds)

    async def start(self, app: web.Application) -> None:
        app[_DISPATCHER_TASK_KEY] = asyncio.create_task(self.run())

    async def stop(self, app: web.Application) -> None:
        task = app.get(_DISPATCHER_TASK_KEY)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
