"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator

import structlog
from aiohttp import ClientSession, ClientTimeout, web

from bmglass_common.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from bmglass_common.db.migrations import create_migration_runner
from bmglass_common.db.pool import get_pool, pool_context
from bmglass_common.logging_config import configure_logging
from webhook_service.api.router import setup_routes
from webhook_service.delivery import WebhookDeliveryEngine
from webhook_service.domain.webhooks import DeliveryOutbox, SubscriptionStore
from webhook_service.repositories import WebhookDeliveryRepository, WebhookSubscriptionRepository
from webhook_service.retry import RetryPolicy
from webhook_service.services.dependencies import (
    DELIVERY_ENGINE_KEY,
    SETTINGS_KEY,
    WEBHOOK_SERVICE_KEY,
)
from webhook_service.services.webhooks import WebhookService
from webhook_service.settings import Settings, get_settings
from webhook_service.webhooks_dispatcher import WebhookDispatcher
from webhook_service.workers import build_worker

logger = structlog.get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
MIGRATIONS_PATHS = [
    PROJECT_ROOT / "migrations",
    Path("/app/migrations"),
]


def _runtime_context(
    settings: Settings,
    subscriptions: SubscriptionStore | None,
    deliveries: DeliveryOutbox | None,
):
    """Own the HTTP client and background loops for the app lifetime."""

    async def _ctx(app: web.Application) -> AsyncIterator[None]:
        subs_store, outbox = subscriptions, deliveries
        if subs_store is None or outbox is None:
            if settings.run_migrations:
                await create_migration_runner(settings, MIGRATIONS_PATHS)(app)
            pool = get_pool(app)
            subs_store = subs_store or WebhookSubscriptionRepository(pool)
            outbox = outbox or WebhookDeliveryRepository(pool)

        session = ClientSession(
            timeout=ClientTimeout(total=settings.webhook_request_timeout_seconds)
        )

        policy = RetryPolicy(
            max_retries=settings.webhook_max_retries,
            base_delay_seconds=settings.webhook_backoff_base_seconds,
        )
        engine = WebhookDeliveryEngine(
            subs_store,
            outbox,
            session,
            policy=policy,
            timeout_seconds=settings.webhook_request_timeout_seconds,
        )
        app[DELIVERY_ENGINE_KEY] = engine
        app[WEBHOOK_SERVICE_KEY] = WebhookService(
            subs_store, outbox, max_retries=settings.webhook_max_retries
        )

        dispatcher = WebhookDispatcher(
            outbox,
            engine,
            batch_size=settings.webhook_dispatch_batch_size,
            max_concurrency=settings.webhook_dispatch_max_concurrency,
            interval_seconds=settings.webhook_dispatch_interval_seconds,
        )
        worker = build_worker(outbox, settings)
        if settings.webhook_dispatcher_enabled:
            await dispatcher.start(app)
        if settings.worker_enabled:
            await worker.start(app)

        try:
            yield
        finally:
            await worker.stop(app)
            await dispatcher.stop(app)
            await session.close()

    return _ctx


def create_app(
    settings: Settings | None = None,
    *,
    subscriptions: SubscriptionStore | None = None,
    deliveries: DeliveryOutbox | None = None,
) -> web.Application:
    """Build the application.

    Storage defaults to Postgres repositories on a pool created at startup;
    pass ``subscriptions`` and ``deliveries`` to run against other stores.
    """
    settings = settings or get_settings()
    app, cors = create_base_app(settings)
    app[SETTINGS_KEY] = settings

    add_healthcheck(app, settings)
    setup_routes(app)
    add_cors_to_routes(app, cors)

    if subscriptions is None or deliveries is None:
        app.cleanup_ctx.append(pool_context(settings))
    app.cleanup_ctx.append(_runtime_context(settings, subscriptions, deliveries))
    return app


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, service=settings.app_name)
    logger.info(
        "Starting webhook service",
        env=settings.env,
        delivery_mode=settings.webhook_delivery_mode,
    )
    web.run_app(create_app(settings), host=settings.host, port=settings.port, access_log=None)


if __name__ == "__main__":
    main()
