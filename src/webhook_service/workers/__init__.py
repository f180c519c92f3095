"""Background maintenance tasks for the webhook outbox.

:func:`build_worker` wires every task to the given outbox; the returned
worker's ``start`` / ``stop`` plug into the aiohttp lifecycle.
"""
from __future__ import annotations

from bmglass_common.worker import BackgroundWorker, WorkerTask
from webhook_service.domain.webhooks import DeliveryOutbox
from webhook_service.settings import Settings
from webhook_service.workers.webhook_purge import webhook_purge_succeeded
from webhook_service.workers.webhook_reclaim import webhook_reclaim_stuck


def build_worker(outbox: DeliveryOutbox, settings: Settings) -> BackgroundWorker:
    return BackgroundWorker(
        name="webhook_maintenance",
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_reclaim_stuck",
                fn=webhook_reclaim_stuck(outbox, stuck_minutes=settings.webhook_stuck_minutes),
            ),
            WorkerTask(
                name="webhook_purge_succeeded",
                fn=webhook_purge_succeeded(
                    outbox, retention_days=settings.webhook_succeeded_retention_days
                ),
            ),
        ],
    )


__all__ = [
    "build_worker",
    "webhook_purge_succeeded",
    "webhook_reclaim_stuck",
]
