"""Worker: purge old successful webhook deliveries."""
from __future__ import annotations

from datetime import datetime, timedelta

from bmglass_common.worker import TaskFn
from webhook_service.domain.webhooks import DeliveryOutbox


def webhook_purge_succeeded(outbox: DeliveryOutbox, *, retention_days: int) -> TaskFn:
    """Delete successful deliveries older than ``retention_days``.

    Failed deliveries are kept: they are the dead-letter queue.
    """

    async def _task(now: datetime) -> str | None:
        cutoff = now - timedelta(days=retention_days)
        purged = await outbox.delete_old_succeeded(cutoff)
        return f"purged={purged}" if purged else None

    return _task
