"""Worker: reclaim deliveries abandoned mid-flight."""
from __future__ import annotations

from datetime import datetime, timedelta

from bmglass_common.worker import TaskFn
from webhook_service.domain.webhooks import DeliveryOutbox


def webhook_reclaim_stuck(outbox: DeliveryOutbox, *, stuck_minutes: int) -> TaskFn:
    """Release deliveries untouched for longer than ``stuck_minutes``."""

    async def _task(now: datetime) -> str | None:
        cutoff = now - timedelta(minutes=stuck_minutes)
        reclaimed = await outbox.reclaim_stuck(cutoff)
        return f"reclaimed={reclaimed}" if reclaimed else None

    return _task
