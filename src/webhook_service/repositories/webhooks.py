"""Webhook repositories (configuration + delivery outbox and attempt log)."""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, List, Tuple
from uuid import UUID

from asyncpg import Pool, Record  # type: ignore[import-untyped]

from bmglass_common.db.base import BaseRepository, affected_rows
from webhook_service.core.exceptions import (
    InvalidStatusTransitionError,
    NotFoundError,
    RepositoryError,
)
from webhook_service.domain.enums import DeliveryStatus
from webhook_service.domain.webhooks import (
    DeliveryAttempt,
    WebhookDelivery,
    WebhookSubscription,
)


def _decode_json(payload: dict[str, Any], *keys: str) -> dict[str, Any]:
    # jsonb columns come back as text without a registered codec
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str):
            payload[key] = json.loads(value)
    return payload


class WebhookSubscriptionRepository(BaseRepository):
    error_class = RepositoryError

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(_decode_json(dict(record), "events"))

    async def get(self, business_id: str) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhooks WHERE business_id = $1",
            business_id,
        )
        return self._to_model(record) if record is not None else None

    async def upsert(
        self,
        *,
        business_id: str,
        url: str,
        events: dict[str, bool],
        secret: str,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhooks (business_id, url, events, secret)
            VALUES ($1, $2, $3::jsonb, $4)
            ON CONFLICT (business_id) DO UPDATE
            SET url = EXCLUDED.url,
                events = EXCLUDED.events,
                secret = EXCLUDED.secret,
                updated_at = now()
            RETURNING *
            """,
            business_id,
            url,
            json.dumps(events),
            secret,
        )
        assert record is not None
        return self._to_model(record)

    async def delete(self, business_id: str) -> None:
        record = await self._fetchrow(
            "DELETE FROM webhooks WHERE business_id = $1 RETURNING business_id",
            business_id,
        )
        if record is None:
            raise NotFoundError("Webhook configuration not found")

    async def rotate_secret(self, business_id: str, secret: str) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            UPDATE webhooks
            SET secret = $2,
                updated_at = now()
            WHERE business_id = $1
            RETURNING *
            """,
            business_id,
            secret,
        )
        if record is None:
            raise NotFoundError("Webhook configuration not found")
        return self._to_model(record)


class WebhookDeliveryRepository(BaseRepository):
    """Postgres-backed delivery log and outbox."""

    error_class = RepositoryError

    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookDelivery:
        return WebhookDelivery.model_validate(_decode_json(dict(record), "payload"))

    async def record(self, delivery: WebhookDelivery) -> WebhookDelivery:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_deliveries (
                event_id,
                business_id,
                event_type,
                payload,
                target_url,
                secret,
                status,
                attempt_count,
                max_retries,
                next_attempt_at,
                last_attempt_at,
                created_at,
                updated_at
            )
            VALUES ($1, $2, $3, $4::jsonb, $5, $6, $7, $8, $9, $10, $11, now(), now())
            RETURNING *
            """,
            delivery.event_id,
            delivery.business_id,
            delivery.event_type,
            json.dumps(delivery.payload),
            delivery.target_url,
            delivery.secret,
            delivery.status.value,
            delivery.attempt_count,
            delivery.max_retries,
            delivery.next_attempt_at,
            delivery.last_attempt_at,
        )
        assert record is not None
        return self._to_model(record)

    async def update_status(
        self,
        event_id: UUID,
        status: DeliveryStatus,
        *,
        attempt_count: int,
        error: str | None = None,
        http_status: int | None = None,
        next_attempt_at: datetime | None = None,
    ) -> None:
        await self._execute(
            """
            UPDATE webhook_deliveries
            SET status = $2,
                attempt_count = $3,
                error_message = $4,
                last_status_code = COALESCE($5, last_status_code),
                next_attempt_at = $6,
                locked_at = NULL,
                last_attempt_at = now(),
                updated_at = now()
            WHERE event_id = $1
            """,
            event_id,
            status.value,
            attempt_count,
            error,
            http_status,
            next_attempt_at,
        )

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        await self._execute(
            """
            INSERT INTO webhook_delivery_attempts (
                event_id,
                replay_number,
                attempt_number,
                success,
                http_status,
                error_message,
                duration_ms,
                attempted_at
            )
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            """,
            attempt.event_id,
            attempt.replay_number,
            attempt.attempt_number,
            attempt.success,
            attempt.http_status,
            attempt.error_message,
            attempt.duration_ms,
            attempt.attempted_at,
        )

    async def claim_due(self, *, limit: int = 50) -> List[WebhookDelivery]:
        """
        Atomically claim due deliveries for processing.

        Uses row-level locking (FOR UPDATE SKIP LOCKED) so concurrent
        dispatchers never pick the same delivery. Inline deliveries keep
        ``next_attempt_at`` NULL and are therefore never claimed.
        """
        records = await self._fetch(
            """
            WITH cte AS (
                SELECT event_id
                FROM webhook_deliveries
                WHERE status IN ('pending', 'retrying')
                  AND next_attempt_at IS NOT NULL
                  AND next_attempt_at <= now()
                ORDER BY next_attempt_at ASC, created_at ASC
                FOR UPDATE SKIP LOCKED
                LIMIT $1
            )
            UPDATE webhook_deliveries d
            SET status = 'in_progress',
                locked_at = now(),
                updated_at = now()
            FROM cte
            WHERE d.event_id = cte.event_id
            RETURNING d.*
            """,
            limit,
        )
        return [self._to_model(r) for r in records]

    async def get(self, business_id: str, event_id: UUID) -> WebhookDelivery:
        record = await self._fetchrow(
            "SELECT * FROM webhook_deliveries WHERE business_id = $1 AND event_id = $2",
            business_id,
            event_id,
        )
        if record is None:
            raise NotFoundError("Webhook delivery not found")
        return self._to_model(record)

    async def list_by_business(
        self,
        business_id: str,
        *,
        status: DeliveryStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDelivery], int]:
        where = ["business_id = $1"]
        values: list[Any] = [business_id]
        idx = 2
        if status is not None:
            where.append(f"status = ${idx}")
            values.append(status.value)
            idx += 1
        where_sql = " AND ".join(where)
        query = f"""
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_deliveries
            WHERE {where_sql}
            ORDER BY created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
        """
        values.extend([limit, offset])
        records = await self._fetch(query, *values)
        items: List[WebhookDelivery] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(WebhookDelivery.model_validate(_decode_json(rec_dict, "payload")))
        if total is None:
            total = await self._count_by_business(business_id, status=status)
        return items, total

    async def _count_by_business(
        self, business_id: str, *, status: DeliveryStatus | None = None
    ) -> int:
        if status is None:
            record = await self._fetchrow(
                "SELECT COUNT(*) AS total FROM webhook_deliveries WHERE business_id = $1",
                business_id,
            )
        else:
            record = await self._fetchrow(
                "SELECT COUNT(*) AS total FROM webhook_deliveries WHERE business_id = $1 AND status = $2",
                business_id,
                status.value,
            )
        return int(record["total"]) if record else 0

    async def list_attempts(self, event_id: UUID) -> List[DeliveryAttempt]:
        records = await self._fetch(
            """
            SELECT event_id, replay_number, attempt_number, success, http_status,
                   error_message, duration_ms, attempted_at
            FROM webhook_delivery_attempts
            WHERE event_id = $1
            ORDER BY replay_number ASC, attempt_number ASC, id ASC
            """,
            event_id,
        )
        return [DeliveryAttempt.model_validate(dict(r)) for r in records]

    async def requeue(self, business_id: str, event_id: UUID) -> None:
        """Put a delivery back in the queue under the same event id.

        Only ``pending``, ``success`` and ``failed`` rows qualify, checked in
        the UPDATE itself. A finished row starts a new replay with a fresh
        attempt count; a row that is already pending just becomes due.
        """
        record = await self._fetchrow(
            """
            UPDATE webhook_deliveries
            SET attempt_count = CASE WHEN status = 'pending' THEN attempt_count ELSE 0 END,
                replay_count = CASE WHEN status = 'pending' THEN replay_count ELSE replay_count + 1 END,
                error_message = CASE WHEN status = 'pending' THEN error_message ELSE NULL END,
                status = 'pending',
                locked_at = NULL,
                next_attempt_at = now(),
                updated_at = now()
            WHERE business_id = $1
              AND event_id = $2
              AND status IN ('pending', 'success', 'failed')
            RETURNING event_id
            """,
            business_id,
            event_id,
        )
        if record is None:
            current = await self.get(business_id, event_id)
            raise InvalidStatusTransitionError(
                f"Delivery is {current.status.value}; only pending or finished deliveries can be replayed"
            )

    async def reclaim_stuck(self, locked_before: datetime) -> int:
        """Release deliveries abandoned by a crashed process.

        Covers dispatcher claims stuck in ``in_progress`` and inline retry
        chains left in ``retrying`` without a schedule. Both are reset to
        ``pending`` and become due immediately.
        """
        result = await self._execute(
            """
            UPDATE webhook_deliveries
            SET status = 'pending',
                locked_at = NULL,
                next_attempt_at = now(),
                updated_at = now()
            WHERE (status = 'in_progress' AND locked_at < $1)
               OR (status = 'retrying' AND next_attempt_at IS NULL AND last_attempt_at < $1)
            """,
            locked_before,
        )
        return affected_rows(result)

    async def delete_old_succeeded(self, created_before: datetime) -> int:
        """Purge successful deliveries older than *created_before*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_deliveries WHERE status = 'success' AND created_at < $1",
            created_before,
        )
        return affected_rows(result)
