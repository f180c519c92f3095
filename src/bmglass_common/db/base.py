"""Shared asyncpg helpers for repositories."""
from __future__ import annotations

from typing import Any, Iterable

import asyncpg  # type: ignore[import-untyped]


class BaseRepository:
    """Thin wrapper over asyncpg pool operations.

    Driver and connection errors are re-raised as ``error_class`` so callers
    can tell storage failures apart from domain outcomes.
    """

    error_class: type[Exception] = RuntimeError

    def __init__(self, pool: asyncpg.Pool):
        self._pool = pool

    def _wrap(self, exc: Exception) -> Exception:
        return self.error_class(f"{type(exc).__name__}: {exc}")

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except (asyncpg.PostgresError, OSError) as exc:
            raise self._wrap(exc) from exc

    async def _fetch(self, query: str, *args: Any) -> Iterable[asyncpg.Record]:
        try:
            async with self._pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except (asyncpg.PostgresError, OSError) as exc:
            raise self._wrap(exc) from exc

    async def _execute(self, query: str, *args: Any) -> str:
        try:
            async with self._pool.acquire() as conn:
                return await conn.execute(query, *args)
        except (asyncpg.PostgresError, OSError) as exc:
            raise self._wrap(exc) from exc


def affected_rows(status: str) -> int:
    """Parse the row count out of an asyncpg command status (``UPDATE 3``)."""
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0
