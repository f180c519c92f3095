"""Asyncpg connection pool lifecycle for aiohttp apps."""
from __future__ import annotations

from typing import Any, AsyncIterator, Protocol

import asyncpg  # type: ignore[import-untyped]
from aiohttp import web

POOL_KEY = "db_pool"


class SettingsProtocol(Protocol):
    """Protocol for settings objects with database configuration."""

    database_url: Any
    db_pool_size: int


async def create_pool(database_url: str, pool_size: int) -> asyncpg.Pool:
    return await asyncpg.create_pool(dsn=database_url, max_size=pool_size)


def pool_context(settings: SettingsProtocol):
    """Build an ``app.cleanup_ctx`` entry that owns the pool for the app lifetime.

    The pool is stored on the application under :data:`POOL_KEY`; nothing
    else keeps a reference to it.
    """

    async def _ctx(app: web.Application) -> AsyncIterator[None]:
        app[POOL_KEY] = await create_pool(str(settings.database_url), settings.db_pool_size)
        try:
            yield
        finally:
            await app[POOL_KEY].close()

    return _ctx


def get_pool(app: web.Application) -> asyncpg.Pool:
    pool = app.get(POOL_KEY)
    if pool is None:
        raise RuntimeError("Database pool not initialized")
    return pool
