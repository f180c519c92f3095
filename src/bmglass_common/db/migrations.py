"""Checksum-tracked SQL migrations applied on service startup."""
from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Protocol

import asyncpg  # type: ignore[import-untyped]
import structlog
from aiohttp import web

logger = structlog.get_logger(__name__)

_SCHEMA_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version text PRIMARY KEY,
    checksum text NOT NULL,
    applied_at timestamptz NOT NULL DEFAULT now()
);
"""


class SettingsProtocol(Protocol):
    database_url: Any


@dataclass(frozen=True)
class Migration:
    version: str
    path: Path
    sql: str

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.sql.encode("utf-8")).hexdigest()


def find_migrations_dir(candidates: Iterable[Path]) -> Path | None:
    for path in candidates:
        if path.is_dir():
            return path
    return None


def load_migrations(directory: Path) -> list[Migration]:
    """Read ``*.sql`` files sorted by name; the file stem is the version."""
    migrations: list[Migration] = []
    seen: set[str] = set()
    for path in sorted(directory.glob("*.sql")):
        if path.stem in seen:
            raise ValueError(f"Duplicate migration version detected: {path.stem}")
        seen.add(path.stem)
        migrations.append(Migration(path.stem, path, path.read_text(encoding="utf-8")))
    return migrations


def pending_migrations(migrations: list[Migration], applied: dict[str, str]) -> list[Migration]:
    """Return migrations not yet applied; an edited applied migration is an error."""
    pending: list[Migration] = []
    for migration in migrations:
        recorded = applied.get(migration.version)
        if recorded is None:
            pending.append(migration)
        elif recorded != migration.checksum:
            raise RuntimeError(
                f"Checksum mismatch for {migration.version}: "
                f"{recorded} (db) != {migration.checksum} (file)"
            )
    return pending


async def apply_migrations(conn: asyncpg.Connection, migrations: list[Migration]) -> int:
    await conn.execute(_SCHEMA_TABLE_SQL)
    rows = await conn.fetch("SELECT version, checksum FROM schema_migrations")
    pending = pending_migrations(migrations, {row["version"]: row["checksum"] for row in rows})
    for migration in pending:
        logger.info("Applying migration", version=migration.version)
        async with conn.transaction():
            await conn.execute(migration.sql)
            await conn.execute(
                "INSERT INTO schema_migrations (version, checksum) VALUES ($1, $2)",
                migration.version,
                migration.checksum,
            )
    return len(pending)


def create_migration_runner(
    settings: SettingsProtocol,
    possible_paths: Iterable[Path],
    *,
    connect_retries: int = 5,
    retry_delay_seconds: float = 2.0,
) -> Callable[[web.Application], Awaitable[None]]:
    """Create an aiohttp startup hook that applies pending SQL migrations."""
    candidates = list(possible_paths)

    async def apply_migrations_on_startup(_app: web.Application) -> None:
        migrations_dir = find_migrations_dir(candidates)
        if migrations_dir is None:
            logger.warning("Migrations directory not found, skipping", tried=[str(p) for p in candidates])
            return
        migrations = load_migrations(migrations_dir)
        if not migrations:
            logger.warning("No migrations found, skipping", directory=str(migrations_dir))
            return

        conn = None
        for attempt in range(1, connect_retries + 1):
            try:
                conn = await asyncpg.connect(str(settings.database_url))
                break
            except (asyncpg.PostgresError, OSError) as exc:
                logger.warning(
                    "Database connection failed",
                    attempt=attempt,
                    max_attempts=connect_retries,
                    error=str(exc),
                )
                if attempt == connect_retries:
                    raise
                await asyncio.sleep(retry_delay_seconds)
        assert conn is not None

        try:
            applied = await apply_migrations(conn, migrations)
        finally:
            await conn.close()
        logger.info("Migrations up to date", applied=applied)

    return apply_migrations_on_startup
