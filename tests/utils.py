from __future__ import annotations

from webhook_service.settings import Settings


def make_settings(**overrides) -> Settings:
    """Settings for tests: no database, no background loops unless asked."""
    values = dict(
        run_migrations=False,
        webhook_dispatcher_enabled=False,
        worker_enabled=False,
    )
    values.update(overrides)
    return Settings(**values)
