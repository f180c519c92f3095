from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

import asyncpg  # type: ignore[import-untyped]
import pytest
from aiohttp import ClientSession, web
from testsuite.databases.pgsql import discover

from bmglass_common.db.migrations import apply_migrations, load_migrations
from tests.fakes import InMemoryDeliveryOutbox, InMemorySubscriptionStore
from tests.utils import make_settings
from webhook_service.delivery import WebhookDeliveryEngine
from webhook_service.main import create_app
from webhook_service.retry import RetryPolicy
from webhook_service.settings import Settings

pytest_plugins = (
    "testsuite.pytest_plugin",
    "testsuite.databases.pgsql.pytest_plugin",
)

PG_SCHEMAS_PATH = Path(__file__).parent / "schemas" / "postgresql"
MIGRATIONS_PATH = Path(__file__).resolve().parent.parent / "migrations"


@dataclass
class ReceivedRequest:
    headers: dict[str, str]
    body: bytes


@dataclass
class Receiver:
    """Local HTTP endpoint that records what it was sent.

    ``statuses`` is consumed one per request; the last value repeats.
    """

    url: str = ""
    statuses: list[int] = field(default_factory=lambda: [200])
    requests: list[ReceivedRequest] = field(default_factory=list)

    async def handle(self, request: web.Request) -> web.Response:
        body = await request.read()
        self.requests.append(ReceivedRequest(dict(request.headers), body))
        idx = min(len(self.requests), len(self.statuses)) - 1
        status = self.statuses[idx]
        return web.Response(status=status, text="" if status < 300 else "receiver error")


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
async def receiver(aiohttp_server):
    recv = Receiver()
    app = web.Application()
    app.router.add_post("/hook", recv.handle)
    server = await aiohttp_server(app)
    recv.url = str(server.make_url("/hook"))
    return recv


@pytest.fixture
def subscriptions() -> InMemorySubscriptionStore:
    return InMemorySubscriptionStore()


@pytest.fixture
def outbox() -> InMemoryDeliveryOutbox:
    return InMemoryDeliveryOutbox()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
async def http_session():
    session = ClientSession()
    yield session
    await session.close()


@pytest.fixture
def engine(subscriptions, outbox, http_session, fake_sleep) -> WebhookDeliveryEngine:
    return WebhookDeliveryEngine(
        subscriptions,
        outbox,
        http_session,
        policy=RetryPolicy(),
        timeout_seconds=5.0,
        sleep=fake_sleep,
    )


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
async def service_client(aiohttp_client, settings, subscriptions, outbox):
    """Client for the API backed by in-memory stores."""
    app = create_app(settings, subscriptions=subscriptions, deliveries=outbox)
    return await aiohttp_client(app)


@pytest.fixture(scope="session")
def pgsql_local(pgsql_local_create):
    databases = discover.find_schemas(
        service_name=None,
        schema_dirs=[PG_SCHEMAS_PATH],
    )
    return pgsql_local_create(list(databases.values()))


@pytest.fixture
async def db_pool(pgsql):
    """Pool on the testsuite database with the service migrations applied."""
    uri = pgsql["webhook_service"].conninfo.get_uri()
    pool = await asyncpg.create_pool(uri, min_size=1, max_size=4)
    async with pool.acquire() as conn:
        await apply_migrations(conn, load_migrations(MIGRATIONS_PATH))
        await conn.execute("TRUNCATE webhooks, webhook_deliveries CASCADE")
    yield pool
    await pool.close()
