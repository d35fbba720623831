"""Shared test fixtures for Conveyor tests."""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from conveyor.core.config import ConveyorSettings
from conveyor.daemon.main import create_app
from conveyor.notify.sinks import AuditLog
from conveyor.repositories.run_repo import RunStateStore
from tests.fakes import FakeAdapter, RELEASE_TOML, registry_with


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'conveyor.db'}"


@pytest_asyncio.fixture(scope="function")
async def store(database_url):
    """A fresh run store on a file-backed SQLite database."""
    _store = RunStateStore(database_url)
    await _store.init()
    yield _store
    await _store.close()


@pytest.fixture
def adapter():
    return FakeAdapter()


@pytest.fixture
def audit():
    return AuditLog()


@pytest.fixture
def settings(tmp_path, database_url):
    definitions = tmp_path / "pipelines"
    definitions.mkdir()
    (definitions / "release.toml").write_text(RELEASE_TOML)
    return ConveyorSettings(
        database_url=database_url,
        api_key="test_key",
        definitions_dir=str(definitions),
        heartbeat_interval=0.05,
        heartbeat_timeout=0.5,
        cancel_grace_seconds=0.5,
    )


@pytest_asyncio.fixture(scope="function")
async def app(settings, adapter):
    """App with its lifespan running, every stage bound to the fake adapter."""
    _app = create_app(settings, adapters=registry_with(adapter))
    async with _app.router.lifespan_context(_app):
        yield _app


@pytest_asyncio.fixture(scope="function")
async def client(app):
    """Async HTTP client pointed at the test app."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": "Bearer test_key"},
    ) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def unauthed_client(app):
    """Async HTTP client without auth."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
