import sys
import os

# Ensure src directory is in Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine

from checkmesh.config import Settings
from checkmesh.database import init_models, make_session_factory
from checkmesh.errors import NotificationError
from checkmesh.main import app
from checkmesh.models.alert_recipient import AlertRecipient
from checkmesh.models.monitor import Monitor
from checkmesh.notifier import Mailer
from checkmesh.services import build_services, get_services
from checkmesh.transport import MemoryTransport

TEST_SECRET = "test-ingest-secret"
REGIONS = ["us-east-1", "eu-west-1", "ap-south-1"]
START = datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMailer(Mailer):
    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.fail_for: set[str] = set()

    async def send(self, to, subject, html_body, text_body):
        if to in self.fail_for:
            raise NotificationError("mailbox unavailable", recipient=to)
        self.sent.append((to, subject))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'checkmesh.db'}",
        regions=REGIONS,
        ingest_secret=TEST_SECRET,
        embedded_workers=False,
        publish_backoff=0,
    )


@pytest_asyncio.fixture
async def engine(settings):
    # One SQLite file per test so concurrent sessions get real connections
    engine = create_async_engine(settings.database_url, echo=False)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def transports():
    return {region: MemoryTransport(region) for region in REGIONS}


@pytest_asyncio.fixture
async def services(settings, session_factory, mailer, transports, clock):
    services = build_services(
        settings, session_factory, mailer=mailer, transports=transports, clock=clock
    )
    yield services
    await services.dispatcher.drain()


@pytest.fixture
def make_monitor(session_factory):
    async def _make(**overrides) -> Monitor:
        data = {
            "name": "Example API",
            "url": "https://example.com/health",
            "check_interval": 300,
        }
        data.update(overrides)
        async with session_factory() as db:
            monitor = Monitor(**data)
            db.add(monitor)
            await db.commit()
            return monitor

    return _make


@pytest.fixture
def add_recipient(session_factory):
    async def _add(monitor_id: str, email: str, is_active: bool = True) -> AlertRecipient:
        async with session_factory() as db:
            recipient = AlertRecipient(monitor_id=monitor_id, email=email, is_active=is_active)
            db.add(recipient)
            await db.commit()
            return recipient

    return _add


@pytest_asyncio.fixture
async def client(services):
    app.dependency_overrides[get_services] = lambda: services
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
