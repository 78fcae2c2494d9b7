import asyncio
import os
from collections.abc import AsyncGenerator
from types import SimpleNamespace
from typing import Dict, List, Optional

# Point the application settings at throwaway values before app modules load
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import make_repository_context
from app.schemas.gp51 import GP51DeviceRecord, GP51DeviceSummary, GP51UserRecord
from app.services.event_bus.bus import EventBus
from app.services.extraction.service import ExtractionService
from app.services.health.monitor import HealthMonitor
from app.services.imports.chunk_processor import ChunkProcessor
from app.services.imports.orchestrator import ImportOrchestrator
from app.services.imports.writer import FleetRecordWriter
from app.services.rate_limiter import RateLimiter


class FakeGP51Client:
    """Scripted stand-in for the GP51 client."""

    def __init__(self, users: Optional[List[str]] = None, devices: Optional[Dict[str, str]] = None):
        self.users = list(users or [])
        # device id -> owner username
        self.devices = dict(devices or {})
        self.scripts: Dict[str, list] = {}
        self.failing_accounts: Dict[str, Exception] = {}
        self.calls: List[str] = []
        self.ping_error: Optional[Exception] = None
        self.delay = 0.0
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, identifier: str, *outcomes) -> None:
        """Queue outcomes for an identifier; exceptions are raised, anything else falls through."""
        self.scripts.setdefault(identifier, []).extend(outcomes)

    async def list_users(self) -> List[str]:
        return list(self.users)

    async def list_devices(self, usernames: Optional[List[str]] = None) -> List[GP51DeviceSummary]:
        return [
            GP51DeviceSummary(deviceid=device_id, creater=owner)
            for device_id, owner in self.devices.items()
            if usernames is None or owner in usernames
        ]

    async def list_account_devices(self, username: str) -> List[GP51DeviceSummary]:
        if username in self.failing_accounts:
            raise self.failing_accounts[username]
        return await self.list_devices([username])

    async def fetch_record(self, item):
        self.calls.append(item.identifier)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcomes = self.scripts.get(item.identifier)
            if outcomes:
                outcome = outcomes.pop(0)
                if isinstance(outcome, BaseException):
                    raise outcome
            if item.kind == "user":
                return GP51UserRecord(
                    username=item.identifier,
                    showname=f"User {item.identifier}",
                    email=f"{item.identifier}@example.com",
                )
            return GP51DeviceRecord(
                deviceid=item.identifier,
                devicename=f"Vehicle {item.identifier}",
                creater=self.devices.get(item.identifier),
            )
        finally:
            self.in_flight -= 1

    async def ping(self) -> None:
        if self.ping_error:
            raise self.ping_error


class FakeWriter:
    """Record writer that keeps applied items in memory."""

    def __init__(self, error_on: Optional[Dict[str, Exception]] = None):
        self.applied: List[str] = []
        self.error_on = dict(error_on or {})

    async def apply(self, item, record) -> None:
        if item.identifier in self.error_on:
            raise self.error_on[item.identifier]
        self.applied.append(item.identifier)


def make_users(count: int) -> List[str]:
    return [f"u{i:03d}" for i in range(count)]


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    # One file per test; every session gets its own connection like a real pool
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'fleetsync.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)

    await engine.dispose()


@pytest.fixture()
def repositories(session_factory):
    return make_repository_context(session_factory)


@pytest.fixture()
def health() -> HealthMonitor:
    return HealthMonitor(
        window_size=20,
        healthy_rate=0.9,
        unhealthy_rate=0.5,
        degraded_failures=3,
        unhealthy_failures=5,
        min_samples=5,
        max_issues=5,
    )


@pytest.fixture()
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture()
def fake_client() -> FakeGP51Client:
    return FakeGP51Client()


@pytest.fixture()
def make_orchestrator(repositories, health, event_bus):
    """Build an orchestrator with immediate retries and sequential defaults."""

    def _make(
        client,
        writer=None,
        monitor: Optional[HealthMonitor] = None,
        item_concurrency: int = 1,
        max_attempts: int = 3,
        **options
    ) -> ImportOrchestrator:
        monitor = monitor or health
        processor = ChunkProcessor(
            client=client,
            writer=writer or FleetRecordWriter(repositories),
            health=monitor,
            item_concurrency=item_concurrency,
            max_attempts=max_attempts,
            retry_base_delay=0,
            retry_max_delay=0,
            call_timeout=5,
        )
        options.setdefault("max_concurrent_chunks", 1)
        options.setdefault("degraded_concurrent_chunks", 1)
        return ImportOrchestrator(
            repositories=repositories,
            client=client,
            health=monitor,
            event_bus=event_bus,
            processor=processor,
            **options
        )

    return _make


@pytest.fixture()
def extraction_service(repositories, fake_client, health, event_bus) -> ExtractionService:
    return ExtractionService(repositories=repositories, client=fake_client, health=health, event_bus=event_bus)


@pytest.fixture()
def admin_headers() -> Dict[str, str]:
    token = create_access_token({"sub": "admin-1", "role": "admin"})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def api_services(make_orchestrator, fake_client, health, extraction_service):
    """Point the API dependencies at test doubles."""
    from app.api.v1 import dependencies
    from app.main import app

    services = SimpleNamespace(
        orchestrator=make_orchestrator(fake_client, writer=FakeWriter()),
        client=fake_client,
        health=health,
        extractions=extraction_service,
        rate_limiter=RateLimiter(),
    )
    app.dependency_overrides[dependencies.get_orchestrator] = lambda: services.orchestrator
    app.dependency_overrides[dependencies.get_extractions] = lambda: services.extractions
    app.dependency_overrides[dependencies.get_monitor] = lambda: services.health
    app.dependency_overrides[dependencies.get_rate_limiter] = lambda: services.rate_limiter
    app.dependency_overrides[dependencies.get_platform_client] = lambda: services.client

    yield services

    app.dependency_overrides.clear()


@pytest_asyncio.fixture()
async def async_client() -> AsyncGenerator[AsyncClient, None]:
    from app.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(base_url="http://testserver", transport=transport) as client:
        yield client
