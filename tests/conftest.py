"""Pytest configuration and shared fixtures.

Tests run against a file-backed SQLite database through aiosqlite, so
separate sessions see each other's commits and concurrent writers really
contend for the database. Collaborators are in-memory fakes and the clock
is fixed at 2025-01-01 09:00 UTC unless a test moves it.
"""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from moto import mock_aws
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from possession.api import create_app
from possession.api.routers.possessions import (
    DbSession,
    get_db_session,
    get_lifecycle_service,
    get_reporting_service,
)
from possession.core.config import DatabaseSettings, Settings
from possession.db import build_engine, build_session_factory
from possession.db.models import Base
from possession.services.collaborators import Collaborators
from possession.services.lifecycle import PossessionLifecycleService
from possession.services.reporting import PossessionReportingService
from possession.services.storage import DocumentStore
from tests.factories import FixedClock, create_collaborators


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def database_url(tmp_path: Path) -> str:
    """SQLite database file unique to the test."""
    return f"sqlite:///{tmp_path / 'possessions.db'}"


@pytest.fixture
async def engine(database_url: str) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine with the schema created.

    NullPool gives every session its own connection, like separate
    API workers.
    """
    engine = build_engine(database_url, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(engine)


@pytest.fixture
async def session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ---------------------------------------------------------------------------
# Service fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def collaborators() -> Collaborators:
    return create_collaborators()


@pytest.fixture
def service(
    session: AsyncSession, collaborators: Collaborators, clock: FixedClock
) -> PossessionLifecycleService:
    return PossessionLifecycleService(session, collaborators, clock=clock)


@pytest.fixture
def reporting(session: AsyncSession, clock: FixedClock) -> PossessionReportingService:
    return PossessionReportingService(session, clock=clock)


# ---------------------------------------------------------------------------
# Document store fixtures
# ---------------------------------------------------------------------------
@pytest.fixture
def s3_document_store() -> Generator[DocumentStore, None, None]:
    """Document store backed by moto, with no bucket yet.

    endpoint_url is left unset so moto intercepts every request.
    """
    with mock_aws():
        yield DocumentStore(
            endpoint_url=None,
            access_key="test_access_key",
            secret_key="test_secret_key",  # noqa: S106
            bucket="possession-documents",
        )


@pytest.fixture
def document_store(s3_document_store: DocumentStore) -> DocumentStore:
    s3_document_store.ensure_bucket()
    return s3_document_store


# ---------------------------------------------------------------------------
# API client fixture (in-process testing via ASGI transport)
# ---------------------------------------------------------------------------
@pytest.fixture
def test_settings(database_url: str) -> Settings:
    return Settings(
        environment="dev",
        database=DatabaseSettings(url=database_url),
    )


@pytest.fixture
def test_app(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    collaborators: Collaborators,
    clock: FixedClock,
) -> FastAPI:
    """Create a test FastAPI application wired to the test database.

    The session dependency is overridden to use the per-test engine, and
    the services share the fixed clock and in-memory collaborators.
    """
    app = create_app(test_settings)
    app.state.collaborators = collaborators

    async def override_db_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            try:
                yield session
            except BaseException:
                await session.rollback()
                raise

    def override_lifecycle_service(db: DbSession) -> PossessionLifecycleService:
        return PossessionLifecycleService(db, collaborators, clock=clock)

    def override_reporting_service(db: DbSession) -> PossessionReportingService:
        return PossessionReportingService(db, clock=clock)

    app.dependency_overrides[get_db_session] = override_db_session
    app.dependency_overrides[get_lifecycle_service] = override_lifecycle_service
    app.dependency_overrides[get_reporting_service] = override_reporting_service
    return app


@pytest.fixture
async def api_client(test_app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for testing the API.

    Uses httpx with ASGI transport for in-process testing.
    """
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def actor_headers() -> dict[str, str]:
    return {"X-Actor-ID": "staff-17"}
