"""Shared pytest fixtures for the journey engine test suite.

Provides:
- Per-test async SQLite database in a temporary file (no PostgreSQL needed)
- Session factory shared by the engine, scheduler and retry handler
- Fake collaborators (channel, contacts, goal sink) and a frozen clock
- FastAPI test client (httpx.AsyncClient)
"""

import os
import random
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

# Override settings BEFORE any app imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("CHANNEL_WEBHOOK_URL", "")

from db.base import Base  # noqa: E402
from db.database import create_session_factory  # noqa: E402
from core.constants import WorkflowStatus  # noqa: E402
from services.workflow_service import WorkflowService  # noqa: E402
from workflow.collaborators import InMemoryContactResolver  # noqa: E402
from workflow.engine import EngineConfig, ExecutionEngine  # noqa: E402
from workflow.retry_handler import RetryHandler  # noqa: E402
from workflow.retry_strategies import RetryStrategy  # noqa: E402
from workflow.scheduler import Scheduler  # noqa: E402
from worker.tick import TickOrchestrator  # noqa: E402

from tests.builders import CONTACTS, ORG_ID, START, FakeChannel, FakeGoalSink, FrozenClock  # noqa: E402

# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create an async engine on a fresh database file.

    A file (not ``:memory:``) lets concurrent sessions use separate
    connections, which the concurrency tests rely on.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'journeys.db'}",
        echo=False,
        connect_args={"timeout": 30},
    )
    # Import all models so Base.metadata knows about them
    import db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a DB session that commits on teardown."""
    async with session_factory() as session:
        yield session
        await session.commit()


# ---------------------------------------------------------------------------
# Collaborators and components
# ---------------------------------------------------------------------------

@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def contacts():
    return InMemoryContactResolver({cid: dict(attrs) for cid, attrs in CONTACTS.items()})


@pytest.fixture
def goal_sink():
    return FakeGoalSink()


@pytest.fixture
def engine_config():
    return EngineConfig(
        step_budget=50,
        retry=RetryStrategy.exponential(max_retries=3, base_delay=30.0, max_delay=3600.0, jitter=False),
    )


@pytest.fixture
def engine(session_factory, channel, contacts, goal_sink, engine_config, clock):
    return ExecutionEngine(
        session_factory,
        channel=channel,
        contacts=contacts,
        goal_sink=goal_sink,
        config=engine_config,
        clock=clock,
    )


@pytest.fixture
def scheduler(session_factory, clock):
    return Scheduler(session_factory, clock=clock)


@pytest.fixture
def retry_handler(session_factory, clock):
    return RetryHandler(session_factory, retention_days=90, clock=clock)


@pytest.fixture
def orchestrator(engine, scheduler, retry_handler, clock):
    return TickOrchestrator(
        engine,
        scheduler,
        retry_handler,
        concurrency=4,
        maintenance_sample_rate=60,
        rng=random.Random(0),
        clock=clock,
    )


@pytest.fixture
def make_workflow(session_factory):
    """Create a workflow; activated unless another status is requested."""

    async def _make(nodes, edges, status=WorkflowStatus.ACTIVE.value, settings=None, name="Journey"):
        async with session_factory() as session, session.begin():
            workflows = WorkflowService(session)
            wf = await workflows.create_workflow(ORG_ID, name, nodes, edges, settings=settings)
            if status == WorkflowStatus.ACTIVE.value:
                wf = await workflows.activate(wf.id)
            elif status != WorkflowStatus.DRAFT.value:
                wf = await workflows.update(wf.id, {"status": status})
        return wf

    return _make


@pytest.fixture
def load_execution(session_factory):
    """Read an execution's current row."""
    from services.execution_service import ExecutionService

    async def _load(execution_id):
        async with session_factory() as session:
            return await ExecutionService(session).get_by_id(execution_id)

    return _load


# ---------------------------------------------------------------------------
# App / HTTP client fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def app(db_engine, session_factory, orchestrator):
    """Create a FastAPI app instance wired to the test database and fakes."""
    import db.database as db_mod
    original_engine = db_mod.engine
    original_session = db_mod.AsyncSessionLocal

    db_mod.engine = db_engine
    db_mod.AsyncSessionLocal = session_factory

    from app.dependencies import get_orchestrator
    from app.main import create_app
    test_app = create_app()
    test_app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    yield test_app

    # Restore originals
    db_mod.engine = original_engine
    db_mod.AsyncSessionLocal = original_session


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", follow_redirects=True) as ac:
        yield ac
