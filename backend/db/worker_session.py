"""Worker-safe session factory for Celery tasks.

Creates a fresh async engine per call to avoid the 'Future attached
to a different loop' error when asyncpg connections are shared
across event loops in forked Celery workers.
"""

from contextlib import asynccontextmanager

from app.config import get_settings
from db.database import create_db_engine, create_session_factory


@asynccontextmanager
async def worker_session_factory():
    """Provide a session factory bound to a short-lived engine.

    Usage:
        async with worker_session_factory() as session_factory:
            orchestrator = TickOrchestrator(session_factory, ...)
    """
    settings = get_settings()
    overrides = {}
    if not settings.DATABASE_URL.startswith("sqlite"):
        overrides = dict(pool_size=5, max_overflow=5, pool_recycle=300)
    engine = create_db_engine(settings.DATABASE_URL, **overrides)
    try:
        yield create_session_factory(engine)
    finally:
        await engine.dispose()
