"""FastAPI dependency injection functions."""

import structlog
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import Settings, get_settings
from db import database
from workflow.engine import ExecutionEngine
from workflow.scheduler import Scheduler
from worker.tick import TickOrchestrator

logger = structlog.get_logger(__name__)


async def get_db() -> AsyncSession:
    """
    Provide a database session for API endpoints.

    Yields an async SQLAlchemy session that is automatically
    committed on success or rolled back on error.
    """
    async with database.AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.error("database_error", error=str(e))
            await session.rollback()
            raise


def get_session_factory() -> async_sessionmaker:
    """Session factory for components that open their own units of work."""
    return database.AsyncSessionLocal


def get_orchestrator(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    settings: Settings = Depends(get_settings),
) -> TickOrchestrator:
    """Tick orchestrator with engine, scheduler and retry handler wired from settings."""
    return TickOrchestrator.build(session_factory, settings)


def get_engine(orchestrator: TickOrchestrator = Depends(get_orchestrator)) -> ExecutionEngine:
    return orchestrator.engine


def get_scheduler(orchestrator: TickOrchestrator = Depends(get_orchestrator)) -> Scheduler:
    return orchestrator.scheduler
