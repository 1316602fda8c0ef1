"""Workflow document persistence: engine, table, schema setup and the versioned store."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from reelflow.db.engine import async_session, engine, shutdown
from reelflow.db.models import Base, Workflow
from reelflow.db.store import DocumentStore

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Initialize database schema on first run."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "Workflow",
    "DocumentStore",
    "engine",
    "async_session",
    "shutdown",
    "init_database",
]
