"""
Database module for clipforge.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from clipforge.db.engine import async_session, engine, make_engine, make_session_factory, shutdown
from clipforge.db.models import Base, Clip, RenderJob, Asset, PipelineRun, DEFAULT_USER_ID

logger = logging.getLogger(__name__)


async def init_database(bind: AsyncEngine | None = None):
    """Initialize database schema on first run."""
    target = bind or engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%s)", target.url.render_as_string(hide_password=True))


__all__ = [
    "Base",
    "Clip",
    "RenderJob",
    "Asset",
    "PipelineRun",
    "DEFAULT_USER_ID",
    "engine",
    "async_session",
    "make_engine",
    "make_session_factory",
    "shutdown",
    "init_database",
]
