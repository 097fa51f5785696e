"""
Database module for docuvid.

Provides async SQLAlchemy engine with SQLite WAL mode,
session management, and schema initialization.
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine

from docuvid.db.engine import (
    async_session,
    create_engine,
    create_session_factory,
    engine,
    shutdown,
)
from docuvid.db.models import (
    Base,
    NarrationSegment,
    PipelineStep,
    Thought,
    Video,
    VideoScene,
)

logger = logging.getLogger(__name__)


async def init_database(bind: Optional[AsyncEngine] = None):
    """Create any missing tables."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready")


__all__ = [
    "Base",
    "Thought",
    "Video",
    "VideoScene",
    "NarrationSegment",
    "PipelineStep",
    "engine",
    "async_session",
    "create_engine",
    "create_session_factory",
    "shutdown",
    "init_database",
]
