"""SQLAlchemy 2.0 ORM models for docuvid."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how SQLite stores DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Thought(Base):
    """The originating prompt plus its analysis and essay framing."""
    __tablename__ = "thoughts"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    original_text: Mapped[str] = mapped_column(Text)
    input_type: Mapped[str] = mapped_column(String(20), default="text")
    analysis: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    essay: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class Video(Base):
    """One pipeline run for a thought.

    pipeline_status is written only by the orchestrator. version, run_token
    and lease_expires_at implement the single-flight claim: a runner owns the
    row while run_token matches its own token.
    """
    __tablename__ = "videos"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    thought_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("thoughts.id", ondelete="CASCADE"), unique=True
    )
    pipeline_status: Mapped[str] = mapped_column(String(20), default="pending")
    error_layer: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    understanding: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    perspective: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    blueprint: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    narration_script: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    final_video_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    total_duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    version: Mapped[int] = mapped_column(Integer, default=0)
    run_token: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class VideoScene(Base):
    """A blueprint scene and the state of its external generation job."""
    __tablename__ = "video_scenes"
    __table_args__ = (UniqueConstraint("video_id", "scene_index"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("videos.id", ondelete="CASCADE"), index=True
    )
    scene_index: Mapped[int] = mapped_column(Integer)
    description: Mapped[str] = mapped_column(Text)
    duration: Mapped[int] = mapped_column(Integer)
    time_of_day: Mapped[str] = mapped_column(String(20), default="morning")
    setting: Mapped[str] = mapped_column(String(30), default="urban")
    status: Mapped[str] = mapped_column(String(20), default="pending")
    runway_prompt: Mapped[str] = mapped_column(Text)
    runway_video_url: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    external_job_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class NarrationSegment(Base):
    """One narration segment (validation, perspective or agency) and its audio."""
    __tablename__ = "narration_segments"
    __table_args__ = (UniqueConstraint("video_id", "segment_type"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    video_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("videos.id", ondelete="CASCADE"), index=True
    )
    segment_type: Mapped[str] = mapped_column(String(20))
    text: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    audio_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class PipelineStep(Base):
    """Append-only audit row, one per stage attempt. Never read for control flow."""
    __tablename__ = "pipeline_steps"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    video_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("videos.id", ondelete="CASCADE"), index=True
    )
    layer: Mapped[int] = mapped_column(Integer)
    step: Mapped[str] = mapped_column(String(50))
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    payload: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow)
