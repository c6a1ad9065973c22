"""SQLAlchemy 2.0 ORM models for the clip export pipeline."""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Text, JSON, Float, Boolean, ForeignKey, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Attribution for runs started without an authenticated user (dev mode)
DEFAULT_USER_ID = "00000000-0000-0000-0000-000000000001"


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class Clip(Base):
    """Clip model: the user-facing highlight requested from a source video.

    Owned by the calling system. The pipeline only reads it at start and
    writes its terminal status, error and derivative URLs at the end.
    """
    __tablename__ = "clips"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    source_media_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    vertical_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    storage_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        server_default=func.now(),
        onupdate=func.now()
    )


class RenderJob(Base):
    """RenderJob model: audit row for one derivative-render attempt.

    Exactly one row per RenderTask invocation. Immutable once completed or
    failed.
    """
    __tablename__ = "render_jobs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clip_id: Mapped[Optional[str]] = mapped_column(ForeignKey("clips.id"), index=True, nullable=True)
    user_id: Mapped[str] = mapped_column(String(64))
    job_type: Mapped[str] = mapped_column(String(50), default="clip-render")
    engine: Mapped[str] = mapped_column(String(50), default="cloudflare_stream")
    params: Mapped[dict] = mapped_column(JSON, default=dict)
    status: Mapped[str] = mapped_column(String(20), default="processing")
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    processing_time_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)


class Asset(Base):
    """Asset model: one successfully produced derivative artifact.

    Never created for a failed RenderJob.
    """
    __tablename__ = "assets"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    render_job_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("render_jobs.id"), index=True)
    source_media_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    output_type: Mapped[str] = mapped_column(String(20))  # vertical | thumbnail
    storage_path: Mapped[str] = mapped_column(String(500))
    duration_seconds: Mapped[float] = mapped_column(Float)
    # "metadata" is reserved on declarative classes
    asset_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(server_default=func.now())


class PipelineRun(Base):
    """PipelineRun model tracking execution metrics for one render run."""
    __tablename__ = "pipeline_runs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    clip_id: Mapped[str] = mapped_column(ForeignKey("clips.id"), index=True)
    started_at: Mapped[datetime] = mapped_column(server_default=func.now())
    completed_at: Mapped[Optional[datetime]] = mapped_column(nullable=True)
    total_duration_seconds: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    failed_step: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    captions_degraded: Mapped[bool] = mapped_column(Boolean, default=False)
    log: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
