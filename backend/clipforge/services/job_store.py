"""Durable ledger for render jobs, assets and the parent clip row.

Every operation opens its own session and commits before returning. Render
tasks running side by side therefore never share a session, and nothing is
cached in memory between calls.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipforge.db.models import Asset, Clip, PipelineRun, RenderJob
from clipforge.errors import ClipAlreadyRendering
from clipforge.orchestrator.state import (
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PROCESSING,
)

logger = logging.getLogger(__name__)

JOB_TYPE_CLIP_RENDER = "clip-render"
ENGINE_CLOUDFLARE_STREAM = "cloudflare_stream"


def _utcnow() -> datetime:
    """Naive UTC timestamp, matching SQLite's CURRENT_TIMESTAMP."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class JobStore:
    """RenderJob and Asset persistence.

    A RenderJob is written once on creation and once more on its terminal
    transition. Terminal jobs are never touched again.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _load_processing_job(self, session: AsyncSession, job_id: uuid.UUID) -> RenderJob:
        job = await session.get(RenderJob, job_id)
        if job is None:
            raise LookupError(f"RenderJob {job_id} not found")
        if job.status != JOB_PROCESSING:
            raise ValueError(f"RenderJob {job_id} is already {job.status}")
        return job

    async def create_job(
        self,
        *,
        user_id: str,
        params: dict,
        clip_id: Optional[str] = None,
        engine: str = ENGINE_CLOUDFLARE_STREAM,
    ) -> uuid.UUID:
        """Insert a job in ``processing`` state and return its id."""
        async with self._session_factory() as session:
            job = RenderJob(
                clip_id=clip_id,
                user_id=user_id,
                job_type=JOB_TYPE_CLIP_RENDER,
                engine=engine,
                params=params,
                status=JOB_PROCESSING,
                started_at=_utcnow(),
            )
            session.add(job)
            await session.commit()
            logger.info(
                "RenderJob %s created (%s)", job.id, params.get("output_format"),
            )
            return job.id

    async def complete_job(self, job_id: uuid.UUID, processing_time_seconds: float) -> None:
        async with self._session_factory() as session:
            job = await self._load_processing_job(session, job_id)
            job.status = JOB_COMPLETED
            job.completed_at = _utcnow()
            job.processing_time_seconds = processing_time_seconds
            await session.commit()

    async def fail_job(self, job_id: uuid.UUID, error_message: str) -> bool:
        """Mark a job failed.

        Returns False, leaving the row untouched, when the job has already
        reached a terminal state. Callers use this on their error path and
        must not have the original failure masked by a second one.
        """
        async with self._session_factory() as session:
            job = await session.get(RenderJob, job_id)
            if job is None or job.status != JOB_PROCESSING:
                logger.warning(
                    "RenderJob %s not failed: status is %s",
                    job_id, job.status if job else "missing",
                )
                return False
            job.status = JOB_FAILED
            job.error_message = error_message
            job.completed_at = _utcnow()
            job.processing_time_seconds = (job.completed_at - job.started_at).total_seconds()
            await session.commit()
            logger.info("RenderJob %s failed: %s", job_id, error_message)
            return True

    @staticmethod
    def _new_asset(
        job_id: uuid.UUID,
        *,
        output_type: str,
        storage_path: str,
        duration_seconds: float,
        source_media_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Asset:
        return Asset(
            render_job_id=job_id,
            source_media_id=source_media_id,
            output_type=output_type,
            storage_path=storage_path,
            duration_seconds=duration_seconds,
            asset_metadata=metadata or {},
        )

    async def create_asset(self, job_id: uuid.UUID, **asset_fields) -> uuid.UUID:
        """Insert an Asset for a job that is still processing."""
        async with self._session_factory() as session:
            await self._load_processing_job(session, job_id)
            asset = self._new_asset(job_id, **asset_fields)
            session.add(asset)
            await session.commit()
            return asset.id

    async def finalize_job(
        self,
        job_id: uuid.UUID,
        processing_time_seconds: float,
        **asset_fields,
    ) -> uuid.UUID:
        """Insert the job's Asset and mark the job completed atomically.

        Both writes share one transaction: if either fails the job stays
        ``processing`` with no Asset, and the caller fails it.
        """
        async with self._session_factory() as session:
            job = await self._load_processing_job(session, job_id)
            asset = self._new_asset(job_id, **asset_fields)
            session.add(asset)
            job.status = JOB_COMPLETED
            job.completed_at = _utcnow()
            job.processing_time_seconds = processing_time_seconds
            await session.commit()
            logger.info(
                "RenderJob %s completed in %.2fs (asset %s)",
                job_id, processing_time_seconds, asset.id,
            )
            return asset.id

    async def get_job(self, job_id: uuid.UUID) -> Optional[RenderJob]:
        async with self._session_factory() as session:
            return await session.get(RenderJob, job_id)

    async def list_jobs(self, clip_id: str) -> list[tuple[RenderJob, list[Asset]]]:
        """Jobs for a clip, oldest first, each with its assets."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(RenderJob)
                .where(RenderJob.clip_id == clip_id)
                .order_by(RenderJob.started_at, RenderJob.id)
            )
            jobs = list(result.scalars().all())
            if not jobs:
                return []
            asset_rows = await session.execute(
                select(Asset).where(Asset.render_job_id.in_([j.id for j in jobs]))
            )
            by_job: dict[uuid.UUID, list[Asset]] = {}
            for asset in asset_rows.scalars().all():
                by_job.setdefault(asset.render_job_id, []).append(asset)
            return [(job, by_job.get(job.id, [])) for job in jobs]


class ClipStore:
    """Clip row and PipelineRun persistence, written only by the orchestrator."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_clip(
        self,
        clip_id: Optional[str] = None,
        *,
        user_id: Optional[str] = None,
        source_media_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> Clip:
        """Register a ``pending`` clip."""
        async with self._session_factory() as session:
            clip = Clip(
                user_id=user_id,
                source_media_id=source_media_id,
                title=title,
                status="pending",
            )
            if clip_id:
                clip.id = clip_id
            session.add(clip)
            await session.commit()
            # Load server-side timestamps
            await session.refresh(clip)
            logger.info("Clip %s registered", clip.id)
            return clip

    async def get_clip(self, clip_id: str) -> Optional[Clip]:
        async with self._session_factory() as session:
            return await session.get(Clip, clip_id)

    @staticmethod
    def is_stale(clip: Clip, stale_after_seconds: Optional[float]) -> bool:
        """True if a ``processing`` clip has not been touched for too long.

        A crashed worker leaves its clip in ``processing``; once stale, a new
        run may take it over. ``None`` disables takeover.
        """
        if stale_after_seconds is None or clip.updated_at is None:
            return False
        return clip.updated_at < _utcnow() - timedelta(seconds=stale_after_seconds)

    async def begin_run(
        self,
        clip_id: str,
        *,
        stale_after_seconds: Optional[float] = None,
    ) -> uuid.UUID:
        """Claim the clip for a new run and open a PipelineRun row.

        The claim is a single conditional UPDATE, so of two overlapping
        runs exactly one moves the clip to ``processing``. URLs and errors
        from any earlier run are cleared so the terminal write of this run
        is the only one that counts.

        Raises:
            LookupError: No such clip.
            ClipAlreadyRendering: Another run holds the clip and is not stale.
        """
        claimable = [Clip.status != "processing"]
        if stale_after_seconds is not None:
            cutoff = _utcnow() - timedelta(seconds=stale_after_seconds)
            claimable.append(Clip.updated_at < cutoff)

        async with self._session_factory() as session:
            result = await session.execute(
                update(Clip)
                .where(Clip.id == clip_id, or_(*claimable))
                .values(
                    status="processing",
                    error_message=None,
                    vertical_url=None,
                    thumbnail_url=None,
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                if await session.get(Clip, clip_id) is None:
                    raise LookupError(f"Clip {clip_id} not found")
                raise ClipAlreadyRendering(clip_id)
            run = PipelineRun(clip_id=clip_id, started_at=_utcnow())
            session.add(run)
            await session.commit()
            logger.info("Clip %s claimed by run %s", clip_id, run.id)
            return run.id

    async def mark_ready(self, clip_id: str, vertical_url: str, thumbnail_url: str) -> None:
        if not (vertical_url and thumbnail_url):
            raise ValueError("A ready clip needs both derivative URLs")
        async with self._session_factory() as session:
            clip = await session.get(Clip, clip_id)
            if clip is None:
                raise LookupError(f"Clip {clip_id} not found")
            clip.status = "ready"
            clip.error_message = None
            clip.vertical_url = vertical_url
            clip.thumbnail_url = thumbnail_url
            clip.storage_path = vertical_url
            await session.commit()
            logger.info("Clip %s ready", clip_id)

    async def mark_failed(
        self,
        clip_id: str,
        error_message: str,
        *,
        vertical_url: Optional[str] = None,
        thumbnail_url: Optional[str] = None,
    ) -> None:
        """Mark the clip failed, keeping at most one partial derivative URL."""
        if vertical_url and thumbnail_url:
            raise ValueError("A failed clip cannot carry both derivative URLs")
        async with self._session_factory() as session:
            clip = await session.get(Clip, clip_id)
            if clip is None:
                raise LookupError(f"Clip {clip_id} not found")
            clip.status = "failed"
            clip.error_message = error_message
            clip.vertical_url = vertical_url
            clip.thumbnail_url = thumbnail_url
            await session.commit()
            logger.info("Clip %s failed: %s", clip_id, error_message)

    async def finish_run(
        self,
        run_id: uuid.UUID,
        *,
        failed_step: Optional[str] = None,
        captions_degraded: bool = False,
        log: Optional[dict] = None,
    ) -> None:
        async with self._session_factory() as session:
            run = await session.get(PipelineRun, run_id)
            if run is None:
                raise LookupError(f"PipelineRun {run_id} not found")
            run.completed_at = _utcnow()
            run.total_duration_seconds = (run.completed_at - run.started_at).total_seconds()
            run.failed_step = failed_step
            run.captions_degraded = captions_degraded
            run.log = log
            await session.commit()

    async def latest_run(self, clip_id: str) -> Optional[PipelineRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PipelineRun)
                .where(PipelineRun.clip_id == clip_id)
                .order_by(PipelineRun.started_at.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()
