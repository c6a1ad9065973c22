"""Clip export orchestrator with step-tagged failures and run metadata tracking.

Coordinates one render run for one clip:
- Clip state machine transitions (pending -> processing -> ready | failed)
- Best-effort captioning, then a single shared source upload
- Vertical and thumbnail renders, fail-fast sequential or concurrent
- Step-tagged error persistence on the Clip row
- Optional deadline and cooperative cancellation
- PipelineRun timing log
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from clipforge.config import Settings
from clipforge.db.models import DEFAULT_USER_ID
from clipforge.errors import ClipAlreadyRendering, ClipNotFound, PipelineCancelled, PipelineError
from clipforge.orchestrator.state import (
    STEP_CLOUDFLARE_UPLOAD,
    STEP_FETCH_CLIP_RECORD,
    STEP_GENERATE_CAPTIONS,
    STEP_UPDATE_CLIP_RECORD,
)
from clipforge.pipeline.captions import CaptionGenerator, CaptionResult, build_caption_generator
from clipforge.pipeline.render import FORMATS, THUMBNAIL, VERTICAL, RenderResult, RenderTask
from clipforge.schemas.clip_request import ClipRequest
from clipforge.services.job_store import ClipStore, JobStore
from clipforge.services.stream_client import StreamClient, call_with_retry, get_stream_client

logger = logging.getLogger(__name__)

SUCCESS_MESSAGE = "Clip derivatives generated successfully"


@dataclass
class RenderOutcome:
    """Result of one renderClip call: both derivatives, or a tagged error.

    ``results`` may hold one derivative next to an error when the renders
    ran concurrently and only one of them failed.
    """

    clip_id: str
    results: Dict[str, RenderResult] = field(default_factory=dict)
    error: Optional[PipelineError] = None
    errors: list[PipelineError] = field(default_factory=list)
    captions: Optional[CaptionResult] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def vertical(self) -> Optional[RenderResult]:
        return self.results.get(VERTICAL.name)

    @property
    def thumbnail(self) -> Optional[RenderResult]:
        return self.results.get(THUMBNAIL.name)

    def to_response(self) -> dict:
        if self.error is not None:
            body = self.error.to_response()
            body["clipId"] = self.clip_id
            if self.results:
                body["partial"] = {name: r.to_dict() for name, r in self.results.items()}
            return body
        body = {
            "success": True,
            "clipId": self.clip_id,
            "vertical": self.vertical.to_dict(),
            "thumbnail": self.thumbnail.to_dict(),
            "message": SUCCESS_MESSAGE,
        }
        if self.captions is not None:
            body["captions"] = {"count": len(self.captions), "source": self.captions.source}
        return body


@dataclass
class _RunState:
    """Mutable bookkeeping for one run: current step, timings, partial results."""

    step: str = STEP_FETCH_CLIP_RECORD
    step_started: float = 0.0
    step_log: Dict[str, float] = field(default_factory=dict)
    captions: Optional[CaptionResult] = None
    results: Dict[str, RenderResult] = field(default_factory=dict)
    errors: list[PipelineError] = field(default_factory=list)

    def enter(self, step: str) -> None:
        self.step = step
        self.step_started = time.monotonic()

    def leave(self) -> None:
        self.step_log[self.step] = round(time.monotonic() - self.step_started, 3)


class PipelineOrchestrator:
    """Runs the clip export pipeline with injected collaborators.

    Args:
        session_factory: Async session factory for the Clip/RenderJob/Asset tables
        stream: Transcoding provider client
        captions: Caption generator (best-effort)
        fail_fast: Render formats one after another and stop at the first
            failure. When False both renders run concurrently and each
            failure is recorded on its own job.
        deadline_seconds: Upper bound for a whole run, or None
        error_message_limit: Truncation length for persisted error messages
        retry_attempts: Attempts for transient upstream failures (1 = no retry)
        retry_base_delay: First backoff delay in seconds
        stale_run_seconds: Age after which another run's claim on a clip
            may be taken over, or None to never take over
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        stream: StreamClient,
        captions: CaptionGenerator,
        *,
        fail_fast: bool = True,
        deadline_seconds: Optional[float] = None,
        error_message_limit: Optional[int] = 300,
        retry_attempts: int = 1,
        retry_base_delay: float = 1.0,
        stale_run_seconds: Optional[float] = 3600.0,
    ):
        self.clips = ClipStore(session_factory)
        self.jobs = JobStore(session_factory)
        self.stream = stream
        self.captions = captions
        self.fail_fast = fail_fast
        self.deadline_seconds = deadline_seconds
        self.error_message_limit = error_message_limit
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.stale_run_seconds = stale_run_seconds
        self.tasks = {
            fmt.name: RenderTask(
                fmt,
                stream,
                self.jobs,
                retry_attempts=retry_attempts,
                retry_base_delay=retry_base_delay,
                error_message_limit=error_message_limit,
            )
            for fmt in FORMATS
        }

    async def render_clip(
        self,
        request: ClipRequest,
        user_id: str = DEFAULT_USER_ID,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RenderOutcome:
        """Render both derivatives for ``request.clip_id``.

        Pipeline failures are persisted and returned in the outcome rather
        than raised. Task cancellation is recorded on the Clip and then
        re-raised.

        Side effects:
            - Clip moves to processing, then ready or failed
            - One RenderJob per render attempted, one Asset per success
            - One PipelineRun row with per-step timings
        """
        clip = await self.clips.get_clip(request.clip_id)
        if clip is None:
            # Reported without ever reaching processing
            logger.warning(f"Clip not found: {request.clip_id}")
            return RenderOutcome(clip_id=request.clip_id, error=ClipNotFound(request.clip_id))

        try:
            run_id = await self.clips.begin_run(
                clip.id, stale_after_seconds=self.stale_run_seconds,
            )
        except ClipAlreadyRendering as e:
            # The running claim owns the clip row; nothing is written here
            logger.warning(f"Clip {clip.id} is already rendering; request rejected")
            return RenderOutcome(clip_id=clip.id, error=e)
        state = _RunState()
        logger.info(f"Starting render run {run_id} for clip {clip.id}")
        pipeline_start = time.monotonic()

        deadline = asyncio.timeout(self.deadline_seconds)
        error: Optional[PipelineError] = None
        try:
            async with deadline:
                await self._execute(request, clip.source_media_id, user_id, cancel_event, state)
        except PipelineError as e:
            error = e
        except TimeoutError as e:
            if deadline.expired():
                error = PipelineError(
                    self._interrupted_step(state),
                    f"Pipeline deadline of {self.deadline_seconds:g}s exceeded",
                )
            else:
                error = PipelineError.from_exception(state.step, e)
        except asyncio.CancelledError:
            error = PipelineError(self._interrupted_step(state), "Pipeline cancelled")
            logger.warning(f"Render run {run_id} cancelled at step {error.step}")
            await asyncio.shield(self._record_failure(clip.id, run_id, error, state))
            raise
        except Exception as e:
            error = PipelineError.from_exception(state.step, e)

        outcome = RenderOutcome(
            clip_id=clip.id,
            results=dict(state.results),
            captions=state.captions,
        )
        if error is not None:
            logger.error(f"Render run {run_id} failed at step {error.step}: {error.message}")
            await self._record_failure(clip.id, run_id, error, state)
            outcome.error = error
            outcome.errors = state.errors or [error]
            return outcome

        await self.clips.finish_run(
            run_id,
            captions_degraded=state.captions.used_fallback,
            log=state.step_log,
        )
        logger.info(
            f"Render run {run_id} completed in {time.monotonic() - pipeline_start:.2f}s"
        )
        return outcome

    async def _execute(
        self,
        request: ClipRequest,
        source_media_id: Optional[str],
        user_id: str,
        cancel_event: Optional[asyncio.Event],
        state: _RunState,
    ) -> None:
        # Step 1: Captions (never fails the run)
        state.enter(STEP_GENERATE_CAPTIONS)
        state.captions = await self.captions.generate(
            request.transcript, request.start_time, request.duration,
        )
        state.leave()
        logger.info(
            f"Captions: {len(state.captions)} segments ({state.captions.source})"
        )

        # Step 2: Shared source upload, exactly once per run
        self._check_cancelled(cancel_event, STEP_CLOUDFLARE_UPLOAD)
        state.enter(STEP_CLOUDFLARE_UPLOAD)
        try:
            remote_video_id = await call_with_retry(
                self.stream.upload_source,
                request.source_video_url,
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
            )
        except Exception as e:
            raise PipelineError.from_exception(STEP_CLOUDFLARE_UPLOAD, e) from e
        state.leave()

        # Step 3: Derivative renders
        if self.fail_fast:
            for fmt in FORMATS:
                self._check_cancelled(cancel_event, fmt.step)
                state.enter(fmt.step)
                state.results[fmt.name] = await self.tasks[fmt.name].run(
                    request,
                    remote_video_id,
                    state.captions,
                    user_id=user_id,
                    source_media_id=source_media_id,
                )
                state.leave()
        else:
            await self._render_concurrently(
                request, remote_video_id, source_media_id, user_id, cancel_event, state,
            )

        # Step 4: Terminal clip write
        self._check_cancelled(cancel_event, STEP_UPDATE_CLIP_RECORD)
        state.enter(STEP_UPDATE_CLIP_RECORD)
        try:
            await self.clips.mark_ready(
                request.clip_id,
                state.results[VERTICAL.name].url,
                state.results[THUMBNAIL.name].url,
            )
        except Exception as e:
            raise PipelineError.from_exception(STEP_UPDATE_CLIP_RECORD, e) from e
        state.leave()

    async def _render_concurrently(
        self,
        request: ClipRequest,
        remote_video_id: str,
        source_media_id: Optional[str],
        user_id: str,
        cancel_event: Optional[asyncio.Event],
        state: _RunState,
    ) -> None:
        """Run every format at once; each failure is already on its own job."""
        self._check_cancelled(cancel_event, FORMATS[0].step)
        state.enter(FORMATS[0].step)
        outcomes = await asyncio.gather(
            *(
                self.tasks[fmt.name].run(
                    request,
                    remote_video_id,
                    state.captions,
                    user_id=user_id,
                    source_media_id=source_media_id,
                )
                for fmt in FORMATS
            ),
            return_exceptions=True,
        )
        for fmt, outcome in zip(FORMATS, outcomes):
            if isinstance(outcome, RenderResult):
                state.results[fmt.name] = outcome
            elif isinstance(outcome, Exception):
                state.errors.append(PipelineError.from_exception(fmt.step, outcome))
            else:
                raise outcome
        if state.errors:
            # First failure in render order, not completion order
            state.step = state.errors[0].step
            raise state.errors[0]
        state.leave()

    def _check_cancelled(self, cancel_event: Optional[asyncio.Event], next_step: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise PipelineCancelled(next_step, "Pipeline cancelled by request")

    def _interrupted_step(self, state: _RunState) -> str:
        """Step to blame when the run is interrupted from outside."""
        render_steps = {fmt.step for fmt in FORMATS}
        if state.step in render_steps:
            for fmt in FORMATS:
                if fmt.name not in state.results:
                    return fmt.step
        return state.step

    async def _record_failure(
        self,
        clip_id: str,
        run_id: uuid.UUID,
        error: PipelineError,
        state: _RunState,
    ) -> None:
        """Persist the failure on the Clip and close the run.

        Storage errors here are logged, not raised: the caller must still get
        the original step-tagged error, and the run row is closed even when
        the Clip write fails.
        """
        partial = {}
        if not self.fail_fast and len(state.results) == 1:
            name, result = next(iter(state.results.items()))
            partial[f"{name}_url"] = result.url
        try:
            await self.clips.mark_failed(
                clip_id, error.tagged(self.error_message_limit), **partial,
            )
        except Exception as e:
            logger.error(
                f"Could not mark clip {clip_id} failed ({error.tagged()}): {e}",
                exc_info=True,
            )
        try:
            await self.clips.finish_run(
                run_id,
                failed_step=error.step,
                captions_degraded=bool(state.captions and state.captions.used_fallback),
                log=state.step_log,
            )
        except Exception as e:
            logger.error(f"Could not close run {run_id}: {e}", exc_info=True)

    async def aclose(self) -> None:
        """Close provider connections owned by this orchestrator."""
        await self.captions.close()
        await self.stream.close()


def build_orchestrator(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    *,
    stream: Optional[StreamClient] = None,
    captions: Optional[CaptionGenerator] = None,
) -> PipelineOrchestrator:
    """Build an orchestrator from settings, wiring in the configured providers."""
    if session_factory is None:
        from clipforge.db import async_session

        session_factory = async_session

    return PipelineOrchestrator(
        session_factory,
        stream or get_stream_client(settings.stream),
        captions or build_caption_generator(settings),
        fail_fast=settings.pipeline.fail_fast,
        deadline_seconds=settings.pipeline.deadline_seconds,
        error_message_limit=settings.pipeline.error_message_max_length,
        retry_attempts=settings.pipeline.retry_max_attempts,
        retry_base_delay=settings.pipeline.retry_base_delay,
        stale_run_seconds=settings.pipeline.stale_run_seconds,
    )
