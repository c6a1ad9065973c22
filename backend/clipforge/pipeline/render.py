"""Derivative rendering: one export-ready crop of an uploaded source video.

A RenderTask owns exactly one RenderJob row for its lifetime:

    create job -> create remote clip -> build playback URL
               -> insert asset + complete job (one transaction)

Any failure after the job exists marks that job failed and leaves it with
zero assets. Captions are counted in the asset metadata but not burned into
the frame; ``captions_burned_in`` records that explicitly.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

from clipforge.errors import PipelineError
from clipforge.orchestrator.state import (
    STEP_PROCESS_THUMBNAIL,
    STEP_PROCESS_VERTICAL,
    tag_error,
)
from clipforge.pipeline.captions import CaptionResult
from clipforge.schemas.clip_request import ClipRequest
from clipforge.services.job_store import JobStore
from clipforge.services.stream_client import StreamClient, call_with_retry

logger = logging.getLogger(__name__)

PROCESSING_METHOD = "cloudflare_stream_clip_api"


@dataclass(frozen=True)
class DerivativeFormat:
    """Fixed shape and bookkeeping labels of one export format."""

    name: str
    step: str
    format_label: str
    width: int
    height: int
    aspect_ratio: str
    clip_label: str
    default_title: str
    # Enhancements requested in job params; none is applied by the provider
    # yet, so each is reported False in the asset metadata.
    requested_features: tuple[str, ...] = ()

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


VERTICAL = DerivativeFormat(
    name="vertical",
    step=STEP_PROCESS_VERTICAL,
    format_label="vertical_9x16",
    width=1080,
    height=1920,
    aspect_ratio="9:16",
    clip_label="Vertical Clip",
    default_title="Viral Moment",
    requested_features=("has_face_tracking", "has_dynamic_zoom"),
)

THUMBNAIL = DerivativeFormat(
    name="thumbnail",
    step=STEP_PROCESS_THUMBNAIL,
    format_label="thumbnail_1x1",
    width=1080,
    height=1080,
    aspect_ratio="1:1",
    clip_label="Thumbnail Clip",
    default_title="Watch This!",
    requested_features=("has_color_grading",),
)

# Render order; also the order failures are reported in
FORMATS = (VERTICAL, THUMBNAIL)


@dataclass
class RenderResult:
    format: str
    url: str
    job_id: uuid.UUID
    asset_id: uuid.UUID
    remote_clip_id: str

    def to_dict(self) -> dict:
        return {"url": self.url, "jobId": str(self.job_id)}


class RenderTask:
    """Produces one derivative asset for one DerivativeFormat."""

    def __init__(
        self,
        fmt: DerivativeFormat,
        stream: StreamClient,
        jobs: JobStore,
        *,
        retry_attempts: int = 1,
        retry_base_delay: float = 1.0,
        error_message_limit: Optional[int] = 300,
    ):
        self.format = fmt
        self.stream = stream
        self.jobs = jobs
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.error_message_limit = error_message_limit

    def job_params(
        self,
        request: ClipRequest,
        remote_video_id: str,
        captions: CaptionResult,
        title: str,
    ) -> dict:
        params = {
            "clip_id": request.clip_id,
            "start_time": request.start_time,
            "duration": request.duration,
            "output_format": self.format.name,
            "stream_video_id": remote_video_id,
            "title": title,
            "has_captions": len(captions) > 0,
        }
        for feature in self.format.requested_features:
            params[feature] = True
        return params

    def asset_metadata(self, captions: CaptionResult, title: str, remote_clip_id: str) -> dict:
        metadata = {
            "format": self.format.name,
            "resolution": self.format.resolution,
            "aspect_ratio": self.format.aspect_ratio,
            "title": title,
            "has_captions": len(captions) > 0,
            "captions_count": len(captions),
            "captions_source": captions.source,
            "captions_burned_in": False,
            "processing_method": PROCESSING_METHOD,
            "cloudflare_clip_id": remote_clip_id,
        }
        for feature in self.format.requested_features:
            metadata[feature] = False
        return metadata

    async def _fail_cancelled_insert(self, insert: "asyncio.Future[uuid.UUID]") -> None:
        """Wait out a job insert interrupted by cancellation, then fail the job."""
        try:
            job_id = await insert
        except Exception as e:
            logger.warning("%s job insert failed during cancel: %s", self.format.name, e)
            return
        await self.jobs.fail_job(
            job_id, tag_error(self.format.step, "Render cancelled before completion"),
        )

    async def run(
        self,
        request: ClipRequest,
        remote_video_id: str,
        captions: CaptionResult,
        *,
        user_id: str,
        source_media_id: Optional[str] = None,
    ) -> RenderResult:
        """Render this format from the shared remote video.

        Raises:
            PipelineError: tagged with this format's step. If the job row
                could not be created no job exists; otherwise the job has
                been marked failed before this is raised.
        """
        fmt = self.format
        title = request.display_title(fmt.default_title)

        # Shielded: a cancelled render must never leave its job processing
        insert = asyncio.ensure_future(
            self.jobs.create_job(
                user_id=user_id,
                clip_id=request.clip_id,
                params=self.job_params(request, remote_video_id, captions, title),
            )
        )
        try:
            job_id = await asyncio.shield(insert)
        except asyncio.CancelledError:
            await asyncio.shield(self._fail_cancelled_insert(insert))
            raise
        except Exception as e:
            raise PipelineError(fmt.step, f"Could not create render job: {e}") from e

        started = time.monotonic()
        logger.info("Rendering %s for clip %s (job %s)", fmt.name, request.clip_id, job_id)
        try:
            remote_clip_id = await call_with_retry(
                self.stream.create_clip,
                remote_video_id,
                request.start_time,
                request.end_time,
                meta={"name": f"{fmt.clip_label}: {title}", "format": fmt.format_label},
                attempts=self.retry_attempts,
                base_delay=self.retry_base_delay,
            )
            url = self.stream.build_playback_url(remote_clip_id, fmt.width, fmt.height)
            asset_id = await self.jobs.finalize_job(
                job_id,
                round(time.monotonic() - started, 3),
                output_type=fmt.name,
                storage_path=url,
                duration_seconds=request.duration,
                source_media_id=source_media_id,
                metadata=self.asset_metadata(captions, title, remote_clip_id),
            )
        except asyncio.CancelledError:
            await asyncio.shield(
                self.jobs.fail_job(job_id, tag_error(fmt.step, "Render cancelled before completion"))
            )
            raise
        except Exception as e:
            error = PipelineError.from_exception(fmt.step, e)
            logger.error("%s render failed for clip %s: %s", fmt.name, request.clip_id, error.message)
            await asyncio.shield(
                self.jobs.fail_job(job_id, error.tagged(self.error_message_limit))
            )
            if error is e:
                raise
            raise error from e

        logger.info("%s ready: %s", fmt.name, url)
        return RenderResult(
            format=fmt.name,
            url=url,
            job_id=job_id,
            asset_id=asset_id,
            remote_clip_id=remote_clip_id,
        )
