"""Tests for single-format derivative rendering and its job bookkeeping."""

import asyncio

import pytest

from clipforge.errors import PipelineError
from clipforge.pipeline.captions import CaptionResult
from clipforge.pipeline.render import THUMBNAIL, VERTICAL, RenderTask
from clipforge.schemas.clip_request import ClipRequest
from clipforge.schemas.captions import CaptionSegment
from clipforge.services.job_store import JobStore

from conftest import ACCOUNT_ID, count_assets, load_assets, load_jobs, rejection


def _request(**overrides) -> ClipRequest:
    fields = {
        "clipId": "clip-1",
        "sourceVideoUrl": "https://example/src.mp4",
        "startTime": 10,
        "duration": 15,
        "title": "Hook",
    }
    fields.update(overrides)
    return ClipRequest.model_validate(fields)


def _captions(count: int = 2, source: str = "model") -> CaptionResult:
    segments = [
        CaptionSegment(text=f"line {i}", start_time=i * 2, end_time=i * 2 + 2)
        for i in range(count)
    ]
    return CaptionResult(segments, source)


@pytest.fixture
def make_task(session_factory, stream_client):
    def _make(fmt, stream=None, **kwargs) -> RenderTask:
        kwargs.setdefault("retry_base_delay", 0)
        return RenderTask(fmt, stream or stream_client, JobStore(session_factory), **kwargs)

    return _make


# ---------------------------------------------------------------------------
# Success
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_vertical_render_writes_completed_job_and_asset(
    make_task, session_factory, stream_api, clip,
):
    result = await make_task(VERTICAL).run(
        _request(), "video-1", _captions(), user_id="user-1", source_media_id="media-1",
    )

    assert result.url == (
        f"https://customer-{ACCOUNT_ID}.cloudflarestream.com/vertical_9x16-1"
        "/downloads/default.mp4?width=1080&height=1920&fit=crop"
    )
    assert stream_api.clip_calls[0]["startTimeSeconds"] == 10
    assert stream_api.clip_calls[0]["endTimeSeconds"] == 25
    assert stream_api.clip_calls[0]["meta"] == {"name": "Vertical Clip: Hook", "format": "vertical_9x16"}

    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.id == result.job_id
    assert job.status == "completed"
    assert job.user_id == "user-1"
    assert job.params == {
        "clip_id": "clip-1",
        "start_time": 10,
        "duration": 15,
        "output_format": "vertical",
        "stream_video_id": "video-1",
        "title": "Hook",
        "has_captions": True,
        "has_face_tracking": True,
        "has_dynamic_zoom": True,
    }

    (asset,) = await load_assets(session_factory, job.id)
    assert asset.id == result.asset_id
    assert asset.output_type == "vertical"
    assert asset.storage_path == result.url
    assert asset.duration_seconds == 15
    assert asset.source_media_id == "media-1"
    assert asset.asset_metadata == {
        "format": "vertical",
        "resolution": "1080x1920",
        "aspect_ratio": "9:16",
        "title": "Hook",
        "has_captions": True,
        "captions_count": 2,
        "captions_source": "model",
        "captions_burned_in": False,
        "processing_method": "cloudflare_stream_clip_api",
        "cloudflare_clip_id": "vertical_9x16-1",
        "has_face_tracking": False,
        "has_dynamic_zoom": False,
    }


@pytest.mark.asyncio
async def test_thumbnail_uses_default_title_and_square_crop(
    make_task, session_factory, stream_api, clip,
):
    result = await make_task(THUMBNAIL).run(
        _request(title=None), "video-1", _captions(0, "disabled"), user_id="user-1",
    )

    assert result.url.endswith("?width=1080&height=1080&fit=crop")
    assert stream_api.clip_calls[0]["meta"]["name"] == "Thumbnail Clip: Watch This!"

    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.params["output_format"] == "thumbnail"
    assert job.params["has_captions"] is False
    assert job.params["has_color_grading"] is True
    (asset,) = await load_assets(session_factory, job.id)
    assert asset.asset_metadata["aspect_ratio"] == "1:1"
    assert asset.asset_metadata["captions_count"] == 0
    assert asset.asset_metadata["has_color_grading"] is False


@pytest.mark.asyncio
async def test_hook_is_title_fallback(make_task, stream_api, clip):
    await make_task(VERTICAL).run(
        _request(title=None, hook="You won't believe this"), "video-1", _captions(0),
        user_id="user-1",
    )

    assert stream_api.clip_calls[0]["meta"]["name"] == "Vertical Clip: You won't believe this"


# ---------------------------------------------------------------------------
# Failure
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_clip_rejection_fails_job_without_asset(make_task, session_factory, stream_api, clip):
    stream_api.clip_replies["vertical_9x16"] = [(400, rejection(10005, "range out of bounds"))]

    with pytest.raises(PipelineError) as excinfo:
        await make_task(VERTICAL).run(_request(), "video-1", _captions(), user_id="user-1")

    err = excinfo.value
    assert err.step == "process_vertical"
    assert err.code == 10005
    assert "range out of bounds" in err.upstream_payload

    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.status == "failed"
    assert job.error_message.startswith("[process_vertical] Cloudflare clip API failed")
    assert job.completed_at is not None
    assert await count_assets(session_factory, job.id) == 0


@pytest.mark.asyncio
async def test_job_error_message_is_truncated(make_task, session_factory, stream_api, clip):
    stream_api.clip_replies["thumbnail_1x1"] = [(400, rejection(10005, "x" * 1000))]

    with pytest.raises(PipelineError) as excinfo:
        await make_task(THUMBNAIL, error_message_limit=300).run(
            _request(), "video-1", _captions(), user_id="user-1",
        )

    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.error_message == "[process_thumbnail] " + excinfo.value.message[:300] + "..."


@pytest.mark.asyncio
async def test_job_creation_failure_leaves_no_job(make_task, session_factory, stream_api):
    # No clip row: the foreign key rejects the job insert
    with pytest.raises(PipelineError) as excinfo:
        await make_task(VERTICAL).run(
            _request(clipId="missing"), "video-1", _captions(), user_id="user-1",
        )

    assert excinfo.value.step == "process_vertical"
    assert excinfo.value.message.startswith("Could not create render job")
    assert await load_jobs(session_factory, "missing") == []
    assert stream_api.clip_calls == []


@pytest.mark.asyncio
async def test_transient_clip_failure_is_retried(make_task, session_factory, stream_api, clip):
    stream_api.clip_replies["vertical_9x16"] = [(503, rejection(10001, "busy"))]

    result = await make_task(VERTICAL, retry_attempts=2).run(
        _request(), "video-1", _captions(), user_id="user-1",
    )

    assert len(stream_api.clip_calls) == 2
    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.status == "completed"
    assert job.id == result.job_id


class _HangingStream:
    """Stream double whose clip creation never returns."""

    def __init__(self):
        self.started = asyncio.Event()

    async def create_clip(self, *args, **kwargs):
        self.started.set()
        await asyncio.Event().wait()


@pytest.mark.asyncio
async def test_cancelled_render_fails_its_job(make_task, session_factory, clip):
    stream = _HangingStream()
    task = asyncio.create_task(
        make_task(VERTICAL, stream=stream).run(_request(), "video-1", _captions(), user_id="user-1")
    )
    await stream.started.wait()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.status == "failed"
    assert job.error_message == "[process_vertical] Render cancelled before completion"
    assert await count_assets(session_factory, job.id) == 0


class _GatedJobStore(JobStore):
    """Commits the job row, then stalls before handing back its id."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.created = asyncio.Event()
        self.release = asyncio.Event()

    async def create_job(self, **kwargs):
        job_id = await super().create_job(**kwargs)
        self.created.set()
        await self.release.wait()
        return job_id


@pytest.mark.asyncio
async def test_cancel_during_job_creation_fails_the_committed_job(session_factory, clip):
    jobs = _GatedJobStore(session_factory)
    stream = _HangingStream()
    task = asyncio.create_task(
        RenderTask(VERTICAL, stream, jobs).run(_request(), "video-1", _captions(), user_id="user-1")
    )
    await jobs.created.wait()

    task.cancel()
    jobs.release.set()
    with pytest.raises(asyncio.CancelledError):
        await task

    (job,) = await load_jobs(session_factory, "clip-1")
    assert job.status == "failed"
    assert job.error_message == "[process_vertical] Render cancelled before completion"
    assert not stream.started.is_set()
