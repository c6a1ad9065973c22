"""Shared fixtures: temporary SQLite storage and a fake Cloudflare Stream API.

The fake provider is served through httpx.MockTransport so the real
StreamClient request and response handling is exercised end to end.
"""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional, Type

import httpx
import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy import func, select, update

from clipforge.db import Asset, Base, Clip, RenderJob, make_engine, make_session_factory
from clipforge.pipeline.captions import CaptionGenerator
from clipforge.orchestrator.pipeline import PipelineOrchestrator
from clipforge.services.job_store import ClipStore
from clipforge.services.llm.base import LLMAdapter, strip_code_fences
from clipforge.services.stream_client import StreamClient

ACCOUNT_ID = "acct-123"
API_TOKEN = "stream-token"


# ---------------------------------------------------------------------------
# Fake providers
# ---------------------------------------------------------------------------

def envelope(uid: str) -> dict:
    return {"success": True, "errors": [], "messages": [], "result": {"uid": uid}}


def rejection(code: int, message: str) -> dict:
    return {"success": False, "errors": [{"code": code, "message": message}], "result": None}


class FakeStreamAPI:
    """In-memory Cloudflare Stream API.

    ``upload_replies`` and ``clip_replies[format_label]`` are queues of
    ``(status, body)`` pairs consumed one per request; once a queue is
    empty the call succeeds.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.upload_replies: list[tuple[int, object]] = []
        self.clip_replies: dict[str, list[tuple[int, object]]] = {}
        self._clip_count = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content) if request.content else {}
        path = request.url.path

        if path.endswith("/stream/copy"):
            if self.upload_replies:
                status, reply = self.upload_replies.pop(0)
                return _response(status, reply)
            return httpx.Response(200, json=envelope("video-1"))

        if path.endswith("/clip"):
            label = body["meta"]["format"]
            queue = self.clip_replies.get(label)
            if queue:
                status, reply = queue.pop(0)
                return _response(status, reply)
            self._clip_count += 1
            return httpx.Response(200, json=envelope(f"{label}-{self._clip_count}"))

        return httpx.Response(404, json=rejection(10000, f"unknown path {path}"))

    @property
    def uploads(self) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith("/stream/copy")]

    @property
    def clip_calls(self) -> list[dict]:
        return [
            json.loads(r.content) for r in self.requests if r.url.path.endswith("/clip")
        ]


def _response(status: int, reply: object) -> httpx.Response:
    if isinstance(reply, str):
        return httpx.Response(status, text=reply)
    return httpx.Response(status, json=reply)


class FakeAdapter(LLMAdapter):
    """Caption model double: replies with fixed text or raises."""

    def __init__(self, reply: str = "[]", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: list[str] = []

    async def generate_text(
        self,
        prompt: str,
        schema: Type[BaseModel],
        *,
        temperature: float = 0.7,
        system_prompt: Optional[str] = None,
        max_retries: int = 3,
    ) -> BaseModel:
        self.calls.append(prompt)
        if self.error is not None:
            raise self.error
        return schema.model_validate_json(strip_code_fences(self.reply))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'clipforge-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield make_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def stream_api() -> FakeStreamAPI:
    return FakeStreamAPI()


@pytest_asyncio.fixture
async def stream_client(stream_api):
    client = StreamClient(ACCOUNT_ID, API_TOKEN, transport=httpx.MockTransport(stream_api))
    yield client
    await client.close()


@pytest.fixture
def make_orchestrator(session_factory, stream_client):
    """Build an orchestrator over the fake provider; captions off by default."""

    def _make(
        adapter: Optional[LLMAdapter] = None,
        stream: Optional[StreamClient] = None,
        **kwargs,
    ) -> PipelineOrchestrator:
        kwargs.setdefault("retry_base_delay", 0)
        return PipelineOrchestrator(
            session_factory,
            stream or stream_client,
            CaptionGenerator(adapter),
            **kwargs,
        )

    return _make


@pytest_asyncio.fixture
async def clip(session_factory) -> Clip:
    return await ClipStore(session_factory).create_clip(
        "clip-1", source_media_id="media-1", title="Source title",
    )


# ---------------------------------------------------------------------------
# Query helpers
# ---------------------------------------------------------------------------

async def load_clip(session_factory, clip_id: str) -> Clip:
    async with session_factory() as session:
        return await session.get(Clip, clip_id)


async def load_jobs(session_factory, clip_id: str) -> list[RenderJob]:
    async with session_factory() as session:
        result = await session.execute(
            select(RenderJob).where(RenderJob.clip_id == clip_id).order_by(RenderJob.started_at)
        )
        return list(result.scalars().all())


async def count_assets(session_factory, job_id) -> int:
    async with session_factory() as session:
        result = await session.execute(
            select(func.count(Asset.id)).where(Asset.render_job_id == job_id)
        )
        return result.scalar_one()


async def load_assets(session_factory, job_id) -> list[Asset]:
    async with session_factory() as session:
        result = await session.execute(select(Asset).where(Asset.render_job_id == job_id))
        return list(result.scalars().all())


async def backdate_clip(session_factory, clip_id: str, hours: float) -> None:
    """Move a clip's last update into the past, as if its worker had died."""
    then = datetime.now(timezone.utc).replace(tzinfo=None) - timedelta(hours=hours)
    async with session_factory() as session:
        await session.execute(
            update(Clip).where(Clip.id == clip_id).values(updated_at=then)
        )
        await session.commit()
