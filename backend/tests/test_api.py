"""HTTP surface tests through httpx's ASGI transport.

The app lifespan does not run under ASGITransport, so the orchestrator and
settings dependencies are overridden with test instances backed by the
temporary database.
"""

import httpx
import pytest
import pytest_asyncio

from clipforge.api.app import app
from clipforge.api.routes import authenticate, get_orchestrator, get_settings
from clipforge.config import AuthConfig, Settings, StreamConfig
from clipforge.services.job_store import ClipStore
from clipforge.workers.render_tasks import CANCEL_EVENTS, TASK_STATUS, reserve_run

from conftest import ACCOUNT_ID, API_TOKEN, backdate_clip, load_clip, load_jobs, rejection

AUTH = {"Authorization": "Bearer tok-1"}

RENDER_BODY = {
    "clipId": "clip-1",
    "sourceVideoUrl": "https://example/src.mp4",
    "startTime": 10,
    "duration": 15,
    "title": "Hook",
}


@pytest.fixture
def settings() -> Settings:
    return Settings(
        auth=AuthConfig(api_tokens={"tok-1": "user-1"}),
        stream=StreamConfig(account_id=ACCOUNT_ID, api_token=API_TOKEN),
    )


@pytest_asyncio.fixture
async def client(make_orchestrator, settings):
    orchestrator = make_orchestrator()
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_settings] = lambda: settings
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
    TASK_STATUS.clear()
    CANCEL_EVENTS.clear()


# ---------------------------------------------------------------------------
# Authentication and request parsing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_missing_token_is_auth_check_failure(client):
    response = await client.post("/api/clips/render", json=RENDER_BODY)

    assert response.status_code == 401
    body = response.json()
    assert body["error"] == "Phase 3 failed"
    assert body["step"] == "auth_check"
    assert body["message"] == "Not authenticated"


@pytest.mark.asyncio
async def test_unknown_token_is_rejected(client):
    response = await client.post(
        "/api/clips/render", json=RENDER_BODY, headers={"Authorization": "Bearer nope"},
    )

    assert response.status_code == 401
    assert response.json()["message"] == "User authentication failed"


def test_empty_token_map_is_development_mode():
    user_id = authenticate("Bearer anything", Settings(auth=AuthConfig()))

    assert user_id == "00000000-0000-0000-0000-000000000001"


@pytest.mark.asyncio
async def test_invalid_body_is_parse_request_failure(client, session_factory):
    response = await client.post(
        "/api/clips/render", json={"clipId": "clip-1", "duration": -1}, headers=AUTH,
    )

    assert response.status_code == 422
    body = response.json()
    assert body["step"] == "parse_request"
    assert "sourceVideoUrl" in body["message"]
    assert "duration" in body["message"]


@pytest.mark.asyncio
async def test_non_json_body_is_parse_request_failure(client):
    response = await client.post(
        "/api/clips/render",
        content=b"not json",
        headers={**AUTH, "Content-Type": "application/json"},
    )

    assert response.status_code == 422
    assert response.json()["step"] == "parse_request"


@pytest.mark.asyncio
async def test_unknown_clip_is_404(client):
    response = await client.post("/api/clips/render", json=RENDER_BODY, headers=AUTH)

    assert response.status_code == 404
    body = response.json()
    assert body["step"] == "fetch_clip_record"
    assert body["clipId"] == "clip-1"


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_register_then_render(client, session_factory):
    created = await client.post(
        "/api/clips", json={"clip_id": "clip-1", "title": "My clip"}, headers=AUTH,
    )
    assert created.status_code == 201
    assert created.json()["status"] == "pending"

    response = await client.post("/api/clips/render", json=RENDER_BODY, headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["vertical"]["url"].endswith("width=1080&height=1920&fit=crop")
    assert body["thumbnail"]["url"].endswith("width=1080&height=1080&fit=crop")

    jobs = await load_jobs(session_factory, "clip-1")
    assert {j.user_id for j in jobs} == {"user-1"}


@pytest.mark.asyncio
async def test_register_duplicate_is_409(client, clip):
    response = await client.post("/api/clips", json={"clip_id": clip.id}, headers=AUTH)

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_upload_failure_is_500_with_step(client, stream_api, clip):
    stream_api.upload_replies.append((400, rejection(1003, "invalid url")))

    response = await client.post("/api/clips/render", json=RENDER_BODY, headers=AUTH)

    assert response.status_code == 500
    body = response.json()
    assert body["step"] == "cloudflare_upload"
    assert body["code"] == 1003
    assert body["details"]["upstreamPayload"] is not None


@pytest.mark.asyncio
async def test_background_render_is_accepted(client, session_factory, clip):
    response = await client.post(
        "/api/clips/render?background=true", json=RENDER_BODY, headers=AUTH,
    )

    assert response.status_code == 202
    assert response.json() == {
        "clip_id": "clip-1",
        "status": "processing",
        "status_url": "/api/clips/clip-1/status",
    }
    # ASGITransport waits for background tasks before returning
    row = await load_clip(session_factory, "clip-1")
    assert row.status == "ready"
    assert TASK_STATUS["render_clip-1"]["status"] == "complete"


@pytest.mark.asyncio
async def test_background_render_of_unknown_clip_is_404(client):
    response = await client.post(
        "/api/clips/render?background=true", json=RENDER_BODY, headers=AUTH,
    )

    assert response.status_code == 404
    assert response.json()["step"] == "fetch_clip_record"


@pytest.mark.asyncio
async def test_cancel_without_running_render_is_409(client, clip):
    response = await client.post("/api/clips/clip-1/cancel", headers=AUTH)

    assert response.status_code == 409


@pytest.mark.asyncio
@pytest.mark.parametrize("query", ["", "?background=true"])
async def test_render_of_clip_already_rendering_is_409(
    client, session_factory, stream_api, clip, query,
):
    await ClipStore(session_factory).begin_run(clip.id)

    response = await client.post(f"/api/clips/render{query}", json=RENDER_BODY, headers=AUTH)

    assert response.status_code == 409
    body = response.json()
    assert body["step"] == "fetch_clip_record"
    assert body["message"] == "Clip clip-1 is already rendering"
    assert stream_api.requests == []
    assert await load_jobs(session_factory, "clip-1") == []
    assert (await load_clip(session_factory, "clip-1")).status == "processing"
    assert "clip-1" not in CANCEL_EVENTS


@pytest.mark.asyncio
async def test_background_render_while_reserved_is_409(client, clip):
    reserve_run("clip-1")

    response = await client.post(
        "/api/clips/render?background=true", json=RENDER_BODY, headers=AUTH,
    )

    assert response.status_code == 409
    assert response.json()["step"] == "fetch_clip_record"
    assert TASK_STATUS["render_clip-1"]["status"] == "queued"


@pytest.mark.asyncio
async def test_background_render_takes_over_stale_clip(client, session_factory, clip):
    await ClipStore(session_factory).begin_run(clip.id)
    await backdate_clip(session_factory, clip.id, hours=2)

    response = await client.post(
        "/api/clips/render?background=true", json=RENDER_BODY, headers=AUTH,
    )

    assert response.status_code == 202
    assert (await load_clip(session_factory, "clip-1")).status == "ready"


# ---------------------------------------------------------------------------
# Status, jobs and health
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_status_after_failed_render(client, stream_api, clip):
    stream_api.clip_replies["vertical_9x16"] = [(400, rejection(10005, "bad range"))]
    await client.post("/api/clips/render", json=RENDER_BODY, headers=AUTH)

    response = await client.get("/api/clips/clip-1/status")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "failed"
    assert body["error_message"].startswith("[process_vertical] ")
    assert body["vertical_url"] is None
    assert body["last_run"]["failed_step"] == "process_vertical"


@pytest.mark.asyncio
async def test_status_of_unknown_clip_is_404(client):
    response = await client.get("/api/clips/ghost/status")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_jobs_ledger(client, clip):
    await client.post("/api/clips/render", json=RENDER_BODY, headers=AUTH)

    response = await client.get("/api/clips/clip-1/jobs")

    assert response.status_code == 200
    jobs = response.json()
    assert sorted(j["params"]["output_format"] for j in jobs) == ["thumbnail", "vertical"]
    for job in jobs:
        assert job["status"] == "completed"
        assert job["engine"] == "cloudflare_stream"
        (asset,) = job["assets"]
        assert asset["metadata"]["processing_method"] == "cloudflare_stream_clip_api"


@pytest.mark.asyncio
async def test_health_reports_providers(client):
    response = await client.get("/api/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["providers"]["stream"] is True
