"""Tests for the Cloudflare Stream client and the transient-retry helper."""

import json

import httpx
import pytest

from clipforge.errors import (
    UpstreamRejected,
    UpstreamTransportError,
    UpstreamUnavailable,
    is_transient,
)
from clipforge.services.stream_client import StreamClient, call_with_retry

from conftest import ACCOUNT_ID, API_TOKEN, rejection


# ---------------------------------------------------------------------------
# upload_source
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_upload_source_posts_copy_request(stream_client, stream_api):
    video_id = await stream_client.upload_source("https://example/src.mp4")

    assert video_id == "video-1"
    (request,) = stream_api.requests
    assert request.method == "POST"
    assert request.url.path == f"/client/v4/accounts/{ACCOUNT_ID}/stream/copy"
    assert request.headers["authorization"] == f"Bearer {API_TOKEN}"
    assert json.loads(request.content) == {
        "url": "https://example/src.mp4",
        "meta": {"name": "Clip Source Video"},
    }


@pytest.mark.asyncio
@pytest.mark.parametrize("account_id,api_token", [(None, "t"), ("a", None), ("", "")])
async def test_upload_without_credentials_is_unavailable(stream_api, account_id, api_token):
    client = StreamClient(account_id, api_token, transport=httpx.MockTransport(stream_api))

    with pytest.raises(UpstreamUnavailable, match="Cloudflare credentials not configured"):
        await client.upload_source("https://example/src.mp4")

    assert stream_api.requests == []
    assert not is_transient(UpstreamUnavailable("x"))


@pytest.mark.asyncio
async def test_upload_rejection_keeps_provider_payload(stream_client, stream_api):
    stream_api.upload_replies.append((400, rejection(1003, "invalid url")))

    with pytest.raises(UpstreamRejected) as excinfo:
        await stream_client.upload_source("not-a-url")

    err = excinfo.value
    assert err.status_code == 400
    assert err.code == 1003
    assert json.loads(err.payload) == [{"code": 1003, "message": "invalid url"}]
    assert str(err).startswith("Cloudflare upload failed: ")
    assert not err.transient


@pytest.mark.asyncio
async def test_success_false_with_200_status_is_rejected(stream_client, stream_api):
    stream_api.upload_replies.append((200, rejection(1003, "invalid url")))

    with pytest.raises(UpstreamRejected, match="invalid url"):
        await stream_client.upload_source("https://example/src.mp4")


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [429, 500, 503])
async def test_server_errors_are_transient(stream_client, stream_api, status):
    stream_api.upload_replies.append((status, rejection(10001, "try later")))

    with pytest.raises(UpstreamRejected) as excinfo:
        await stream_client.upload_source("https://example/src.mp4")

    assert excinfo.value.transient
    assert is_transient(excinfo.value)


@pytest.mark.asyncio
async def test_non_json_body_is_rejected(stream_client, stream_api):
    stream_api.upload_replies.append((502, "<html>Bad gateway</html>"))

    with pytest.raises(UpstreamRejected) as excinfo:
        await stream_client.upload_source("https://example/src.mp4")

    assert "non-JSON" in str(excinfo.value)
    assert excinfo.value.payload == "<html>Bad gateway</html>"


@pytest.mark.asyncio
async def test_network_failure_is_transport_error():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    client = StreamClient(ACCOUNT_ID, API_TOKEN, transport=httpx.MockTransport(refuse))
    try:
        with pytest.raises(UpstreamTransportError) as excinfo:
            await client.upload_source("https://example/src.mp4")
    finally:
        await client.close()

    assert excinfo.value.transient


# ---------------------------------------------------------------------------
# create_clip / build_playback_url
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_clip_sends_time_range_and_meta(stream_client, stream_api):
    clip_id = await stream_client.create_clip(
        "video-1", 10, 25, meta={"name": "Vertical Clip: Hook", "format": "vertical_9x16"},
    )

    assert clip_id == "vertical_9x16-1"
    (request,) = stream_api.requests
    assert request.url.path == f"/client/v4/accounts/{ACCOUNT_ID}/stream/video-1/clip"
    assert json.loads(request.content) == {
        "clippedFromVideoUID": "video-1",
        "startTimeSeconds": 10,
        "endTimeSeconds": 25,
        "allowedOrigins": ["*"],
        "requireSignedURLs": False,
        "meta": {"name": "Vertical Clip: Hook", "format": "vertical_9x16"},
    }


@pytest.mark.asyncio
async def test_create_clip_rejection(stream_client, stream_api):
    stream_api.clip_replies["vertical_9x16"] = [(400, rejection(10005, "range out of bounds"))]

    with pytest.raises(UpstreamRejected, match="Cloudflare clip API failed"):
        await stream_client.create_clip("video-1", 0, 5, meta={"format": "vertical_9x16"})


def test_build_playback_url():
    client = StreamClient(ACCOUNT_ID, None)

    assert client.build_playback_url("abc", 1080, 1920) == (
        f"https://customer-{ACCOUNT_ID}.cloudflarestream.com/abc/downloads/default.mp4"
        "?width=1080&height=1920&fit=crop"
    )


# ---------------------------------------------------------------------------
# call_with_retry
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_retry_recovers_from_transient_failure(stream_client, stream_api):
    stream_api.upload_replies.append((503, rejection(10001, "busy")))

    video_id = await call_with_retry(
        stream_client.upload_source, "https://example/src.mp4", attempts=3, base_delay=0,
    )

    assert video_id == "video-1"
    assert len(stream_api.uploads) == 2


@pytest.mark.asyncio
async def test_retry_does_not_repeat_rejections(stream_client, stream_api):
    stream_api.upload_replies.append((400, rejection(1003, "invalid url")))

    with pytest.raises(UpstreamRejected):
        await call_with_retry(
            stream_client.upload_source, "https://example/src.mp4", attempts=3, base_delay=0,
        )

    assert len(stream_api.uploads) == 1


@pytest.mark.asyncio
async def test_single_attempt_means_no_retry(stream_client, stream_api):
    stream_api.upload_replies.append((503, rejection(10001, "busy")))

    with pytest.raises(UpstreamRejected):
        await call_with_retry(stream_client.upload_source, "https://example/src.mp4", attempts=1)

    assert len(stream_api.uploads) == 1
