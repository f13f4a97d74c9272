import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from chunkscribe.internal_core.asr.base import (
    ChunkAuthError,
    ChunkQuotaExceeded,
    ChunkRateLimited,
    ChunkRequestError,
    ChunkTransportError,
)
from chunkscribe.internal_core.asr.http_provider import (
    OpenAIHTTPProvider,
    classify_http_error,
    parse_retry_after,
)
from chunkscribe.internal_core.contracts import AudioChunk

CHUNK = AudioChunk(index=3, start_sec=90.0, end_sec=135.0)


def test_parse_retry_after_prefers_header() -> None:
    assert parse_retry_after({"Retry-After": "7"}, "retry in 3s") == 7.0
    assert parse_retry_after({"retry-after": "1.5"}) == 1.5
    assert parse_retry_after({}, '{"error": {"message": "Please retry in 12.5s."}}') == 12.5
    assert parse_retry_after({}, "try again later") is None
    assert parse_retry_after({"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"}) is None


@pytest.mark.parametrize(
    ("status", "headers", "body", "expected_type", "code"),
    [
        (401, {}, '{"error": {"message": "bad key"}}', ChunkAuthError, "ASR_AUTH_FAILED"),
        (403, {}, "forbidden", ChunkAuthError, "ASR_AUTH_FAILED"),
        (408, {}, "", ChunkTransportError, "ASR_TIMEOUT"),
        (429, {"Retry-After": "2"}, "", ChunkRateLimited, "ASR_RATE_LIMITED"),
        (503, {}, "unavailable", ChunkTransportError, "ASR_SERVER_ERROR_503"),
        (400, {}, '{"error": "unsupported format"}', ChunkRequestError, None),
        (429, {}, '{"error": {"code": "insufficient_quota"}}', ChunkQuotaExceeded, None),
    ],
)
def test_classify_http_error(status, headers, body, expected_type, code) -> None:
    err = classify_http_error(status, headers, body, "openai_http")
    assert isinstance(err, expected_type)
    assert err.provider_name == "openai_http"
    if code is not None:
        assert err.code == code


def test_classify_http_error_retryability() -> None:
    assert classify_http_error(500, {}, "", "p").retryable
    assert classify_http_error(429, {}, "", "p").retryable
    assert not classify_http_error(401, {}, "", "p").retryable
    assert not classify_http_error(404, {}, "", "p").retryable


def test_quota_with_retry_hint_is_rate_limited() -> None:
    err = classify_http_error(429, {}, "insufficient_quota, retry in 4s", "p")
    assert isinstance(err, ChunkRateLimited)
    assert err.retry_after == 4.0


def test_error_message_taken_from_json_body() -> None:
    err = classify_http_error(400, {}, '{"error": {"message": "file too short"}}', "p")
    assert err.message == "file too short"
    assert err.status_code == 400


async def _with_server(handler, scenario):
    app = web.Application()
    app.router.add_post("/v1/audio/transcriptions", handler)
    server = TestServer(app)
    await server.start_server()
    provider = OpenAIHTTPProvider(endpoint=f"http://{server.host}:{server.port}/", api_key="sk-test", model="whisper-1")
    try:
        return await scenario(provider)
    finally:
        await provider.aclose()
        await server.close()


def test_transcribe_chunk_posts_multipart_request() -> None:
    seen = {}

    async def handler(request: web.Request) -> web.Response:
        seen["auth"] = request.headers.get("Authorization")
        form = await request.post()
        seen["model"] = form["model"]
        seen["language"] = form["language"]
        seen["response_format"] = form["response_format"]
        upload = form["file"]
        seen["filename"] = upload.filename
        seen["payload"] = upload.file.read()
        return web.json_response({"text": " hello   world "})

    async def scenario(provider):
        return await provider.transcribe_chunk(b"RIFFdata", CHUNK, language="de", timeout_sec=5.0)

    text = asyncio.run(_with_server(handler, scenario))

    assert text == "hello   world"
    assert seen == {
        "auth": "Bearer sk-test",
        "model": "whisper-1",
        "language": "de",
        "response_format": "json",
        "filename": "chunk_0003.wav",
        "payload": b"RIFFdata",
    }


def test_transcribe_chunk_accepts_plain_text_body() -> None:
    async def handler(request: web.Request) -> web.Response:
        await request.read()
        return web.Response(text="  plain transcript\n")

    async def scenario(provider):
        return await provider.transcribe_chunk(b"x", CHUNK, timeout_sec=5.0)

    assert asyncio.run(_with_server(handler, scenario)) == "plain transcript"


def test_transcribe_chunk_maps_rate_limit_response() -> None:
    async def handler(request: web.Request) -> web.Response:
        await request.read()
        return web.json_response(
            {"error": {"message": "Rate limit reached"}},
            status=429,
            headers={"Retry-After": "3"},
        )

    async def scenario(provider):
        with pytest.raises(ChunkRateLimited) as excinfo:
            await provider.transcribe_chunk(b"x", CHUNK, timeout_sec=5.0)
        return excinfo.value

    err = asyncio.run(_with_server(handler, scenario))
    assert err.retry_after == 3.0
    assert err.message == "Rate limit reached"


def test_transcribe_chunk_maps_auth_failure() -> None:
    async def handler(request: web.Request) -> web.Response:
        await request.read()
        return web.json_response({"error": {"message": "Incorrect API key"}}, status=401)

    async def scenario(provider):
        with pytest.raises(ChunkAuthError):
            await provider.transcribe_chunk(b"x", CHUNK, timeout_sec=5.0)

    asyncio.run(_with_server(handler, scenario))


def test_transcribe_chunk_maps_slow_response_to_timeout() -> None:
    async def handler(request: web.Request) -> web.Response:
        await request.read()
        await asyncio.sleep(0.5)
        return web.json_response({"text": "late"})

    async def scenario(provider):
        with pytest.raises(ChunkTransportError) as excinfo:
            await provider.transcribe_chunk(b"x", CHUNK, timeout_sec=0.1)
        return excinfo.value

    err = asyncio.run(_with_server(handler, scenario))
    assert err.kind == "timeout"
    assert err.retryable


def test_transcribe_chunk_maps_connection_failure() -> None:
    async def scenario():
        provider = OpenAIHTTPProvider(endpoint="http://127.0.0.1:1")
        try:
            with pytest.raises(ChunkTransportError) as excinfo:
                await provider.transcribe_chunk(b"x", CHUNK, timeout_sec=5.0)
            return excinfo.value
        finally:
            await provider.aclose()

    err = asyncio.run(scenario())
    assert err.kind == "network"
    assert err.code == "ASR_NETWORK_ERROR"


def test_aclose_keeps_borrowed_session() -> None:
    async def scenario():
        session = aiohttp.ClientSession()
        provider = OpenAIHTTPProvider(session=session)
        await provider.aclose()
        still_open = not session.closed
        await session.close()
        return still_open

    assert asyncio.run(scenario())


@pytest.mark.parametrize("raw", ["inf", "-inf", "nan", "Infinity"])
def test_parse_retry_after_ignores_non_finite_header(raw) -> None:
    assert parse_retry_after({"Retry-After": raw}) is None
    assert parse_retry_after({"Retry-After": raw}, "please retry after 9s") == 9.0
