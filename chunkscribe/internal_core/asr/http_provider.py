from __future__ import annotations

import asyncio
import json
import logging
import math
import re
from typing import Mapping, Optional

import aiohttp

from ..contracts import AudioChunk
from .base import (
    ChunkAuthError,
    ChunkError,
    ChunkQuotaExceeded,
    ChunkRateLimited,
    ChunkRequestError,
    ChunkTransportError,
    TranscriptionProvider,
)

logger = logging.getLogger(__name__)

_RETRY_HINT_RE = re.compile(r"retry\s+(?:in|after)\s+([0-9]+(?:\.[0-9]+)?)\s*s", re.IGNORECASE)


def _error_message(body: str) -> str:
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return (body or "").strip()[:300]
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str):
            return err
    return (body or "").strip()[:300]


def parse_retry_after(headers: Mapping[str, str], body: str = "") -> Optional[float]:
    """Seconds to wait from a ``Retry-After`` header or a ``retry in Ns`` body hint."""
    raw = None
    for key, value in headers.items():
        if key.lower() == "retry-after":
            raw = value
            break
    if raw is not None:
        try:
            seconds = float(str(raw).strip())
        except ValueError:
            # HTTP-date form is not honored.
            seconds = None
        if seconds is not None and math.isfinite(seconds):
            return max(0.0, seconds)
    m = _RETRY_HINT_RE.search(body or "")
    if m and math.isfinite(float(m.group(1))):
        return float(m.group(1))
    return None


def classify_http_error(
    status: int,
    headers: Mapping[str, str],
    body: str,
    provider_name: str,
) -> ChunkError:
    message = _error_message(body) or f"HTTP {status}"
    lower = (body or "").lower()
    if status in (401, 403):
        return ChunkAuthError(message, provider_name)
    if status == 408:
        return ChunkTransportError("timeout", message, provider_name, status_code=status)
    if status == 429:
        retry_after = parse_retry_after(headers, body)
        if "insufficient_quota" in lower and retry_after is None:
            return ChunkQuotaExceeded(message, provider_name)
        return ChunkRateLimited(message, provider_name, retry_after=retry_after)
    if status >= 500:
        return ChunkTransportError("server", message, provider_name, status_code=status)
    return ChunkRequestError(message, provider_name, status_code=status)


class OpenAIHTTPProvider(TranscriptionProvider):
    """
    Client for OpenAI-compatible ``/v1/audio/transcriptions`` endpoints.

    One ``aiohttp.ClientSession`` is opened lazily and shared by every chunk
    of a job; ``aclose`` releases it.
    """

    def __init__(
        self,
        endpoint: str = "https://api.openai.com",
        api_key: str = "",
        model: str = "whisper-1",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.session = session
        self._owns_session = session is None

    def name(self) -> str:
        return "openai_http"

    @property
    def url(self) -> str:
        return f"{self.endpoint}/v1/audio/transcriptions"

    def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession()
            self._owns_session = True
        return self.session

    async def transcribe_chunk(
        self,
        audio_bytes: bytes,
        chunk: AudioChunk,
        *,
        language: str = "en",
        timeout_sec: float = 60.0,
    ) -> str:
        data = aiohttp.FormData()
        data.add_field(
            "file",
            audio_bytes,
            filename=f"chunk_{chunk.index:04d}.wav",
            content_type="audio/wav",
        )
        data.add_field("model", self.model)
        data.add_field("response_format", "json")
        if language:
            data.add_field("language", language)

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        session = self._get_session()
        try:
            async with session.post(
                self.url,
                data=data,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=timeout_sec),
            ) as response:
                body = await response.text()
                if response.status != 200:
                    logger.warning(
                        "transcription request failed chunk=%s status=%s", chunk.index, response.status
                    )
                    raise classify_http_error(response.status, response.headers, body, self.name())
        except asyncio.TimeoutError:
            raise ChunkTransportError("timeout", f"no response within {timeout_sec:.1f}s", self.name())
        except aiohttp.ClientError as e:
            raise ChunkTransportError("network", str(e) or type(e).__name__, self.name())

        try:
            payload = json.loads(body)
        except ValueError:
            # Some servers answer with plain text.
            return body.strip()
        if isinstance(payload, dict):
            return str(payload.get("text") or "").strip()
        return ""

    async def aclose(self) -> None:
        if self.session is not None and self._owns_session and not self.session.closed:
            await self.session.close()
        self.session = None
