from __future__ import annotations

import asyncio
import datetime as _dt
import time
import uuid
from pathlib import Path
from typing import Callable, List, Optional

from .. import audit
from ..audio_utils import (
    AudioSource,
    WavFileSource,
    enforce_max_duration,
    needs_chunking,
    plan_chunks,
)
from ..config import ChunkingConfig, PipelineConfig
from ..contracts import AggregateResult, AudioChunk, Cancelled, ChunkJob, JobState
from ..status_tracker import ChunkStatusTracker, progress_listener
from .base import TranscriptionProvider
from .cancellation import CancellationToken
from .dispatcher import ChunkDispatcher
from .http_provider import OpenAIHTTPProvider
from .mock import MockTranscriptionProvider
from .reassembly import reassemble
from .retry import RateLimitCoordinator, RetryingTranscriber

ProgressCallback = Callable[[int, int], None]


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def new_job_id() -> str:
    return uuid.uuid4().hex


def build_provider(cfg: PipelineConfig) -> TranscriptionProvider:
    name = (cfg.SCRIBE_ASR_PROVIDER or "mock").strip().lower()
    if name == "mock":
        return MockTranscriptionProvider()
    if name == "openai_http":
        return OpenAIHTTPProvider(
            endpoint=cfg.SCRIBE_ASR_ENDPOINT,
            api_key=cfg.SCRIBE_ASR_API_KEY,
            model=cfg.SCRIBE_ASR_MODEL,
        )
    raise ValueError(f"Unknown SCRIBE_ASR_PROVIDER: {cfg.SCRIBE_ASR_PROVIDER}")


def _result_meta(
    job_id: str,
    provider: TranscriptionProvider,
    config: ChunkingConfig,
    duration_sec: float,
    chunks: List[AudioChunk],
    started: float,
) -> dict:
    return {
        "job_id": job_id,
        "provider": provider.name(),
        "created_at": _now_iso(),
        "chunk_seconds": config.chunk_duration_sec,
        "overlap_seconds": config.overlap_sec,
        "max_concurrency": config.max_concurrency,
        "timing": {
            "duration_sec": float(duration_sec),
            "chunks": len(chunks),
            "elapsed_ms": int((time.monotonic() - started) * 1000),
        },
    }


class TranscriptionJob:
    """
    One chunked transcription: plan, dispatch, reassemble.

    State moves ``created -> running -> completed | cancelled``. The tracker
    is available from construction so observers can subscribe before ``run``.
    """

    def __init__(
        self,
        source: AudioSource,
        provider: TranscriptionProvider,
        config: ChunkingConfig,
        *,
        job_id: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        on_progress: Optional[ProgressCallback] = None,
        inject_fail_at_chunk: Optional[int] = None,
    ):
        self.job_id = job_id or new_job_id()
        self.source = source
        self.provider = provider
        self.config = config
        self.chunks = plan_chunks(source.duration_sec, config.chunk_duration_sec, config.overlap_sec)
        self.state: JobState = "created"
        self.tracker = ChunkStatusTracker(self.job_id, self.chunks)
        self.token = token or CancellationToken()
        self.coordinator = RateLimitCoordinator(config.rate_limit)
        self.inject_fail_at_chunk = inject_fail_at_chunk
        self.result: Optional[AggregateResult] = None
        if on_progress is not None:
            self.tracker.add_listener(progress_listener(on_progress, self.tracker))

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)

    async def run(self) -> AggregateResult:
        if self.state != "created":
            raise RuntimeError(f"job {self.job_id} already {self.state}")
        self.state = "running"
        started = time.monotonic()
        audit.log_event(
            self.tracker,
            self.job_id,
            "JOB_STARTED",
            "JOB_START",
            f"provider={self.provider.name()} chunks={len(self.chunks)} "
            f"chunk_seconds={self.config.chunk_duration_sec} overlap_seconds={self.config.overlap_sec} "
            f"max_concurrency={self.config.max_concurrency}",
        )

        transcriber = RetryingTranscriber(
            self.provider,
            self.config.retry,
            job_id=self.job_id,
            tracker=self.tracker,
            token=self.token,
            coordinator=self.coordinator,
            request_timeout_sec=self.config.request_timeout_sec,
            language=self.config.language,
            inject_fail_at_chunk=self.inject_fail_at_chunk,
        )
        dispatcher = ChunkDispatcher(
            transcriber,
            self.tracker,
            self.source.read_range,
            max_concurrency=self.config.max_concurrency,
            token=self.token,
            fast_fail_on_fatal=self.config.fast_fail_on_fatal,
            deadline_sec=self.config.job_deadline_sec,
        )
        try:
            await dispatcher.run([ChunkJob(chunk=c) for c in self.chunks])
            result = reassemble(
                self.chunks,
                self.tracker.snapshot(),
                overlap_sec=self.config.overlap_sec,
                meta=_result_meta(
                    self.job_id,
                    self.provider,
                    self.config,
                    self.source.duration_sec,
                    self.chunks,
                    started,
                ),
            )
            self.state = "cancelled" if result.status == "cancelled" else "completed"
            self.result = result
            audit.log_event(
                self.tracker,
                self.job_id,
                "JOB_DONE",
                result.status.upper(),
                f"succeeded={len(result.succeeded_text)} failed={result.failed_indices} "
                f"cancelled={result.cancelled_indices}",
                duration_ms=int((time.monotonic() - started) * 1000),
            )
            return result
        finally:
            if self.state == "running":
                self.state = "cancelled"
            self.tracker.close()


async def _transcribe_direct(
    source: AudioSource,
    provider: TranscriptionProvider,
    config: ChunkingConfig,
    job_id: str,
    token: CancellationToken,
    inject_fail_at_chunk: Optional[int],
) -> AggregateResult:
    started = time.monotonic()
    chunks = plan_chunks(source.duration_sec, config.chunk_duration_sec, config.overlap_sec)
    chunk = chunks[0]
    transcriber = RetryingTranscriber(
        provider,
        config.retry,
        job_id=job_id,
        token=token,
        coordinator=RateLimitCoordinator(config.rate_limit),
        request_timeout_sec=config.request_timeout_sec,
        language=config.language,
        inject_fail_at_chunk=inject_fail_at_chunk,
    )
    audit.log_event(None, job_id, "JOB_STARTED", "JOB_START_DIRECT", f"provider={provider.name()} chunks=1")

    task = asyncio.ensure_future(transcriber.transcribe(chunk, source.read_range(0.0, chunk.end_sec)))
    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait(
            {task, waiter},
            timeout=config.job_deadline_sec,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if task not in done:
            if not token.is_cancelled:
                token.cancel("deadline_exceeded")
            task.cancel()
        state = await task
    except asyncio.CancelledError:
        if not token.is_cancelled:
            raise
        state = Cancelled(reason=token.reason or "cancelled")
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
        await asyncio.gather(task, waiter, return_exceptions=True)

    result = reassemble(
        chunks,
        {chunk.index: state},
        meta=_result_meta(job_id, provider, config, source.duration_sec, chunks, started),
    )
    audit.log_event(
        None,
        job_id,
        "JOB_DONE",
        result.status.upper(),
        f"direct=true attempts={getattr(state, 'attempts', 0)}",
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return result


async def transcribe_in_chunks(
    source: AudioSource,
    provider: TranscriptionProvider,
    config: ChunkingConfig,
    *,
    job_id: Optional[str] = None,
    token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    on_job: Optional[Callable[[TranscriptionJob], None]] = None,
    inject_fail_at_chunk: Optional[int] = None,
) -> AggregateResult:
    """
    Transcribe ``source`` and return the aggregate result.

    Audio no longer than one chunk goes straight through the retry client;
    anything longer becomes a ``TranscriptionJob`` (handed to ``on_job``
    before it starts, so callers can observe its tracker).
    """
    job_id = job_id or new_job_id()
    token = token or CancellationToken()
    duration = source.duration_sec
    if not needs_chunking(duration, config.chunk_duration_sec):
        result = await _transcribe_direct(source, provider, config, job_id, token, inject_fail_at_chunk)
        if on_progress is not None:
            on_progress(1, 1)
        return result

    job = TranscriptionJob(
        source,
        provider,
        config,
        job_id=job_id,
        token=token,
        on_progress=on_progress,
        inject_fail_at_chunk=inject_fail_at_chunk,
    )
    if on_job is not None:
        on_job(job)
    return await job.run()


async def transcribe_wav_file(
    path: Path,
    cfg: PipelineConfig,
    provider: Optional[TranscriptionProvider] = None,
    *,
    token: Optional[CancellationToken] = None,
    on_progress: Optional[ProgressCallback] = None,
    on_job: Optional[Callable[[TranscriptionJob], None]] = None,
) -> AggregateResult:
    source = WavFileSource(Path(path))
    enforce_max_duration(source.duration_sec, cfg.SCRIBE_MAX_AUDIO_SECONDS)
    owned = provider is None
    provider = provider or build_provider(cfg)
    try:
        return await transcribe_in_chunks(
            source,
            provider,
            cfg.chunking(),
            token=token,
            on_progress=on_progress,
            on_job=on_job,
            inject_fail_at_chunk=cfg.SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK,
        )
    finally:
        if owned:
            await provider.aclose()
