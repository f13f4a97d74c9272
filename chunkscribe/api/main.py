from __future__ import annotations

"""
Transcription job API for chunkscribe.

Design intent:
- Keep API orchestration thin and typed.
- Delegate planning, dispatch and reassembly to internal_core.
- Stream per-chunk status so clients never have to poll for progress.
"""

import asyncio
import logging
import wave
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from chunkscribe.internal_core.asr.base import TranscriptionProvider
from chunkscribe.internal_core.asr.controller import (
    TranscriptionJob,
    build_provider,
    transcribe_in_chunks,
)
from chunkscribe.internal_core.audio_utils import (
    ALLOWED_UPLOAD_EXTS,
    PlanningError,
    WavFileSource,
    enforce_max_duration,
    needs_chunking,
    plan_chunks,
    safe_save_upload,
)
from chunkscribe.internal_core.audit import configure_logging
from chunkscribe.internal_core.config import PipelineConfig, load_config
from chunkscribe.internal_core.contracts import AggregateResult, ChunkState
from chunkscribe.internal_core.job_store import InMemoryJobStore


class ChunkView(BaseModel):
    index: int = Field(ge=0)
    start_sec: float = Field(ge=0.0)
    end_sec: float = Field(ge=0.0)
    state: ChunkState


class TranscriptionJobResponse(BaseModel):
    job_id: str
    state: str
    filename: str = ""
    duration_sec: float = Field(default=0.0, ge=0.0)
    total_chunks: int = Field(default=0, ge=0)
    completed_chunks: int = Field(default=0, ge=0)
    counts: dict[str, int] = Field(default_factory=dict)
    chunks: list[ChunkView] = Field(default_factory=list)
    result: AggregateResult | None = None
    error: str | None = None
    created_at: str = ""
    updated_at: str = ""


logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(_get_config().SCRIBE_LOG_LEVEL)
    yield
    store = _get_job_store()
    cancelled = store.cancel_unfinished("shutdown")
    tasks = store.unfinished_tasks()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    if cancelled:
        logger.info("cancelled %s unfinished transcription job(s) on shutdown", cancelled)
    owned = getattr(app.state, "owned_transcription_provider", None)
    if owned is not None:
        await owned.aclose()
        app.state.owned_transcription_provider = None


app = FastAPI(title="chunkscribe transcription service", lifespan=_lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _iso_from_epoch(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _get_config() -> PipelineConfig:
    existing = getattr(app.state, "pipeline_config", None)
    if isinstance(existing, PipelineConfig):
        return existing
    created = load_config()
    setattr(app.state, "pipeline_config", created)
    return created


def _get_tmp_dir() -> Path:
    configured = getattr(app.state, "upload_tmp_dir", None)
    path = Path(configured) if configured else _get_config().tmp_dir_path()
    path.mkdir(parents=True, exist_ok=True)
    return path


def _get_job_store() -> InMemoryJobStore:
    existing = getattr(app.state, "job_store", None)
    if isinstance(existing, InMemoryJobStore):
        return existing
    created = InMemoryJobStore(ttl_seconds=_get_config().SCRIBE_JOB_TTL_SECONDS, tmp_dir=_get_tmp_dir())
    setattr(app.state, "job_store", created)
    return created


def _get_provider() -> TranscriptionProvider:
    injected = getattr(app.state, "transcription_provider", None)
    if isinstance(injected, TranscriptionProvider):
        return injected
    owned = getattr(app.state, "owned_transcription_provider", None)
    if isinstance(owned, TranscriptionProvider):
        return owned
    created = build_provider(_get_config())
    setattr(app.state, "owned_transcription_provider", created)
    return created


def _serialize_job(record: dict[str, Any]) -> TranscriptionJobResponse:
    job = record.get("job")
    result: AggregateResult | None = record.get("result")
    chunks: list[ChunkView] = []
    counts: dict[str, int] = {}
    if isinstance(job, TranscriptionJob):
        snapshot = job.tracker.snapshot()
        for chunk in job.chunks:
            chunks.append(
                ChunkView(
                    index=chunk.index,
                    start_sec=chunk.start_sec,
                    end_sec=chunk.end_sec,
                    state=snapshot[chunk.index],
                )
            )
        counts = job.tracker.counts()
        completed, total = job.tracker.progress()
    else:
        # Single-chunk jobs run without a tracker.
        total = 1
        completed = 1 if result is not None else 0
    return TranscriptionJobResponse(
        job_id=record["job_id"],
        state=record["state"],
        filename=record.get("filename") or "",
        duration_sec=float(record.get("duration_sec") or 0.0),
        total_chunks=total,
        completed_chunks=completed,
        counts=counts,
        chunks=chunks,
        result=result,
        error=record.get("error"),
        created_at=_iso_from_epoch(record["created_at"]),
        updated_at=_iso_from_epoch(record["updated_at"]),
    )


def _job_snapshot_or_404(job_id: str) -> dict[str, Any]:
    normalized_job_id = str(job_id or "").strip()
    if not normalized_job_id:
        raise HTTPException(status_code=400, detail="job_id is required.")
    try:
        return _get_job_store().get_job(normalized_job_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Transcription job not found: {normalized_job_id}") from exc


async def _run_job(job_id: str, coro: Any) -> None:
    store = _get_job_store()
    try:
        store.set_state(job_id, "running")
        result = await coro
        store.set_result(job_id, result)
    except KeyError:
        logger.info("transcription job expired before completion job_id=%s", job_id)
    except asyncio.CancelledError:
        try:
            store.set_state(job_id, "cancelled")
        except KeyError:
            pass
        raise
    except Exception as exc:
        logger.exception("transcription job failed job_id=%s", job_id)
        try:
            store.set_error(job_id, f"{type(exc).__name__}: {exc}")
        except KeyError:
            pass


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/transcriptions", response_model=TranscriptionJobResponse)
async def start_transcription(
    request: Request,
    filename: str = Query(min_length=1, max_length=255),
    wait: bool = Query(default=False),
) -> TranscriptionJobResponse:
    cfg = _get_config()
    store = _get_job_store()
    store.cleanup_expired_jobs()

    filename = Path(str(filename or "")).name
    if not filename:
        raise HTTPException(status_code=400, detail="Missing filename.")
    if Path(filename).suffix.lower() not in ALLOWED_UPLOAD_EXTS:
        raise HTTPException(status_code=400, detail="Only .wav files are accepted.")

    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="Uploaded file is empty.")
    if len(payload) > cfg.SCRIBE_MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"Uploaded file exceeds {cfg.SCRIBE_MAX_UPLOAD_BYTES // (1024 * 1024)}MB limit.",
        )

    chunking = cfg.chunking()
    audio_path: Path | None = None
    try:
        audio_path = safe_save_upload(payload, filename, _get_tmp_dir(), cfg.SCRIBE_MAX_UPLOAD_BYTES)
        source = WavFileSource(audio_path)
        enforce_max_duration(source.duration_sec, cfg.SCRIBE_MAX_AUDIO_SECONDS)
        plan_chunks(source.duration_sec, chunking.chunk_duration_sec, chunking.overlap_sec)
    except (ValueError, wave.Error, EOFError) as exc:
        if audio_path is not None:
            audio_path.unlink(missing_ok=True)
        if isinstance(exc, PlanningError):
            raise HTTPException(status_code=400, detail=f"Audio cannot be planned: {exc}") from exc
        raise HTTPException(status_code=400, detail=f"Invalid audio: {exc}") from exc

    job_id = store.create_job(filename, source.duration_sec, str(audio_path))
    token = store.get_token(job_id)
    provider = _get_provider()
    inject_at = cfg.SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK

    job: TranscriptionJob | None = None
    if needs_chunking(source.duration_sec, chunking.chunk_duration_sec):
        job = TranscriptionJob(
            source,
            provider,
            chunking,
            job_id=job_id,
            token=token,
            inject_fail_at_chunk=inject_at,
        )
        coro = job.run()
    else:
        coro = transcribe_in_chunks(
            source,
            provider,
            chunking,
            job_id=job_id,
            token=token,
            inject_fail_at_chunk=inject_at,
        )

    task = asyncio.create_task(_run_job(job_id, coro))
    store.attach(job_id, job=job, task=task)
    logger.info(
        "transcription job started job_id=%s filename=%s duration_sec=%.1f chunked=%s",
        job_id,
        filename,
        source.duration_sec,
        job is not None,
    )

    if wait:
        await asyncio.wait({task})
    return _serialize_job(store.get_job(job_id))


@app.get("/transcriptions/{job_id}", response_model=TranscriptionJobResponse)
async def transcription_status(job_id: str) -> TranscriptionJobResponse:
    return _serialize_job(_job_snapshot_or_404(job_id))


@app.post("/transcriptions/{job_id}/cancel", response_model=TranscriptionJobResponse)
async def cancel_transcription(
    job_id: str,
    wait: bool = Query(default=False),
) -> TranscriptionJobResponse:
    record = _job_snapshot_or_404(job_id)
    store = _get_job_store()
    if not store.is_finished(record["job_id"]):
        record["token"].cancel("cancelled")
        logger.info("cancel requested job_id=%s", record["job_id"])
        task = record.get("task")
        if wait and task is not None:
            await asyncio.wait({task})
        record = _job_snapshot_or_404(record["job_id"])
    return _serialize_job(record)


@app.websocket("/ws/transcriptions/{job_id}")
async def transcription_ws(websocket: WebSocket, job_id: str) -> None:
    await websocket.accept()
    try:
        record = _get_job_store().get_job(str(job_id or "").strip())
    except KeyError:
        await websocket.send_json({"type": "error", "detail": "job_not_found"})
        await websocket.close(code=1008)
        return

    try:
        job = record.get("job")
        if isinstance(job, TranscriptionJob):
            subscription = job.tracker.subscribe(replay=True)
            try:
                async for event in subscription:
                    await websocket.send_json({"type": "status", **event.model_dump(mode="json")})
            finally:
                subscription.close()

        task = record.get("task")
        if task is not None:
            await asyncio.wait({task})
        final = _serialize_job(_get_job_store().get_job(record["job_id"]))
        await websocket.send_json({"type": "result", **final.model_dump(mode="json")})
        await websocket.close()
    except WebSocketDisconnect:
        logger.info("status websocket disconnected job_id=%s", record["job_id"])
    except KeyError:
        await websocket.send_json({"type": "error", "detail": "job_expired"})
        await websocket.close(code=1008)
