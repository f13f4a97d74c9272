from __future__ import annotations

import asyncio
import logging
import time
import uuid
from pathlib import Path
from threading import RLock
from typing import Any, Dict, Literal, Optional

from .asr.cancellation import CancellationToken
from .contracts import AggregateResult

logger = logging.getLogger(__name__)

StoredJobState = Literal["created", "running", "completed", "cancelled", "error"]

_FINISHED_STATES = frozenset({"completed", "cancelled", "error"})


def _safe_unlink(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("could not remove temp file %s: %s", path, e)


class InMemoryJobStore:
    """
    Transcription jobs known to the HTTP surface, keyed by job id.

    Records expire ``ttl_seconds`` after their last update; expiry cancels a
    job that is still running and removes its uploaded audio.
    """

    def __init__(self, ttl_seconds: int, tmp_dir: Path):
        self._ttl_seconds = ttl_seconds
        self._tmp_dir = tmp_dir
        self._lock = RLock()
        self._jobs: Dict[str, Dict[str, Any]] = {}

    def create_job(
        self,
        filename: str,
        duration_sec: float,
        audio_path: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        job_id = job_id or uuid.uuid4().hex
        now = time.time()
        with self._lock:
            self._jobs[job_id] = {
                "job_id": job_id,
                "created_at": now,
                "updated_at": now,
                "expires_at": now + self._ttl_seconds,
                "state": "created",
                "filename": filename,
                "duration_sec": float(duration_sec),
                "audio_path": audio_path,
                "token": CancellationToken(),
                "job": None,
                "task": None,
                "result": None,
                "error": None,
            }
        return job_id

    def _touch(self, job_id: str) -> None:
        now = time.time()
        job = self._jobs[job_id]
        job["updated_at"] = now
        job["expires_at"] = now + self._ttl_seconds

    def _require(self, job_id: str) -> Dict[str, Any]:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Unknown job_id: {job_id}")
        return job

    def attach(self, job_id: str, job: Any = None, task: Optional[asyncio.Task] = None) -> None:
        with self._lock:
            record = self._require(job_id)
            if job is not None:
                record["job"] = job
            if task is not None:
                record["task"] = task
            self._touch(job_id)

    def set_state(self, job_id: str, state: StoredJobState) -> None:
        with self._lock:
            self._require(job_id)["state"] = state
            self._touch(job_id)

    def set_result(self, job_id: str, result: AggregateResult) -> None:
        with self._lock:
            record = self._require(job_id)
            record["result"] = result
            record["state"] = "cancelled" if result.status == "cancelled" else "completed"
            self._touch(job_id)

    def set_error(self, job_id: str, message: str) -> None:
        with self._lock:
            record = self._require(job_id)
            record["error"] = message
            record["state"] = "error"
            self._touch(job_id)

    def get_token(self, job_id: str) -> CancellationToken:
        with self._lock:
            return self._require(job_id)["token"]

    def get_job(self, job_id: str) -> Dict[str, Any]:
        with self._lock:
            return dict(self._require(job_id))

    def is_finished(self, job_id: str) -> bool:
        with self._lock:
            return self._require(job_id)["state"] in _FINISHED_STATES

    def destroy_job(self, job_id: str, reason: str) -> None:
        with self._lock:
            record = self._jobs.pop(job_id, None)
        if record is None:
            return
        if record["state"] not in _FINISHED_STATES:
            record["token"].cancel(reason)

        audio_path = record.get("audio_path")
        if audio_path:
            ap = Path(audio_path)
            if self._tmp_dir.resolve() in ap.resolve().parents:
                _safe_unlink(ap)

    def cleanup_expired_jobs(self) -> int:
        now = time.time()
        with self._lock:
            expired = [job_id for job_id, job in self._jobs.items() if job["expires_at"] <= now]
        for job_id in expired:
            self.destroy_job(job_id, reason="ttl_expired")
        return len(expired)

    def unfinished_tasks(self) -> list:
        with self._lock:
            return [
                job["task"]
                for job in self._jobs.values()
                if job["state"] not in _FINISHED_STATES and job["task"] is not None
            ]

    def cancel_unfinished(self, reason: str) -> int:
        with self._lock:
            tokens = [job["token"] for job in self._jobs.values() if job["state"] not in _FINISHED_STATES]
        for token in tokens:
            token.cancel(reason)
        return len(tokens)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)
