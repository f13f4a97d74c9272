from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence

from .. import audit
from ..contracts import Cancelled, ChunkJob, Failed, is_terminal
from ..status_tracker import ChunkStatusTracker
from .cancellation import CancellationToken
from .retry import RetryingTranscriber

logger = logging.getLogger(__name__)

AudioReader = Callable[[float, float], bytes]


class ChunkDispatcher:
    """
    Bounded worker pool over the chunk jobs of one transcription job.

    At most ``max_concurrency`` chunks are active at once: a worker holds the
    semaphore for the whole retry loop of its chunk. ``run`` returns only
    after every job is terminal. Once the token stops scheduling, jobs that
    have not started are marked cancelled without a provider call; a full
    cancel also interrupts the ones in flight.
    """

    def __init__(
        self,
        transcriber: RetryingTranscriber,
        tracker: ChunkStatusTracker,
        read_audio: AudioReader,
        *,
        max_concurrency: int = 3,
        token: Optional[CancellationToken] = None,
        fast_fail_on_fatal: bool = False,
        deadline_sec: Optional[float] = None,
    ):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.transcriber = transcriber
        self.tracker = tracker
        self.read_audio = read_audio
        self.max_concurrency = max_concurrency
        self.token = token or transcriber.token or CancellationToken()
        transcriber.token = self.token
        self.fast_fail_on_fatal = fast_fail_on_fatal
        self.deadline_sec = deadline_sec
        self._tasks: Dict[int, asyncio.Task] = {}

    @property
    def job_id(self) -> str:
        return self.tracker.job_id

    def cancel(self, reason: str = "cancelled") -> None:
        self.token.cancel(reason)
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()

    def _mark_cancelled(self, job: ChunkJob, reason: str) -> None:
        idx = job.chunk.index
        if is_terminal(self.tracker.get(idx)):
            return
        state = Cancelled(reason=reason)
        self.tracker.update(idx, state)
        job.state = state
        audit.log_event(
            self.tracker,
            self.job_id,
            "CHUNK_CANCELLED",
            "CHUNK_CANCELLED",
            f"chunk_index={idx} reason={reason}",
        )

    def _on_fatal(self, job: ChunkJob, outcome: Failed) -> None:
        if not self.fast_fail_on_fatal or outcome.retryable or self.token.scheduling_stopped:
            return
        audit.log_event(
            self.tracker,
            self.job_id,
            "FAST_FAIL",
            outcome.error_code,
            f"chunk_index={job.chunk.index} stops scheduling of remaining chunks",
        )
        self.token.stop_scheduling("fast_fail")

    async def _worker(self, job: ChunkJob, semaphore: asyncio.Semaphore) -> None:
        if self.token.scheduling_stopped:
            self._mark_cancelled(job, self.token.reason or "cancelled")
            return
        try:
            async with semaphore:
                # Re-check: the token may have changed while waiting for a slot.
                if self.token.scheduling_stopped:
                    self._mark_cancelled(job, self.token.reason or "cancelled")
                    return
                audio = self.read_audio(job.chunk.start_sec, job.chunk.end_sec)
                outcome = await self.transcriber.transcribe(job.chunk, audio)
                job.attempt = outcome.attempts
                job.state = outcome
                if isinstance(outcome, Failed):
                    self._on_fatal(job, outcome)
        except asyncio.CancelledError:
            self._mark_cancelled(job, self.token.reason or "cancelled")

    async def _watch_deadline(self) -> None:
        await asyncio.sleep(self.deadline_sec)
        logger.warning("job deadline exceeded job_id=%s deadline_sec=%s", self.job_id, self.deadline_sec)
        self.cancel("deadline_exceeded")

    async def _watch_token(self) -> None:
        await self.token.wait()
        for task in list(self._tasks.values()):
            if not task.done():
                task.cancel()

    async def run(self, chunk_jobs: Sequence[ChunkJob]) -> List[ChunkJob]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        started = time.monotonic()
        jobs = sorted(chunk_jobs, key=lambda j: j.chunk.index)

        watchers: List[asyncio.Task] = [asyncio.create_task(self._watch_token())]
        if self.deadline_sec is not None:
            watchers.append(asyncio.create_task(self._watch_deadline()))

        self._tasks = {j.chunk.index: asyncio.create_task(self._worker(j, semaphore)) for j in jobs}
        try:
            results = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        except asyncio.CancelledError:
            # The caller itself was cancelled: stop every chunk, then wait for them.
            self.cancel("cancelled")
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
            raise
        finally:
            for w in watchers:
                w.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

        for result in results:
            if isinstance(result, Exception):
                raise result

        # A task cancelled before its first step never ran its handler.
        for job in jobs:
            if not is_terminal(self.tracker.get(job.chunk.index)):
                self._mark_cancelled(job, self.token.reason or "cancelled")
            job.state = self.tracker.get(job.chunk.index)

        counts = self.tracker.counts()
        logger.info(
            "dispatch finished job_id=%s chunks=%s succeeded=%s failed=%s cancelled=%s elapsed_ms=%s",
            self.job_id,
            len(jobs),
            counts.get("succeeded", 0),
            counts.get("failed", 0),
            counts.get("cancelled", 0),
            int((time.monotonic() - started) * 1000),
        )
        return jobs

