from __future__ import annotations

import asyncio
import random
import threading
import time
from typing import Awaitable, Callable, Optional, Union

from .. import audit
from ..config import RateLimitPolicy, RetryPolicy
from ..contracts import AudioChunk, Failed, InFlight, Retrying, Succeeded
from ..status_tracker import ChunkStatusTracker
from .base import ChunkError, ChunkRateLimited, ChunkTransportError, TranscriptionProvider
from .cancellation import CancellationToken
from .reassembly import normalize_whitespace

ChunkOutcome = Union[Succeeded, Failed]

# Doublings past this overflow float conversion long after any max is reached.
_MAX_DOUBLINGS = 16


def compute_backoff(attempt: int, policy: RetryPolicy, rng: Optional[random.Random] = None) -> float:
    """Exponential backoff for the wait after ``attempt`` (1-based), capped, plus jitter."""
    doublings = min(max(0, attempt - 1), _MAX_DOUBLINGS)
    base = min(policy.base_backoff_sec * (2 ** doublings), policy.max_backoff_sec)
    if policy.jitter_sec > 0:
        base += (rng or random).uniform(0.0, policy.jitter_sec)
    return base


def compute_delay(
    error: ChunkError,
    attempt: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    if error.retry_after is not None:
        return max(0.0, float(error.retry_after))
    return compute_backoff(attempt, policy, rng)


class RateLimitCoordinator:
    """
    Shared pause for every chunk of a job once any of them is rate limited.

    The pause lasts ``retry_after + buffer`` (retry_after capped at ``max``)
    when the server says how long to wait, otherwise ``base * 2**(n-1)``
    capped at ``max`` where n counts consecutive rate limits; any success
    resets n.
    """

    def __init__(
        self,
        policy: Optional[RateLimitPolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or RateLimitPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._pause_until = 0.0
        self._consecutive = 0

    def report_rate_limit(self, retry_after: Optional[float]) -> float:
        with self._lock:
            self._consecutive += 1
            if retry_after is not None:
                delay = min(max(0.0, float(retry_after)), self.policy.max_sec) + self.policy.buffer_sec
            else:
                delay = min(
                    self.policy.base_sec * (2 ** min(self._consecutive - 1, _MAX_DOUBLINGS)),
                    self.policy.max_sec,
                )
            self._pause_until = max(self._pause_until, self._clock() + delay)
            return delay

    def report_success(self) -> None:
        with self._lock:
            self._consecutive = 0

    def remaining(self) -> float:
        with self._lock:
            return max(0.0, self._pause_until - self._clock())

    @property
    def consecutive_rate_limits(self) -> int:
        with self._lock:
            return self._consecutive

    async def wait_if_needed(self, token: Optional[CancellationToken] = None) -> float:
        remaining = self.remaining()
        if remaining <= 0:
            return 0.0
        if token is not None:
            await token.sleep(remaining)
        else:
            await asyncio.sleep(remaining)
        return remaining


class RetryingTranscriber:
    """
    One chunk request with classification, backoff and status transitions.

    Every attempt boundary is published to the tracker: ``in_flight`` when an
    attempt starts, ``retrying`` before a backoff, then ``succeeded`` or
    ``failed``. Fatal errors fail on the first occurrence. Cancellation
    surfaces as ``asyncio.CancelledError`` for the dispatcher to record.
    """

    def __init__(
        self,
        provider: TranscriptionProvider,
        policy: RetryPolicy,
        *,
        job_id: str = "",
        tracker: Optional[ChunkStatusTracker] = None,
        token: Optional[CancellationToken] = None,
        coordinator: Optional[RateLimitCoordinator] = None,
        request_timeout_sec: float = 60.0,
        language: str = "en",
        rng: Optional[random.Random] = None,
        inject_fail_at_chunk: Optional[int] = None,
        sleep: Optional[Callable[[float], Awaitable[object]]] = None,
    ):
        self.provider = provider
        self.policy = policy
        self.job_id = job_id
        self.tracker = tracker
        self.token = token
        self.coordinator = coordinator
        self.request_timeout_sec = request_timeout_sec
        self.language = language
        self.rng = rng or random.Random()
        self.inject_fail_at_chunk = inject_fail_at_chunk
        self._custom_sleep = sleep

    async def _sleep(self, delay: float) -> None:
        if self._custom_sleep is not None:
            await self._custom_sleep(delay)
        elif self.token is not None:
            await self.token.sleep(delay)
        else:
            await asyncio.sleep(delay)

    def _emit(self, index: int, state) -> None:
        if self.tracker is not None:
            self.tracker.update(index, state)

    def _check_cancelled(self) -> None:
        if self.token is not None and self.token.is_cancelled:
            raise asyncio.CancelledError()

    async def _attempt(self, chunk: AudioChunk, audio_bytes: bytes) -> str:
        if self.inject_fail_at_chunk is not None and chunk.index == self.inject_fail_at_chunk:
            raise ChunkError("ASR_INJECTED_FAILURE", "injected failure for testing", self.provider.name())
        try:
            return await asyncio.wait_for(
                self.provider.transcribe_chunk(
                    audio_bytes,
                    chunk,
                    language=self.language,
                    timeout_sec=self.request_timeout_sec,
                ),
                timeout=self.request_timeout_sec,
            )
        except asyncio.TimeoutError:
            raise ChunkTransportError(
                "timeout",
                f"request exceeded {self.request_timeout_sec:.1f}s",
                self.provider.name(),
            )

    async def transcribe(self, chunk: AudioChunk, audio_bytes: bytes) -> ChunkOutcome:
        idx = chunk.index
        started = time.monotonic()

        for attempt in range(1, self.policy.max_attempts + 1):
            if self.coordinator is not None:
                await self.coordinator.wait_if_needed(self.token)
            self._check_cancelled()

            self._emit(idx, InFlight(attempt=attempt))
            audit.log_event(
                self.tracker,
                self.job_id,
                "CHUNK_STARTED",
                "ASR_ATTEMPT",
                f"chunk_index={idx} attempt={attempt}/{self.policy.max_attempts} provider={self.provider.name()}",
            )

            try:
                text = await self._attempt(chunk, audio_bytes)
            except ChunkError as e:
                error = e
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = ChunkError("ASR_UNKNOWN", str(e) or type(e).__name__, self.provider.name())
            else:
                if self.coordinator is not None:
                    self.coordinator.report_success()
                outcome = Succeeded(text=normalize_whitespace(text), attempts=attempt)
                self._emit(idx, outcome)
                audit.log_event(
                    self.tracker,
                    self.job_id,
                    "CHUNK_DONE",
                    "ASR_CHUNK",
                    f"chunk_index={idx} attempts={attempt} chars={len(outcome.text)}",
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                return outcome

            rate_limited = isinstance(error, ChunkRateLimited)
            if rate_limited and self.coordinator is not None:
                delay = self.coordinator.report_rate_limit(error.retry_after)
                audit.log_event(
                    self.tracker,
                    self.job_id,
                    "RATE_LIMITED",
                    error.code,
                    f"chunk_index={idx} retry_after={error.retry_after} pause_sec={delay:.1f}",
                )
            else:
                delay = compute_delay(error, attempt, self.policy, self.rng)

            if not error.retryable or attempt >= self.policy.max_attempts:
                outcome = Failed(
                    error_code=error.code,
                    message=error.message,
                    attempts=attempt,
                    retryable=error.retryable,
                )
                self._emit(idx, outcome)
                audit.log_event(
                    self.tracker,
                    self.job_id,
                    "CHUNK_FAILED",
                    error.code,
                    f"chunk_index={idx} attempts={attempt} retryable={error.retryable} provider={error.provider_name}",
                    duration_ms=int((time.monotonic() - started) * 1000),
                )
                return outcome

            self._emit(idx, Retrying(attempt=attempt, error_code=error.code, delay_sec=delay))
            audit.log_event(
                self.tracker,
                self.job_id,
                "CHUNK_RETRY",
                error.code,
                f"chunk_index={idx} attempt={attempt} delay_sec={delay:.2f}",
            )
            # A rate-limited chunk waits on the shared pause at the top of the loop.
            if not (rate_limited and self.coordinator is not None):
                await self._sleep(delay)

        raise AssertionError("unreachable: retry loop always returns")
