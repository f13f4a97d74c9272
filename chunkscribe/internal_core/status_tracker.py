from __future__ import annotations

import asyncio
import datetime as _dt
import logging
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .contracts import (
    ACTIVE_KINDS,
    TERMINAL_KINDS,
    AudioChunk,
    AuditEvent,
    ChunkStatusEvent,
    Pending,
)

logger = logging.getLogger(__name__)

StatusListener = Callable[[ChunkStatusEvent], None]

_ALLOWED_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"in_flight", "cancelled"}),
    "in_flight": frozenset({"succeeded", "failed", "retrying", "cancelled"}),
    "retrying": frozenset({"in_flight", "failed", "cancelled"}),
    "succeeded": frozenset(),
    "failed": frozenset(),
    "cancelled": frozenset(),
}

_CLOSED = object()


def _now_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


class InvalidTransitionError(ValueError):
    def __init__(self, index: int, current: str, requested: str):
        super().__init__(f"chunk {index}: illegal transition {current} -> {requested}")
        self.index = index
        self.current = current
        self.requested = requested


class StatusSubscription:
    """
    Async iterator over status events for one observer.

    Events are queued without bound so publishing never waits on a slow
    reader. Iteration ends once the tracker (or the subscription) is closed.
    """

    def __init__(self, tracker: "ChunkStatusTracker", loop: asyncio.AbstractEventLoop):
        self._tracker = tracker
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _push(self, item: Any) -> None:
        if self._closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        try:
            if running is self._loop:
                self._queue.put_nowait(item)
            else:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Subscriber's loop is gone.
            self._closed = True

    def close(self) -> None:
        self._tracker._unsubscribe(self)
        self._push(_CLOSED)
        self._closed = True

    def __aiter__(self) -> "StatusSubscription":
        return self

    async def __anext__(self) -> ChunkStatusEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            self._closed = True
            raise StopAsyncIteration
        return item


class ChunkStatusTracker:
    """
    Per-chunk state map for one transcription job.

    All reads and writes go through one lock; ``update`` validates that the
    transition is monotonic and publishes the resulting event to every
    subscriber and listener before releasing the lock, which keeps the event
    order per chunk identical to the apply order.
    """

    def __init__(self, job_id: str, chunks: Sequence[AudioChunk]):
        self.job_id = job_id
        self._lock = RLock()
        self._chunks: Dict[int, AudioChunk] = {c.index: c for c in chunks}
        self._states: Dict[int, Any] = {c.index: Pending() for c in chunks}
        self._seq = 0
        self._subscribers: List[StatusSubscription] = []
        self._listeners: List[StatusListener] = []
        self._audit_events: List[AuditEvent] = []
        self._closed = False

    @property
    def total_chunks(self) -> int:
        return len(self._chunks)

    def chunk(self, index: int) -> AudioChunk:
        return self._chunks[index]

    def update(self, index: int, new_state: Any) -> ChunkStatusEvent:
        with self._lock:
            if index not in self._states:
                raise KeyError(f"Unknown chunk index: {index}")
            current = self._states[index]
            if new_state.kind not in _ALLOWED_TRANSITIONS[current.kind]:
                raise InvalidTransitionError(index, current.kind, new_state.kind)
            self._states[index] = new_state
            self._seq += 1
            event = ChunkStatusEvent(
                job_id=self.job_id,
                chunk_index=index,
                total_chunks=len(self._states),
                state=new_state,
                seq=self._seq,
                ts_iso=_now_iso(),
            )
            for sub in list(self._subscribers):
                sub._push(event)
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    # Observers must never break a worker.
                    logger.exception("status listener failed job_id=%s chunk=%s", self.job_id, index)
            return event

    def get(self, index: int) -> Any:
        with self._lock:
            return self._states[index]

    def snapshot(self) -> Dict[int, Any]:
        with self._lock:
            return dict(self._states)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            out: Dict[str, int] = {}
            for state in self._states.values():
                out[state.kind] = out.get(state.kind, 0) + 1
            return out

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for s in self._states.values() if s.kind in ACTIVE_KINDS)

    def progress(self) -> Tuple[int, int]:
        with self._lock:
            done = sum(1 for s in self._states.values() if s.kind in TERMINAL_KINDS)
            return done, len(self._states)

    def is_complete(self) -> bool:
        done, total = self.progress()
        return done == total

    def subscribe(self, replay: bool = True) -> StatusSubscription:
        loop = asyncio.get_running_loop()
        with self._lock:
            sub = StatusSubscription(self, loop)
            if replay:
                for index in sorted(self._states):
                    sub._push(
                        ChunkStatusEvent(
                            job_id=self.job_id,
                            chunk_index=index,
                            total_chunks=len(self._states),
                            state=self._states[index],
                            seq=self._seq,
                            ts_iso=_now_iso(),
                        )
                    )
            if self._closed:
                sub._push(_CLOSED)
            else:
                self._subscribers.append(sub)
            return sub

    def _unsubscribe(self, sub: StatusSubscription) -> None:
        with self._lock:
            if sub in self._subscribers:
                self._subscribers.remove(sub)

    def add_listener(self, listener: StatusListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._lock:
            self._audit_events.append(event)

    def audit_events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._audit_events)

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subs = list(self._subscribers)
            self._subscribers.clear()
        for sub in subs:
            sub._push(_CLOSED)

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed


def progress_listener(
    on_progress: Callable[[int, int], Optional[Any]],
    tracker: ChunkStatusTracker,
) -> StatusListener:
    """Adapt an ``on_progress(completed, total)`` callback to a status listener."""

    def _listener(event: ChunkStatusEvent) -> None:
        if event.state.kind in TERMINAL_KINDS:
            done, total = tracker.progress()
            on_progress(done, total)

    return _listener
