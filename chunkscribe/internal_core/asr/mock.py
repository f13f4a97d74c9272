from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

from ..contracts import AudioChunk
from .base import TranscriptionProvider

MockAction = Union[str, BaseException, Callable[[AudioChunk, int], Union[str, Awaitable[str]]]]


class MockTranscriptionProvider(TranscriptionProvider):
    """
    Scripted provider for demos and tests.

    ``script`` maps a chunk index to the outcomes of its successive attempts:
    a string is returned, an exception is raised, a callable is invoked with
    ``(chunk, attempt)``. Once a chunk's script is exhausted the default mock
    text is returned. Calls and peak concurrency are recorded.
    """

    def __init__(
        self,
        script: Optional[Dict[int, Sequence[MockAction]]] = None,
        delay_sec: float = 0.0,
        delays: Optional[Dict[int, float]] = None,
        provider_name: str = "mock",
    ) -> None:
        self._script: Dict[int, List[MockAction]] = {
            int(k): list(v) for k, v in (script or {}).items()
        }
        self.delay_sec = float(delay_sec)
        self.delays: Dict[int, float] = dict(delays or {})
        self._name = provider_name
        self.calls: List[int] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.cancelled: List[int] = []
        self.closed = False

    def calls_for(self, index: int) -> int:
        return sum(1 for i in self.calls if i == index)

    async def transcribe_chunk(
        self,
        audio_bytes: bytes,
        chunk: AudioChunk,
        *,
        language: str = "en",
        timeout_sec: float = 60.0,
    ) -> str:
        idx = chunk.index
        self.calls.append(idx)
        attempt = self.calls_for(idx)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delays.get(idx, self.delay_sec)
            if delay > 0:
                await asyncio.sleep(delay)
            steps = self._script.get(idx)
            if not steps:
                return f"(mock) simulated transcript for chunk {idx}."
            action = steps.pop(0)
            if isinstance(action, BaseException):
                raise action
            if callable(action):
                result = action(chunk, attempt)
                if inspect.isawaitable(result):
                    result = await result
                return str(result)
            return str(action)
        except asyncio.CancelledError:
            self.cancelled.append(idx)
            raise
        finally:
            self.in_flight -= 1

    def name(self) -> str:
        return self._name

    async def aclose(self) -> None:
        self.closed = True
