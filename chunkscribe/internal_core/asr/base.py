from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from ..contracts import AudioChunk


class ChunkError(RuntimeError):
    """Classified failure of one chunk request."""

    retryable: bool = False

    def __init__(self, code: str, message: str, provider_name: str = ""):
        super().__init__(message)
        self.code = code
        self.message = message
        self.provider_name = provider_name

    @property
    def retry_after(self) -> Optional[float]:
        return None


class ChunkTransportError(ChunkError):
    retryable = True

    def __init__(
        self,
        kind: str,
        message: str,
        provider_name: str = "",
        status_code: Optional[int] = None,
    ):
        code = {
            "timeout": "ASR_TIMEOUT",
            "network": "ASR_NETWORK_ERROR",
            "server": f"ASR_SERVER_ERROR_{status_code}" if status_code else "ASR_SERVER_ERROR",
        }.get(kind, "ASR_TRANSPORT_ERROR")
        super().__init__(code, message, provider_name)
        self.kind = kind
        self.status_code = status_code


class ChunkRateLimited(ChunkError):
    retryable = True

    def __init__(self, message: str, provider_name: str = "", retry_after: Optional[float] = None):
        super().__init__("ASR_RATE_LIMITED", message, provider_name)
        self._retry_after = retry_after

    @property
    def retry_after(self) -> Optional[float]:
        return self._retry_after


class ChunkAuthError(ChunkError):
    def __init__(self, message: str, provider_name: str = ""):
        super().__init__("ASR_AUTH_FAILED", message, provider_name)


class ChunkRequestError(ChunkError):
    def __init__(self, message: str, provider_name: str = "", status_code: Optional[int] = None):
        super().__init__("ASR_BAD_REQUEST", message, provider_name)
        self.status_code = status_code


class ChunkQuotaExceeded(ChunkError):
    def __init__(self, message: str, provider_name: str = ""):
        super().__init__("ASR_QUOTA_EXCEEDED", message, provider_name)


class PartialTranscriptionError(RuntimeError):
    def __init__(self, failed_indices: Sequence[int], failures: Sequence[object] = ()):
        self.failed_indices: List[int] = sorted(failed_indices)
        self.failures = list(failures)
        super().__init__(f"{len(self.failed_indices)} chunk(s) failed: {self.failed_indices}")


class TranscriptionCancelledError(RuntimeError):
    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"transcription cancelled ({reason})")
        self.reason = reason


class TranscriptionProvider(ABC):
    @abstractmethod
    async def transcribe_chunk(
        self,
        audio_bytes: bytes,
        chunk: AudioChunk,
        *,
        language: str = "en",
        timeout_sec: float = 60.0,
    ) -> str: ...

    @abstractmethod
    def name(self) -> str: ...

    async def aclose(self) -> None:
        return None
