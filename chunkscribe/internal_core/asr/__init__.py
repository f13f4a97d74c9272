from __future__ import annotations

from .base import (
    ChunkAuthError,
    ChunkError,
    ChunkQuotaExceeded,
    ChunkRateLimited,
    ChunkRequestError,
    ChunkTransportError,
    PartialTranscriptionError,
    TranscriptionCancelledError,
    TranscriptionProvider,
)
from .cancellation import CancellationToken
from .controller import (
    TranscriptionJob,
    build_provider,
    transcribe_in_chunks,
    transcribe_wav_file,
)
from .dispatcher import ChunkDispatcher
from .http_provider import OpenAIHTTPProvider, classify_http_error
from .mock import MockTranscriptionProvider
from .reassembly import merge_with_gaps, reassemble, stitch_dedupe_text
from .retry import RateLimitCoordinator, RetryingTranscriber

__all__ = [
    "CancellationToken",
    "ChunkAuthError",
    "ChunkDispatcher",
    "ChunkError",
    "ChunkQuotaExceeded",
    "ChunkRateLimited",
    "ChunkRequestError",
    "ChunkTransportError",
    "MockTranscriptionProvider",
    "OpenAIHTTPProvider",
    "PartialTranscriptionError",
    "RateLimitCoordinator",
    "RetryingTranscriber",
    "TranscriptionCancelledError",
    "TranscriptionJob",
    "TranscriptionProvider",
    "build_provider",
    "classify_http_error",
    "merge_with_gaps",
    "reassemble",
    "stitch_dedupe_text",
    "transcribe_in_chunks",
    "transcribe_wav_file",
]
