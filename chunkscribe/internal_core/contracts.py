from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator

JobState = Literal["created", "running", "completed", "cancelled"]

AggregateStatus = Literal["ok", "partial_failure", "cancelled"]

ChunkStateKind = Literal[
    "pending", "in_flight", "retrying", "succeeded", "failed", "cancelled"
]

TERMINAL_KINDS = frozenset({"succeeded", "failed", "cancelled"})
ACTIVE_KINDS = frozenset({"in_flight", "retrying"})


class AudioChunk(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    index: int = Field(ge=0)
    start_sec: float = Field(ge=0.0)
    end_sec: float = Field(ge=0.0)

    @model_validator(mode="after")
    def _validate_window(self) -> "AudioChunk":
        if self.end_sec < self.start_sec:
            raise ValueError("AudioChunk.end_sec must be >= AudioChunk.start_sec")
        return self

    @property
    def duration_sec(self) -> float:
        return max(0.0, self.end_sec - self.start_sec)


class Pending(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["pending"] = "pending"


class InFlight(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["in_flight"] = "in_flight"
    attempt: int = Field(ge=1)


class Retrying(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["retrying"] = "retrying"
    attempt: int = Field(ge=1)
    error_code: str
    delay_sec: float = Field(ge=0.0)


class Succeeded(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["succeeded"] = "succeeded"
    text: str
    attempts: int = Field(ge=1)


class Failed(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["failed"] = "failed"
    error_code: str
    message: str = ""
    attempts: int = Field(ge=0)
    retryable: bool = False


class Cancelled(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["cancelled"] = "cancelled"
    reason: str = "cancelled"


ChunkState = Annotated[
    Union[Pending, InFlight, Retrying, Succeeded, Failed, Cancelled],
    Field(discriminator="kind"),
]


def is_terminal(state: BaseModel) -> bool:
    return getattr(state, "kind", "") in TERMINAL_KINDS


class ChunkJob(BaseModel):
    model_config = ConfigDict(extra="forbid")

    chunk: AudioChunk
    attempt: int = 0
    state: ChunkState = Field(default_factory=Pending)


class ChunkStatusEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: str
    chunk_index: int
    total_chunks: int
    state: ChunkState
    seq: int
    ts_iso: str


class ChunkFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    index: int
    start_sec: float
    end_sec: float
    error_code: str
    message: str = ""
    attempts: int = 0


class AggregateResult(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: AggregateStatus
    text: str = ""
    succeeded_text: Dict[int, str] = Field(default_factory=dict)
    failures: List[ChunkFailure] = Field(default_factory=list)
    cancelled_indices: List[int] = Field(default_factory=list)
    cancel_reason: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)

    @property
    def failed_indices(self) -> List[int]:
        return sorted(f.index for f in self.failures)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def raise_for_status(self) -> "AggregateResult":
        # Imported lazily: the asr package imports this module.
        from .asr.base import PartialTranscriptionError, TranscriptionCancelledError

        if self.status == "partial_failure":
            raise PartialTranscriptionError(self.failed_indices, self.failures)
        if self.status == "cancelled":
            raise TranscriptionCancelledError(self.cancel_reason or "cancelled")
        return self


AuditEventType = Literal[
    "JOB_STARTED",
    "CHUNK_STARTED",
    "CHUNK_RETRY",
    "CHUNK_DONE",
    "CHUNK_FAILED",
    "CHUNK_CANCELLED",
    "FAST_FAIL",
    "RATE_LIMITED",
    "JOB_DONE",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    job_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None
