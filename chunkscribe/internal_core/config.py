from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .audio_utils import InvalidChunkConfigError, validate_chunk_config


def _project_root() -> Path:
    # chunkscribe/internal_core/config.py -> chunkscribe -> repo root
    return Path(__file__).resolve().parents[2]


def _getenv_str(name: str, default: str) -> str:
    value = os.getenv(name)
    return default if value is None else value


def _getenv_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _getenv_opt_int(name: str) -> Optional[int]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return int(value)


def _getenv_opt_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return None
    return float(value)


def _getenv_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_set(name: str) -> bool:
    value = os.getenv(name)
    return value is not None and value != ""


def _getenv_int_preset(name: str, default: int, preset_value: Optional[int]) -> int:
    if _env_set(name):
        return _getenv_int(name, default)
    if preset_value is not None:
        return int(preset_value)
    return default


def _getenv_float_preset(name: str, default: float, preset_value: Optional[float]) -> float:
    if _env_set(name):
        return _getenv_float(name, default)
    if preset_value is not None:
        return float(preset_value)
    return default


def _getenv_bool_preset(name: str, default: bool, preset_value: Optional[bool]) -> bool:
    if _env_set(name):
        return _getenv_bool(name, default)
    if preset_value is not None:
        return bool(preset_value)
    return default


def _preset_overrides(name: str) -> dict[str, object]:
    if name == "free_tier_v1":
        # Low remote rate limits: one request at a time, more patience.
        return {
            "SCRIBE_MAX_CONCURRENCY": 1,
            "SCRIBE_RETRY_MAX_ATTEMPTS": 5,
            "SCRIBE_RETRY_BASE_BACKOFF_SEC": 3.0,
        }
    if name == "batch_fast_v1":
        return {
            "SCRIBE_MAX_CONCURRENCY": 6,
            "SCRIBE_RETRY_MAX_ATTEMPTS": 2,
            "SCRIBE_FAST_FAIL_ON_FATAL": True,
        }
    return {}


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_backoff_sec: float = 1.5
    max_backoff_sec: float = 30.0
    jitter_sec: float = 0.5

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise InvalidChunkConfigError("retry max_attempts must be >= 1")
        if self.base_backoff_sec < 0 or self.max_backoff_sec < 0 or self.jitter_sec < 0:
            raise InvalidChunkConfigError("retry backoff and jitter must be >= 0")


@dataclass(frozen=True)
class RateLimitPolicy:
    buffer_sec: float = 2.0
    base_sec: float = 30.0
    max_sec: float = 120.0


@dataclass(frozen=True)
class ChunkingConfig:
    chunk_duration_sec: float = 45.0
    overlap_sec: float = 2.0
    max_concurrency: int = 3
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    rate_limit: RateLimitPolicy = field(default_factory=RateLimitPolicy)
    fast_fail_on_fatal: bool = False
    request_timeout_sec: float = 60.0
    job_deadline_sec: Optional[float] = None
    language: str = "en"

    def __post_init__(self) -> None:
        validate_chunk_config(self.chunk_duration_sec, self.overlap_sec)
        if self.max_concurrency < 1:
            raise InvalidChunkConfigError("max_concurrency must be >= 1")
        if self.request_timeout_sec <= 0:
            raise InvalidChunkConfigError("request_timeout_sec must be > 0")
        if self.job_deadline_sec is not None and self.job_deadline_sec <= 0:
            raise InvalidChunkConfigError("job_deadline_sec must be > 0 when set")


@dataclass(frozen=True)
class PipelineConfig:
    SCRIBE_TMP_DIR: str
    SCRIBE_JOB_TTL_SECONDS: int
    SCRIBE_MAX_AUDIO_SECONDS: int
    SCRIBE_MAX_UPLOAD_BYTES: int
    SCRIBE_LOG_LEVEL: str
    SCRIBE_LANGUAGE: str
    SCRIBE_ASR_PROVIDER: str
    SCRIBE_ASR_ENDPOINT: str
    SCRIBE_ASR_MODEL: str
    SCRIBE_ASR_API_KEY: str
    ASR_PRESET: str
    SCRIBE_CHUNK_SECONDS: float
    SCRIBE_CHUNK_OVERLAP_SECONDS: float
    SCRIBE_MAX_CONCURRENCY: int
    SCRIBE_RETRY_MAX_ATTEMPTS: int
    SCRIBE_RETRY_BASE_BACKOFF_SEC: float
    SCRIBE_RETRY_MAX_BACKOFF_SEC: float
    SCRIBE_RETRY_JITTER_SEC: float
    SCRIBE_REQUEST_TIMEOUT_SEC: float
    SCRIBE_JOB_DEADLINE_SEC: Optional[float]
    SCRIBE_FAST_FAIL_ON_FATAL: bool
    SCRIBE_RATE_LIMIT_BUFFER_SEC: float
    SCRIBE_RATE_LIMIT_BASE_SEC: float
    SCRIBE_RATE_LIMIT_MAX_SEC: float
    SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK: Optional[int]

    def tmp_dir_path(self, repo_root: Optional[Path] = None) -> Path:
        return ((repo_root or _project_root()) / self.SCRIBE_TMP_DIR).resolve()

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.SCRIBE_RETRY_MAX_ATTEMPTS,
            base_backoff_sec=self.SCRIBE_RETRY_BASE_BACKOFF_SEC,
            max_backoff_sec=self.SCRIBE_RETRY_MAX_BACKOFF_SEC,
            jitter_sec=self.SCRIBE_RETRY_JITTER_SEC,
        )

    def chunking(self) -> ChunkingConfig:
        return ChunkingConfig(
            chunk_duration_sec=self.SCRIBE_CHUNK_SECONDS,
            overlap_sec=self.SCRIBE_CHUNK_OVERLAP_SECONDS,
            max_concurrency=self.SCRIBE_MAX_CONCURRENCY,
            retry=self.retry_policy(),
            rate_limit=RateLimitPolicy(
                buffer_sec=self.SCRIBE_RATE_LIMIT_BUFFER_SEC,
                base_sec=self.SCRIBE_RATE_LIMIT_BASE_SEC,
                max_sec=self.SCRIBE_RATE_LIMIT_MAX_SEC,
            ),
            fast_fail_on_fatal=self.SCRIBE_FAST_FAIL_ON_FATAL,
            request_timeout_sec=self.SCRIBE_REQUEST_TIMEOUT_SEC,
            job_deadline_sec=self.SCRIBE_JOB_DEADLINE_SEC,
            language=self.SCRIBE_LANGUAGE,
        )


def load_config() -> PipelineConfig:
    asr_preset = _getenv_str("ASR_PRESET", "")
    preset = _preset_overrides(asr_preset)

    return PipelineConfig(
        SCRIBE_TMP_DIR=_getenv_str("SCRIBE_TMP_DIR", "./tmp"),
        SCRIBE_JOB_TTL_SECONDS=_getenv_int("SCRIBE_JOB_TTL_SECONDS", 14400),
        SCRIBE_MAX_AUDIO_SECONDS=_getenv_int("SCRIBE_MAX_AUDIO_SECONDS", 4 * 3600),
        SCRIBE_MAX_UPLOAD_BYTES=_getenv_int("SCRIBE_MAX_UPLOAD_BYTES", 500 * 1024 * 1024),
        SCRIBE_LOG_LEVEL=_getenv_str("SCRIBE_LOG_LEVEL", "INFO"),
        SCRIBE_LANGUAGE=_getenv_str("SCRIBE_LANGUAGE", "en"),
        SCRIBE_ASR_PROVIDER=_getenv_str("SCRIBE_ASR_PROVIDER", "mock"),
        SCRIBE_ASR_ENDPOINT=_getenv_str("SCRIBE_ASR_ENDPOINT", "https://api.openai.com"),
        SCRIBE_ASR_MODEL=_getenv_str("SCRIBE_ASR_MODEL", "whisper-1"),
        SCRIBE_ASR_API_KEY=_getenv_str("SCRIBE_ASR_API_KEY", _getenv_str("OPENAI_API_KEY", "")),
        ASR_PRESET=asr_preset,
        SCRIBE_CHUNK_SECONDS=_getenv_float("SCRIBE_CHUNK_SECONDS", 45.0),
        SCRIBE_CHUNK_OVERLAP_SECONDS=_getenv_float("SCRIBE_CHUNK_OVERLAP_SECONDS", 2.0),
        SCRIBE_MAX_CONCURRENCY=_getenv_int_preset(
            "SCRIBE_MAX_CONCURRENCY", 3, preset.get("SCRIBE_MAX_CONCURRENCY")
        ),
        SCRIBE_RETRY_MAX_ATTEMPTS=_getenv_int_preset(
            "SCRIBE_RETRY_MAX_ATTEMPTS", 3, preset.get("SCRIBE_RETRY_MAX_ATTEMPTS")
        ),
        SCRIBE_RETRY_BASE_BACKOFF_SEC=_getenv_float_preset(
            "SCRIBE_RETRY_BASE_BACKOFF_SEC", 1.5, preset.get("SCRIBE_RETRY_BASE_BACKOFF_SEC")
        ),
        SCRIBE_RETRY_MAX_BACKOFF_SEC=_getenv_float("SCRIBE_RETRY_MAX_BACKOFF_SEC", 30.0),
        SCRIBE_RETRY_JITTER_SEC=_getenv_float("SCRIBE_RETRY_JITTER_SEC", 0.5),
        SCRIBE_REQUEST_TIMEOUT_SEC=_getenv_float("SCRIBE_REQUEST_TIMEOUT_SEC", 60.0),
        SCRIBE_JOB_DEADLINE_SEC=_getenv_opt_float("SCRIBE_JOB_DEADLINE_SEC"),
        SCRIBE_FAST_FAIL_ON_FATAL=_getenv_bool_preset(
            "SCRIBE_FAST_FAIL_ON_FATAL", False, preset.get("SCRIBE_FAST_FAIL_ON_FATAL")
        ),
        SCRIBE_RATE_LIMIT_BUFFER_SEC=_getenv_float("SCRIBE_RATE_LIMIT_BUFFER_SEC", 2.0),
        SCRIBE_RATE_LIMIT_BASE_SEC=_getenv_float("SCRIBE_RATE_LIMIT_BASE_SEC", 30.0),
        SCRIBE_RATE_LIMIT_MAX_SEC=_getenv_float("SCRIBE_RATE_LIMIT_MAX_SEC", 120.0),
        SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK=_getenv_opt_int(
            "SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK"
        ),
    )
