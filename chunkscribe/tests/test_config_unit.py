import os

import pytest

from chunkscribe.internal_core.audio_utils import InvalidChunkConfigError
from chunkscribe.internal_core.config import ChunkingConfig, RetryPolicy, load_config


def _clear_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("SCRIBE_") or key in {"ASR_PRESET", "OPENAI_API_KEY"}:
            monkeypatch.delenv(key, raising=False)


def test_load_config_defaults(monkeypatch) -> None:
    _clear_env(monkeypatch)
    cfg = load_config()
    chunking = cfg.chunking()

    assert cfg.SCRIBE_ASR_PROVIDER == "mock"
    assert chunking.chunk_duration_sec == 45.0
    assert chunking.overlap_sec == 2.0
    assert chunking.max_concurrency == 3
    assert chunking.retry == RetryPolicy(max_attempts=3, base_backoff_sec=1.5, max_backoff_sec=30.0, jitter_sec=0.5)
    assert chunking.fast_fail_on_fatal is False
    assert chunking.job_deadline_sec is None
    assert cfg.SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK is None


def test_load_config_env_overrides(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCRIBE_CHUNK_SECONDS", "30")
    monkeypatch.setenv("SCRIBE_CHUNK_OVERLAP_SECONDS", "1.5")
    monkeypatch.setenv("SCRIBE_MAX_CONCURRENCY", "5")
    monkeypatch.setenv("SCRIBE_FAST_FAIL_ON_FATAL", "yes")
    monkeypatch.setenv("SCRIBE_JOB_DEADLINE_SEC", "600")
    monkeypatch.setenv("SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK", "2")

    cfg = load_config()
    chunking = cfg.chunking()
    assert chunking.chunk_duration_sec == 30.0
    assert chunking.overlap_sec == 1.5
    assert chunking.max_concurrency == 5
    assert chunking.fast_fail_on_fatal is True
    assert chunking.job_deadline_sec == 600.0
    assert cfg.SCRIBE_TEST_INJECT_ASR_FAIL_AT_CHUNK == 2


def test_preset_applies_unless_env_is_set(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("ASR_PRESET", "free_tier_v1")
    cfg = load_config()
    assert cfg.SCRIBE_MAX_CONCURRENCY == 1
    assert cfg.SCRIBE_RETRY_MAX_ATTEMPTS == 5

    monkeypatch.setenv("SCRIBE_MAX_CONCURRENCY", "2")
    cfg = load_config()
    assert cfg.SCRIBE_MAX_CONCURRENCY == 2
    assert cfg.SCRIBE_RETRY_MAX_ATTEMPTS == 5


def test_api_key_falls_back_to_openai_env(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert load_config().SCRIBE_ASR_API_KEY == "sk-test"
    monkeypatch.setenv("SCRIBE_ASR_API_KEY", "sk-override")
    assert load_config().SCRIBE_ASR_API_KEY == "sk-override"


def test_invalid_chunking_is_rejected(monkeypatch) -> None:
    _clear_env(monkeypatch)
    monkeypatch.setenv("SCRIBE_CHUNK_SECONDS", "10")
    monkeypatch.setenv("SCRIBE_CHUNK_OVERLAP_SECONDS", "10")
    cfg = load_config()
    with pytest.raises(InvalidChunkConfigError):
        cfg.chunking()

    with pytest.raises(InvalidChunkConfigError):
        ChunkingConfig(max_concurrency=0)
    with pytest.raises(InvalidChunkConfigError):
        RetryPolicy(max_attempts=0)
