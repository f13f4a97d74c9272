import pytest

from chunkscribe.internal_core.audio_utils import (
    EmptyInputError,
    InvalidChunkConfigError,
    PlanningError,
    WavBytesSource,
    needs_chunking,
    plan_chunks,
    silence_wav_bytes,
)


def _spans(chunks):
    return [(c.index, c.start_sec, c.end_sec) for c in chunks]


def test_plan_chunks_short_audio_is_single_chunk() -> None:
    chunks = plan_chunks(30.0, chunk_duration_sec=45.0)
    assert _spans(chunks) == [(0, 0.0, 30.0)]
    assert not needs_chunking(30.0, 45.0)
    assert not needs_chunking(45.0, 45.0)


def test_plan_chunks_duration_equal_to_chunk_is_single_chunk() -> None:
    chunks = plan_chunks(45.0, chunk_duration_sec=45.0, overlap_sec=2.0)
    assert _spans(chunks) == [(0, 0.0, 45.0)]


def test_plan_chunks_with_overlap_matches_reference_layout() -> None:
    chunks = plan_chunks(120.0, chunk_duration_sec=45.0, overlap_sec=2.0)
    assert _spans(chunks) == [(0, 0.0, 45.0), (1, 43.0, 90.0), (2, 88.0, 120.0)]


@pytest.mark.parametrize(
    "duration,chunk,overlap",
    [
        (45.5, 45.0, 0.0),
        (90.0, 45.0, 0.0),
        (100.0, 10.0, 1.0),
        (3600.0, 45.0, 2.0),
        (7.3, 1.0, 0.25),
        (1.0, 0.1, 0.0),
        (0.7, 0.1, 0.05),
    ],
)
def test_plan_chunks_covers_duration_without_gaps(duration: float, chunk: float, overlap: float) -> None:
    chunks = plan_chunks(duration, chunk_duration_sec=chunk, overlap_sec=overlap)

    assert chunks[0].start_sec == 0.0
    assert chunks[-1].end_sec == duration
    assert [c.index for c in chunks] == list(range(len(chunks)))
    for prev, cur in zip(chunks, chunks[1:]):
        assert cur.start_sec <= prev.end_sec
        assert cur.start_sec > prev.start_sec
    for c in chunks:
        assert c.duration_sec > 0
    assert len(chunks) in {int(duration // chunk), int(duration // chunk) + 1}


def test_plan_chunks_rejects_empty_input() -> None:
    with pytest.raises(EmptyInputError):
        plan_chunks(0.0, chunk_duration_sec=45.0)
    with pytest.raises(EmptyInputError):
        plan_chunks(-3.0, chunk_duration_sec=45.0)


@pytest.mark.parametrize(
    "chunk,overlap",
    [(0.0, 0.0), (-1.0, 0.0), (10.0, -0.5), (10.0, 10.0), (10.0, 12.0)],
)
def test_plan_chunks_rejects_invalid_config(chunk: float, overlap: float) -> None:
    with pytest.raises(InvalidChunkConfigError) as excinfo:
        plan_chunks(60.0, chunk_duration_sec=chunk, overlap_sec=overlap)
    assert isinstance(excinfo.value, PlanningError)
    assert isinstance(excinfo.value, ValueError)
    assert excinfo.value.code == "INVALID_CONFIG"


def test_wav_bytes_source_reads_chunk_ranges() -> None:
    source = WavBytesSource(silence_wav_bytes(3.0, sample_rate=8000))
    assert source.duration_sec == pytest.approx(3.0)

    piece = WavBytesSource(source.read_range(1.0, 2.5))
    assert piece.duration_sec == pytest.approx(1.5)
    assert piece.sample_rate == 8000


def test_wav_bytes_source_rejects_non_wav_payload() -> None:
    with pytest.raises(ValueError):
        WavBytesSource(b"definitely not a wav file")
