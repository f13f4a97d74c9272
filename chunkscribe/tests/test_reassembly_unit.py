import random

import pytest

from chunkscribe.internal_core.asr.base import PartialTranscriptionError, TranscriptionCancelledError
from chunkscribe.internal_core.asr.reassembly import (
    merge_texts,
    merge_with_gaps,
    reassemble,
    stitch_dedupe_text,
)
from chunkscribe.internal_core.audio_utils import plan_chunks
from chunkscribe.internal_core.contracts import Cancelled, Failed, InFlight, Succeeded


def test_stitch_dedupe_removes_repeated_head_ignoring_case_and_punctuation() -> None:
    prev = "and then the quick brown fox jumps".split()
    assert stitch_dedupe_text(prev, "Quick brown fox, jumps over the dog.") == "over the dog."


def test_stitch_dedupe_keeps_short_accidental_matches() -> None:
    prev = "we all said hello there".split()
    assert stitch_dedupe_text(prev, "hello there friend") == "hello there friend"
    assert stitch_dedupe_text(["hi", "you"], "hi you all") == "hi you all"
    assert stitch_dedupe_text(prev, "   ") == ""


def test_stitch_dedupe_ignores_matches_beyond_window() -> None:
    words = [f"w{i}" for i in range(30)]
    new_text = " ".join(words[:20] + ["tail"])
    assert stitch_dedupe_text(words[:20], new_text, max_words=15) == new_text


def test_merge_texts_only_dedupes_when_asked() -> None:
    texts = ["one two three four", "two three four five six"]
    assert merge_texts(texts, dedupe=True) == "one two three four five six"
    assert merge_texts(texts, dedupe=False) == "one two three four two three four five six"


def test_reassemble_orders_by_index_regardless_of_completion_order() -> None:
    chunks = plan_chunks(50.0, chunk_duration_sec=10.0)
    order = list(range(5))
    random.Random(1234).shuffle(order)
    states = {}
    for idx in order:
        states[idx] = Succeeded(text=f"part{idx}", attempts=1)

    result = reassemble(chunks, states)
    assert result.status == "ok"
    assert result.ok
    assert result.text == "part0 part1 part2 part3 part4"
    assert result.raise_for_status() is result


def test_reassemble_dedupes_overlap_boundaries() -> None:
    chunks = plan_chunks(20.0, chunk_duration_sec=10.0, overlap_sec=2.0)
    states = {
        0: Succeeded(text="so the results were very good overall", attempts=1),
        1: Succeeded(text="were very good overall. Next we discuss costs", attempts=1),
    }
    result = reassemble(chunks, states, overlap_sec=2.0)
    assert result.text == "so the results were very good overall Next we discuss costs"

    no_overlap = reassemble(chunks, states, overlap_sec=0.0)
    assert "overall were very good" in no_overlap.text


def test_reassemble_partial_failure_keeps_succeeded_text() -> None:
    chunks = plan_chunks(50.0, chunk_duration_sec=10.0)
    states = {i: Succeeded(text=f"t{i}", attempts=1) for i in range(5)}
    states[2] = Failed(error_code="ASR_TIMEOUT", message="slow", attempts=3, retryable=True)

    result = reassemble(chunks, states)
    assert result.status == "partial_failure"
    assert result.text == ""
    assert result.failed_indices == [2]
    assert result.succeeded_text == {0: "t0", 1: "t1", 3: "t3", 4: "t4"}
    assert result.meta["partial_text"] == "t0 t1 [chunk 3 failed] t3 t4"

    with pytest.raises(PartialTranscriptionError) as excinfo:
        result.raise_for_status()
    assert excinfo.value.failed_indices == [2]


def test_reassemble_user_cancel_wins_over_failures() -> None:
    chunks = plan_chunks(30.0, chunk_duration_sec=10.0)
    states = {
        0: Succeeded(text="kept", attempts=1),
        1: Failed(error_code="ASR_AUTH_FAILED", attempts=1),
        2: Cancelled(reason="cancelled"),
    }
    result = reassemble(chunks, states)
    assert result.status == "cancelled"
    assert result.cancelled_indices == [2]
    assert result.succeeded_text == {0: "kept"}
    assert result.failed_indices == [1]

    with pytest.raises(TranscriptionCancelledError) as excinfo:
        result.raise_for_status()
    assert excinfo.value.reason == "cancelled"


def test_reassemble_rejects_non_terminal_states() -> None:
    chunks = plan_chunks(20.0, chunk_duration_sec=10.0)
    with pytest.raises(ValueError):
        reassemble(chunks, {0: Succeeded(text="a", attempts=1), 1: InFlight(attempt=1)})
    with pytest.raises(ValueError):
        reassemble(chunks, {0: Succeeded(text="a", attempts=1)})


def test_merge_with_gaps_marks_every_failed_chunk() -> None:
    assert merge_with_gaps({0: "a", 1: "b", 3: "d"}, [2]) == "a b [chunk 3 failed] d"
    assert merge_with_gaps({0: "a"}, [1, 2]) == "a [chunk 2 failed] [chunk 3 failed]"
    assert merge_with_gaps({}, []) == ""


def test_partial_text_dedupes_overlap_between_adjacent_chunks() -> None:
    chunks = plan_chunks(30.0, chunk_duration_sec=10.0, overlap_sec=2.0)
    states = {
        0: Succeeded(text="so the results were very good overall", attempts=1),
        1: Succeeded(text="were very good overall. Next we discuss costs", attempts=1),
        2: Failed(error_code="ASR_TIMEOUT", attempts=3, retryable=True),
    }
    result = reassemble(chunks, states, overlap_sec=2.0)

    assert result.status == "partial_failure"
    assert result.meta["partial_text"] == (
        "so the results were very good overall Next we discuss costs [chunk 3 failed]"
    )


def test_merge_with_gaps_does_not_dedupe_across_a_gap() -> None:
    succeeded = {0: "alpha beta gamma delta", 2: "beta gamma delta epsilon"}
    assert merge_with_gaps(succeeded, [1], dedupe=True) == (
        "alpha beta gamma delta [chunk 2 failed] beta gamma delta epsilon"
    )
    assert merge_with_gaps({0: "one two three four", 1: "two three four five"}, [], dedupe=True) == (
        "one two three four five"
    )
