from __future__ import annotations

import string
from typing import Dict, List, Mapping, Optional, Sequence

from ..contracts import (
    AggregateResult,
    AudioChunk,
    Cancelled,
    ChunkFailure,
    Failed,
    Succeeded,
    is_terminal,
)

MIN_OVERLAP_WORDS = 3
MAX_OVERLAP_WORDS = 15

FAST_FAIL_REASON = "fast_fail"
FAST_FAIL_SKIPPED = "FAST_FAIL_SKIPPED"

_STRIP_CHARS = string.punctuation + "‘’“”…"


def _clean_word(word: str) -> str:
    return word.strip(_STRIP_CHARS).lower()


def normalize_whitespace(text: str) -> str:
    return " ".join((text or "").split())


def stitch_dedupe_text(
    prev_tail_words: List[str],
    new_text: str,
    min_words: int = MIN_OVERLAP_WORDS,
    max_words: int = MAX_OVERLAP_WORDS,
) -> str:
    """
    Drop the head of ``new_text`` that repeats the tail of the previous text.

    Heuristic: the longest run of ``min_words``..``max_words`` words that
    matches ignoring case and edge punctuation is removed. Shorter runs are
    left alone since they match by accident too often.
    """
    new_words = (new_text or "").strip().split()
    if not new_words:
        return ""
    prev = prev_tail_words[-max_words:] if prev_tail_words else []
    if len(prev) < min_words or len(new_words) < min_words:
        return " ".join(new_words)
    prev_clean = [_clean_word(w) for w in prev]
    head_clean = [_clean_word(w) for w in new_words[:max_words]]
    for k in range(min(len(prev_clean), len(head_clean)), min_words - 1, -1):
        if prev_clean[-k:] == head_clean[:k]:
            return " ".join(new_words[k:])
    return " ".join(new_words)


def merge_texts(texts: Sequence[str], dedupe: bool = True) -> str:
    out: List[str] = []
    for text in texts:
        text = normalize_whitespace(text)
        if not text:
            continue
        if dedupe and out:
            text = stitch_dedupe_text(out, text)
        out.extend(text.split())
    return " ".join(out)


def merge_with_gaps(
    succeeded_text: Mapping[int, str],
    failed_indices: Sequence[int],
    dedupe: bool = False,
) -> str:
    """
    Partial transcript for display; each failed chunk shows as ``[chunk N failed]`` (1-based).

    With ``dedupe`` the overlap between adjacent succeeded chunks is removed
    the same way ``merge_texts`` does it.
    """
    failed = set(failed_indices)
    parts: List[str] = []
    prev_words: List[str] = []
    for idx in sorted(set(succeeded_text) | failed):
        if idx not in succeeded_text:
            parts.append(f"[chunk {idx + 1} failed]")
            continue
        if (idx - 1) not in succeeded_text:
            prev_words = []
        text = normalize_whitespace(succeeded_text[idx])
        if dedupe and prev_words:
            text = stitch_dedupe_text(prev_words, text)
        if text:
            parts.append(text)
            prev_words.extend(text.split())
    return " ".join(parts)


def reassemble(
    chunks: Sequence[AudioChunk],
    states: Mapping[int, object],
    overlap_sec: float = 0.0,
    meta: Optional[Dict[str, object]] = None,
) -> AggregateResult:
    """
    Combine terminal chunk states into one result, in ascending chunk order.

    A chunk cancelled for any reason other than fast fail makes the whole
    result ``cancelled``; otherwise any failed or fast-fail-skipped chunk makes
    it ``partial_failure``. Only an ``ok`` result carries ``text``.
    """
    ordered = sorted(chunks, key=lambda c: c.index)
    succeeded_text: Dict[int, str] = {}
    failures: List[ChunkFailure] = []
    cancelled: List[int] = []
    cancel_reason: Optional[str] = None

    for chunk in ordered:
        state = states.get(chunk.index)
        if state is None or not is_terminal(state):
            kind = getattr(state, "kind", "missing")
            raise ValueError(f"chunk {chunk.index} is not terminal ({kind})")
        if isinstance(state, Succeeded):
            succeeded_text[chunk.index] = state.text
        elif isinstance(state, Failed):
            failures.append(
                ChunkFailure(
                    index=chunk.index,
                    start_sec=chunk.start_sec,
                    end_sec=chunk.end_sec,
                    error_code=state.error_code,
                    message=state.message,
                    attempts=state.attempts,
                )
            )
        elif isinstance(state, Cancelled):
            if state.reason == FAST_FAIL_REASON:
                failures.append(
                    ChunkFailure(
                        index=chunk.index,
                        start_sec=chunk.start_sec,
                        end_sec=chunk.end_sec,
                        error_code=FAST_FAIL_SKIPPED,
                        message="not attempted after a fatal error in another chunk",
                        attempts=0,
                    )
                )
            else:
                cancelled.append(chunk.index)
                cancel_reason = cancel_reason or state.reason

    out_meta: Dict[str, object] = dict(meta or {})
    out_meta["chunks"] = len(ordered)
    out_meta["succeeded"] = len(succeeded_text)

    if cancelled:
        out_meta["partial_text"] = merge_with_gaps(
            succeeded_text, [f.index for f in failures], dedupe=overlap_sec > 0
        )
        return AggregateResult(
            status="cancelled",
            succeeded_text=succeeded_text,
            failures=failures,
            cancelled_indices=cancelled,
            cancel_reason=cancel_reason,
            meta=out_meta,
        )
    if failures:
        out_meta["partial_text"] = merge_with_gaps(
            succeeded_text, [f.index for f in failures], dedupe=overlap_sec > 0
        )
        return AggregateResult(
            status="partial_failure",
            succeeded_text=succeeded_text,
            failures=failures,
            meta=out_meta,
        )

    text = merge_texts([succeeded_text[c.index] for c in ordered], dedupe=overlap_sec > 0)
    return AggregateResult(status="ok", text=text, succeeded_text=succeeded_text, meta=out_meta)
