from __future__ import annotations

import argparse
import asyncio
import dataclasses
import signal
import sys
from pathlib import Path
from typing import Optional, Sequence

from chunkscribe.internal_core.asr.cancellation import CancellationToken
from chunkscribe.internal_core.asr.controller import TranscriptionJob, transcribe_wav_file
from chunkscribe.internal_core.audit import configure_logging
from chunkscribe.internal_core.config import PipelineConfig, load_config
from chunkscribe.internal_core.contracts import AggregateResult, ChunkStatusEvent

EXIT_OK = 0
EXIT_PARTIAL = 2
EXIT_CANCELLED = 130


def _print_event(event: ChunkStatusEvent) -> None:
    state = event.state
    extra = ""
    if state.kind == "retrying":
        extra = f" code={state.error_code} delay={state.delay_sec:.1f}s"
    elif state.kind == "failed":
        extra = f" code={state.error_code} attempts={state.attempts}"
    elif state.kind == "cancelled":
        extra = f" reason={state.reason}"
    print(f"chunk {event.chunk_index + 1}/{event.total_chunks} {state.kind}{extra}", file=sys.stderr)


def _apply_overrides(cfg: PipelineConfig, args: argparse.Namespace) -> PipelineConfig:
    overrides = {}
    if args.provider:
        overrides["SCRIBE_ASR_PROVIDER"] = args.provider
    if args.chunk_seconds is not None:
        overrides["SCRIBE_CHUNK_SECONDS"] = args.chunk_seconds
    if args.overlap_seconds is not None:
        overrides["SCRIBE_CHUNK_OVERLAP_SECONDS"] = args.overlap_seconds
    if args.concurrency is not None:
        overrides["SCRIBE_MAX_CONCURRENCY"] = args.concurrency
    if args.deadline_seconds is not None:
        overrides["SCRIBE_JOB_DEADLINE_SEC"] = args.deadline_seconds
    if args.fast_fail:
        overrides["SCRIBE_FAST_FAIL_ON_FATAL"] = True
    return dataclasses.replace(cfg, **overrides) if overrides else cfg


def exit_code_for(result: AggregateResult) -> int:
    if result.status == "ok":
        return EXIT_OK
    if result.status == "cancelled":
        return EXIT_CANCELLED
    return EXIT_PARTIAL


async def _run(path: Path, cfg: PipelineConfig, quiet: bool) -> AggregateResult:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted")
    except (NotImplementedError, RuntimeError):
        # No signal support on this platform/loop; Ctrl-C falls back to KeyboardInterrupt.
        pass

    def _on_job(job: TranscriptionJob) -> None:
        if not quiet:
            job.tracker.add_listener(_print_event)

    try:
        return await transcribe_wav_file(path, cfg, token=token, on_job=_on_job)
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Transcribe a WAV file in concurrent chunks against the configured ASR provider."
    )
    parser.add_argument("path", help="Path to a PCM WAV file.")
    parser.add_argument("--provider", choices=["mock", "openai_http"], default=None)
    parser.add_argument("--chunk-seconds", type=float, default=None)
    parser.add_argument("--overlap-seconds", type=float, default=None)
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--deadline-seconds", type=float, default=None)
    parser.add_argument(
        "--fast-fail",
        action="store_true",
        help="Stop scheduling remaining chunks after the first fatal error.",
    )
    parser.add_argument("--quiet", action="store_true", help="Do not print per-chunk status to stderr.")
    args = parser.parse_args(argv)

    path = Path(args.path).expanduser()
    if not path.exists():
        raise SystemExit(f"audio file not found: {path}")

    cfg = _apply_overrides(load_config(), args)
    configure_logging(cfg.SCRIBE_LOG_LEVEL)

    result = asyncio.run(_run(path, cfg, args.quiet))
    print(result.model_dump_json(indent=2))
    if result.status == "partial_failure" and not args.quiet:
        print(result.meta.get("partial_text", ""), file=sys.stderr)
    return exit_code_for(result)


if __name__ == "__main__":
    raise SystemExit(main())
