from __future__ import annotations

import io
import math
import uuid
import wave
from pathlib import Path
from typing import List, Protocol, Tuple

from .contracts import AudioChunk


ALLOWED_UPLOAD_EXTS = {".wav"}

class PlanningError(ValueError):
    code = "PLANNING_ERROR"


class EmptyInputError(PlanningError):
    code = "EMPTY_INPUT"


class InvalidChunkConfigError(PlanningError):
    code = "INVALID_CONFIG"


def validate_chunk_config(chunk_duration_sec: float, overlap_sec: float) -> None:
    if chunk_duration_sec <= 0:
        raise InvalidChunkConfigError("chunk_duration_sec must be > 0")
    if overlap_sec < 0:
        raise InvalidChunkConfigError("overlap_sec must be >= 0")
    if overlap_sec >= chunk_duration_sec:
        raise InvalidChunkConfigError("overlap_sec must be < chunk_duration_sec")


def plan_chunks(
    duration_sec: float,
    chunk_duration_sec: float = 45.0,
    overlap_sec: float = 0.0,
) -> List[AudioChunk]:
    """
    Split [0, duration_sec] into ceil(D / C) chunks.

    Chunk i covers [max(0, i*C - O), min(D, (i+1)*C)]: each chunk reaches back
    into its predecessor by the overlap, so adjacent chunks never leave a gap.
    A duration that fits in one chunk yields the single chunk [0, D].
    """
    validate_chunk_config(chunk_duration_sec, overlap_sec)
    if duration_sec <= 0:
        raise EmptyInputError("audio duration must be > 0")

    if duration_sec <= chunk_duration_sec:
        return [AudioChunk(index=0, start_sec=0.0, end_sec=float(duration_sec))]

    count = max(1, math.ceil(duration_sec / chunk_duration_sec))
    # Float noise in D / C must not produce an empty trailing chunk.
    if count > 1 and (count - 1) * chunk_duration_sec >= duration_sec:
        count -= 1
    chunks: List[AudioChunk] = []
    for i in range(count):
        start = max(0.0, i * chunk_duration_sec - overlap_sec)
        end = min(float(duration_sec), (i + 1) * chunk_duration_sec)
        if i == count - 1:
            end = float(duration_sec)
        chunks.append(AudioChunk(index=i, start_sec=float(start), end_sec=float(end)))
    return chunks


def needs_chunking(duration_sec: float, chunk_duration_sec: float) -> bool:
    return duration_sec > chunk_duration_sec


class AudioSource(Protocol):
    @property
    def duration_sec(self) -> float: ...

    def read_range(self, start_sec: float, end_sec: float) -> bytes: ...


def load_wav_info(path: Path) -> Tuple[float, int, int]:
    with wave.open(str(path), "rb") as wf:
        frames = wf.getnframes()
        rate = wf.getframerate()
        channels = wf.getnchannels()
        duration = frames / float(rate) if rate else 0.0
        return duration, rate, channels


def _read_wav_range(wf: wave.Wave_read, start_sec: float, end_sec: float) -> bytes:
    nchannels = wf.getnchannels()
    sampwidth = wf.getsampwidth()
    framerate = wf.getframerate()
    nframes = wf.getnframes()

    start_frame = max(0, min(nframes, int(round(start_sec * framerate))))
    end_frame = max(start_frame, min(nframes, int(round(end_sec * framerate))))
    wf.setpos(start_frame)
    raw = wf.readframes(end_frame - start_frame)

    buf = io.BytesIO()
    with wave.open(buf, "wb") as out_wf:
        out_wf.setnchannels(nchannels)
        out_wf.setsampwidth(sampwidth)
        out_wf.setframerate(framerate)
        out_wf.writeframes(raw)
    return buf.getvalue()


class WavFileSource:
    """Byte-range access to a PCM WAV file on disk."""

    def __init__(self, path: Path):
        self.path = Path(path)
        if not self.path.exists():
            raise ValueError(f"Audio file not found: {self.path}")
        self._duration_sec, self.sample_rate, self.channels = load_wav_info(self.path)

    @property
    def duration_sec(self) -> float:
        return self._duration_sec

    def read_range(self, start_sec: float, end_sec: float) -> bytes:
        with wave.open(str(self.path), "rb") as wf:
            return _read_wav_range(wf, start_sec, end_sec)


class WavBytesSource:
    """Same as WavFileSource, for a WAV payload already held in memory."""

    def __init__(self, data: bytes):
        self._data = bytes(data)
        try:
            with wave.open(io.BytesIO(self._data), "rb") as wf:
                rate = wf.getframerate()
                self._duration_sec = wf.getnframes() / float(rate) if rate else 0.0
                self.sample_rate = rate
                self.channels = wf.getnchannels()
        except (wave.Error, EOFError) as e:
            raise ValueError(f"Invalid WAV payload: {e}")

    @property
    def duration_sec(self) -> float:
        return self._duration_sec

    def read_range(self, start_sec: float, end_sec: float) -> bytes:
        with wave.open(io.BytesIO(self._data), "rb") as wf:
            return _read_wav_range(wf, start_sec, end_sec)


def silence_wav_bytes(duration_sec: float, sample_rate: int = 16000) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(b"\x00\x00" * int(duration_sec * sample_rate))
    return buf.getvalue()


def enforce_max_duration(duration_sec: float, max_allowed: float) -> None:
    if duration_sec > max_allowed:
        raise ValueError(
            f"Audio too long ({duration_sec:.1f}s), max allowed is {max_allowed:.1f}s"
        )


def enforce_max_size_bytes(size: int, max_bytes: int) -> None:
    if size > max_bytes:
        raise ValueError(
            f"Audio payload too large ({size / (1024 * 1024):.1f}MB), "
            f"max allowed is {max_bytes / (1024 * 1024):.1f}MB"
        )


def safe_save_upload(
    data: bytes, filename: str, tmp_dir: Path, max_bytes: int = 200 * 1024 * 1024
) -> Path:
    ext = Path(filename or "").suffix.lower()
    if ext not in ALLOWED_UPLOAD_EXTS:
        raise ValueError(f"Unsupported upload type: {ext or '(none)'}. Only WAV is allowed.")
    enforce_max_size_bytes(len(data), max_bytes)

    tmp_dir.mkdir(parents=True, exist_ok=True)
    out_path = tmp_dir / f"upload_{uuid.uuid4().hex}{ext}"
    with open(out_path, "wb") as f:
        f.write(data)

    try:
        with wave.open(str(out_path), "rb"):
            pass
    except (wave.Error, EOFError) as e:
        out_path.unlink(missing_ok=True)
        raise ValueError(f"Invalid WAV payload: {e}")
    return out_path
