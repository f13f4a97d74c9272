from __future__ import annotations

import datetime as _dt
import logging
from typing import Optional

from .contracts import AuditEvent, AuditEventType
from .status_tracker import ChunkStatusTracker

logger = logging.getLogger("chunkscribe.audit")


def _ts_iso() -> str:
    return _dt.datetime.now(_dt.timezone.utc).isoformat()


def _sanitize_detail(detail: str) -> str:
    # IMPORTANT: Never include transcript text or audio bytes in detail.
    detail = (detail or "").replace("\n", " ").strip()
    if len(detail) > 200:
        detail = detail[:200] + "…"
    return detail


def log_event(
    tracker: Optional[ChunkStatusTracker],
    job_id: str,
    event_type: AuditEventType,
    code: str,
    detail: str,
    duration_ms: Optional[int] = None,
) -> AuditEvent:
    event = AuditEvent(
        ts_iso=_ts_iso(),
        job_id=job_id,
        type=event_type,
        code=code,
        detail=_sanitize_detail(detail),
        duration_ms=duration_ms,
    )
    if tracker is not None:
        tracker.append_audit_event(event)
    level = logging.WARNING if event_type in {"CHUNK_FAILED", "FAST_FAIL", "RATE_LIMITED"} else logging.INFO
    logger.log(
        level,
        "job_id=%s type=%s code=%s detail=%s duration_ms=%s",
        job_id,
        event_type,
        code,
        event.detail,
        duration_ms,
    )
    return event


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, str(level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
