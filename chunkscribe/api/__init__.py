"""
HTTP boundary for chunkscribe.

Design intent:
- Expose thin, typed endpoints to start, watch and cancel transcription jobs.
- Keep request validation explicit and failure modes predictable.
- Orchestrate internal_core without embedding pipeline logic in routers.
"""
