"""
chunkscribe package.

Design intent:
- Split long recordings into bounded chunks and transcribe them concurrently
  against a remote speech-to-text service.
- Keep the pipeline (internal_core) independent from the HTTP surface (api)
  and the command-line entry point (scripts).
"""
