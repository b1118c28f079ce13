"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface that a caller can use to:
- open conversations (sessions) and drive their plans through the planning calls
- run a plan on a background worker with dry-run capabilities, and answer escalations
- read progress snapshots and the trace journal

The API is intentionally thin: core behavior lives in `planloop/runtime` and `planloop/agents`.
"""
