"""Runtime orchestration (sessions, background execution).

This layer is responsible for:
- keeping one SessionStore per conversation
- driving a session's plan on a background PlanWorker thread
- mirroring trace events into the SQLite journal

It should remain independent from the HTTP layer (`planloop/api`), so both CLI and
API can reuse the same execution logic.
"""
