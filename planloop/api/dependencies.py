from __future__ import annotations

from fastapi import Request

from planloop.api.errors import APIError
from planloop.runtime.sessions import SessionNotFoundError, SessionRegistry, SessionRuntime
from planloop.storage.sqlite_store import EventJournal


def get_sessions(request: Request) -> SessionRegistry:
    """FastAPI dependency: the process-wide SessionRegistry created in the app lifespan."""
    sessions = getattr(request.app.state, "sessions", None)
    if not isinstance(sessions, SessionRegistry):
        raise APIError(status_code=503, code="unavailable", message="Session registry is not initialized.")
    return sessions


def get_session(session_id: str, request: Request) -> SessionRuntime:
    try:
        return get_sessions(request).get(session_id)
    except SessionNotFoundError as e:
        raise APIError(status_code=404, code="not_found", message="Session not found.") from e


def get_journal(request: Request) -> EventJournal:
    journal = get_sessions(request).journal
    if journal is None:
        raise APIError(status_code=409, code="conflict", message="Event journal is disabled (journal.enabled = false).")
    return journal
