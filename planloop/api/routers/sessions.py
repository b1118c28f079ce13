from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from planloop.agents.planning import CompletePlanRequest, CreatePlanRequest, UpdatePlanRequest
from planloop.agents.scripted import ScriptedActionSource
from planloop.api.dependencies import get_journal, get_session, get_sessions
from planloop.api.errors import APIError
from planloop.api.pagination import Cursor, CursorError, decode_cursor, encode_cursor
from planloop.engine.verification import VerificationReport
from planloop.runtime.sessions import SessionRegistry, SessionRuntime
from planloop.runtime.worker import PlanWorker
from planloop.storage.sqlite_store import EventJournal
from planloop.tools.echo import build_echo_registry


router = APIRouter()


class CancelPlanRequest(BaseModel):
    reason: str = Field(default="cancelled_by_user", min_length=1)


class ActionInput(BaseModel):
    action_name: str = Field(min_length=1)
    tool_input: dict[str, Any] = Field(default_factory=dict)


class CapabilityInput(BaseModel):
    name: str = Field(min_length=1)
    mutating: bool = True


class VerdictInput(BaseModel):
    approved: bool
    issues: str | None = None
    observations: str | None = None


class ExecutePlanRequest(BaseModel):
    """Dry-run execution: every capability is served by the echo provider."""

    actions: dict[int, list[ActionInput]] = Field(default_factory=dict)
    # Defaults to every action name in `actions` (and every step's tools_to_use), mutating.
    capabilities: list[CapabilityInput] = Field(default_factory=list)
    # action_name -> errors returned by the next calls, in order.
    failures: dict[str, list[str]] = Field(default_factory=dict)
    verdicts: dict[int, list[VerdictInput]] = Field(default_factory=dict)
    wait: bool = False
    wait_timeout_s: float = Field(default=10.0, ge=0, le=120)


class ResumeRequest(BaseModel):
    reply: str = Field(min_length=1)
    wait: bool = False
    wait_timeout_s: float = Field(default=10.0, ge=0, le=120)


def _session_body(runtime: SessionRuntime, **extra: Any) -> dict[str, Any]:
    body = runtime.status_snapshot()
    body.update(extra)
    return body


def _worker_body(runtime: SessionRuntime, worker: PlanWorker, *, wait: bool, timeout_s: float) -> dict[str, Any]:
    if wait:
        worker.wait(timeout_s=timeout_s)
    return _session_body(runtime)


@router.post("/sessions")
def create_session(sessions: SessionRegistry = Depends(get_sessions)) -> dict[str, Any]:
    runtime = sessions.create()
    return _session_body(runtime)


@router.get("/sessions")
def list_sessions(sessions: SessionRegistry = Depends(get_sessions)) -> dict[str, Any]:
    items = []
    for sid in sessions.list_ids():
        snap = sessions.get(sid).store.snapshot()
        items.append(
            {
                "session_id": sid,
                "created_at": snap.created_at,
                "goal": snap.plan.goal if snap.plan else None,
                "progress": snap.progress,
                "awaiting_human": snap.escalation is not None,
            }
        )
    return {"items": items}


@router.get("/sessions/{session_id}")
def get_session_status(runtime: SessionRuntime = Depends(get_session)) -> dict[str, Any]:
    return _session_body(runtime)


@router.delete("/sessions/{session_id}")
def reset_session(
    session_id: str,
    sessions: SessionRegistry = Depends(get_sessions),
    runtime: SessionRuntime = Depends(get_session),
) -> dict[str, Any]:
    sessions.reset(session_id)
    return _session_body(runtime)


@router.post("/sessions/{session_id}/plan")
def create_plan(req: CreatePlanRequest, runtime: SessionRuntime = Depends(get_session)) -> dict[str, Any]:
    if runtime.busy:
        raise APIError(status_code=409, code="conflict", message="Plan is executing; cancel it first.")
    message = runtime.planning.create_plan(req)
    runtime.changes.reset()
    return _session_body(runtime, message=message)


@router.post("/sessions/{session_id}/plan/update")
def update_plan(req: UpdatePlanRequest, runtime: SessionRuntime = Depends(get_session)) -> dict[str, Any]:
    message = runtime.planning.update_plan(req)
    return _session_body(runtime, message=message)


@router.post("/sessions/{session_id}/plan/complete")
def complete_plan(req: CompletePlanRequest, runtime: SessionRuntime = Depends(get_session)) -> dict[str, Any]:
    report = runtime.planning.complete_plan(req)
    return _session_body(runtime, report=report)


@router.post("/sessions/{session_id}/plan/cancel")
def cancel_plan(
    session_id: str,
    req: CancelPlanRequest | None = None,
    sessions: SessionRegistry = Depends(get_sessions),
    runtime: SessionRuntime = Depends(get_session),
) -> dict[str, Any]:
    reason = req.reason if req is not None else "cancelled_by_user"
    cancelled = sessions.cancel(session_id, reason=reason)
    return _session_body(runtime, cancelled=cancelled)


@router.post("/sessions/{session_id}/execute")
def execute_plan(
    session_id: str,
    req: ExecutePlanRequest,
    sessions: SessionRegistry = Depends(get_sessions),
    runtime: SessionRuntime = Depends(get_session),
) -> dict[str, Any]:
    capabilities: dict[str, bool] = {c.name: c.mutating for c in req.capabilities}
    if not capabilities:
        plan = runtime.store.snapshot().plan
        names: list[str] = []
        for items in req.actions.values():
            names.extend(a.action_name for a in items)
        if plan is not None:
            for step in plan.steps:
                names.extend(step.tools_to_use)
        capabilities = {n: True for n in dict.fromkeys(names)}

    registry, _echo = build_echo_registry(capabilities, failures=req.failures)
    source = ScriptedActionSource(
        {n: [a.model_dump() for a in items] for n, items in req.actions.items()},
        verdicts={
            n: [VerificationReport(approved=v.approved, issues=v.issues, observations=v.observations) for v in items]
            for n, items in req.verdicts.items()
        },
    )
    worker = sessions.start_execution(session_id, registry=registry, source=source)
    return _worker_body(runtime, worker, wait=req.wait, timeout_s=req.wait_timeout_s)


@router.post("/sessions/{session_id}/resume")
def resume_plan(
    session_id: str,
    req: ResumeRequest,
    sessions: SessionRegistry = Depends(get_sessions),
    runtime: SessionRuntime = Depends(get_session),
) -> dict[str, Any]:
    worker = sessions.resume_execution(session_id, req.reply)
    return _worker_body(runtime, worker, wait=req.wait, timeout_s=req.wait_timeout_s)


@router.get("/sessions/{session_id}/events")
def list_session_events(
    limit: int = Query(default=100, ge=1, le=500),
    cursor: str | None = Query(default=None),
    event_type: list[str] | None = Query(default=None),
    include_payload: bool = Query(default=True),
    runtime: SessionRuntime = Depends(get_session),
    journal: EventJournal = Depends(get_journal),
) -> dict[str, Any]:
    cursor_obj: Cursor | None = None
    if cursor:
        try:
            cursor_obj = decode_cursor(cursor)
        except CursorError as e:
            raise APIError(status_code=400, code="invalid_argument", message=str(e)) from e

    page = journal.list_events_page(
        session_id=runtime.session_id,
        limit=int(limit),
        cursor=cursor_obj.seq if cursor_obj is not None else None,
        event_types=event_type or None,
        include_payload=bool(include_payload),
    )
    next_cursor = page.get("next_cursor")
    if next_cursor is not None:
        created_at, seq = next_cursor
        page["next_cursor"] = encode_cursor(Cursor(created_at=float(created_at), seq=int(seq)))
    return page
