from __future__ import annotations

import copy
import threading
import time
import uuid
from typing import Any, Callable, Protocol

from .models import (
    SETTLED_STATUSES,
    CompletionStatus,
    Escalation,
    Plan,
    RetryRecord,
    Session,
    SessionSnapshot,
    Step,
    StepStatus,
    VerificationStatus,
)


class PlanValidationError(ValueError):
    """Malformed planning call. Raised before any state is touched."""


class PlanEvent:
    PLAN_CREATED = "plan_created"
    STEP_UPDATED = "step_updated"
    PLAN_MODIFIED = "plan_modified"
    PLAN_COMPLETED = "plan_completed"


class Observer(Protocol):
    def __call__(self, event_type: str, payload: dict[str, Any]) -> None: ...


def _now_ts() -> float:
    return time.time()


def _new_session_id() -> str:
    return f"ses_{uuid.uuid4().hex}"


class SessionStore:
    """Single-writer store for one conversation's plan, retry ledger and notes.

    Every mutation runs under one re-entrant lock and publishes a notification
    while still holding it, so observers see events in mutation order. Readers
    only ever get deep copies.
    """

    def __init__(self, *, session_id: str | None = None, enforce_dependencies: bool = True) -> None:
        self._lock = threading.RLock()
        self._session = Session(session_id=session_id or _new_session_id(), created_at=_now_ts())
        self._enforce_dependencies = enforce_dependencies
        self._observers: list[Observer] = []
        self._observer_errors: list[str] = []
        self._completion_signature: str | None = None

    @property
    def session_id(self) -> str:
        return self._session.session_id

    @property
    def observer_errors(self) -> list[str]:
        with self._lock:
            return list(self._observer_errors)

    # ---- observers -------------------------------------------------------

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        with self._lock:
            self._observers.append(observer)

        def _unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return _unsubscribe

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._publish(event_type, payload)

    def _publish(self, event_type: str, payload: dict[str, Any]) -> None:
        body = {"session_id": self._session.session_id, "ts": _now_ts(), **payload}
        for observer in list(self._observers):
            try:
                observer(event_type, copy.deepcopy(body))
            except Exception as e:
                # Observers are passive; a broken one must not undo a committed mutation.
                self._observer_errors.append(f"{event_type}: {type(e).__name__}: {e}")

    # ---- reads -----------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            s = self._session
            return SessionSnapshot(
                session_id=s.session_id,
                created_at=s.created_at,
                plan=copy.deepcopy(s.plan),
                retry_records=tuple(s.retry_records),
                notes=copy.deepcopy(s.notes),
                escalation=s.escalation,
                guidance=tuple(s.guidance),
            )

    def get_step(self, step_number: int) -> Step | None:
        with self._lock:
            plan = self._session.plan
            if plan is None:
                return None
            step = plan.get_step(step_number)
            return copy.deepcopy(step) if step is not None else None

    def retry_count(self, step_number: int) -> int:
        with self._lock:
            return sum(
                1 for r in self._session.retry_records if r.step_number == step_number and r.budgeted
            )

    def progress(self) -> dict[str, int]:
        return self.snapshot().progress

    def next_ready_step(self) -> Step | None:
        """First Pending step (plan order) whose prerequisites are settled."""
        with self._lock:
            plan = self._session.plan
            if plan is None or not plan.is_active:
                return None
            for step in plan.steps:
                if step.status != StepStatus.PENDING:
                    continue
                if self._enforce_dependencies and self._blocking_prerequisites(plan, step):
                    continue
                return copy.deepcopy(step)
            return None

    # ---- plan lifecycle --------------------------------------------------

    def create_plan(
        self,
        goal: str,
        steps: list[Step],
        *,
        verification_approach: str | None = None,
        rollback_strategy: str | None = None,
        estimated_tool_calls: int | None = None,
    ) -> Plan:
        goal = (goal or "").strip()
        if not goal:
            raise PlanValidationError("goal is required.")
        if not steps:
            raise PlanValidationError("A plan needs at least one step.")

        seen: set[int] = set()
        dupes: set[int] = set()
        for s in steps:
            if s.step_number in seen:
                dupes.add(s.step_number)
            seen.add(s.step_number)
        if dupes:
            raise PlanValidationError(f"Duplicate step_number(s): {sorted(dupes)}")
        for s in steps:
            if s.step_number < 1:
                # 0 is the plan-level notes key.
                raise PlanValidationError(f"Step {s.step_number}: step_number must be 1 or greater.")
            if not (s.description or "").strip():
                raise PlanValidationError(f"Step {s.step_number}: description is required.")
            unknown = sorted(set(s.depends_on) - seen)
            if unknown:
                raise PlanValidationError(
                    f"Step {s.step_number}: depends_on references unknown step(s) {unknown}"
                )
            if s.step_number in s.depends_on:
                raise PlanValidationError(f"Step {s.step_number}: a step cannot depend on itself.")

        fresh: list[Step] = []
        for s in steps:
            fresh.append(
                Step(
                    step_number=s.step_number,
                    description=s.description.strip(),
                    tools_to_use=list(s.tools_to_use),
                    success_criteria=s.success_criteria,
                    depends_on=sorted(set(s.depends_on)),
                    is_verification=bool(s.is_verification),
                )
            )

        with self._lock:
            self._session.plan = Plan(
                goal=goal,
                steps=fresh,
                created_at=_now_ts(),
                verification_approach=verification_approach,
                rollback_strategy=rollback_strategy,
                estimated_tool_calls=estimated_tool_calls,
            )
            self._session.retry_records = []
            self._session.notes = {}
            self._session.escalation = None
            self._session.guidance = []
            self._completion_signature = None
            self._publish(PlanEvent.PLAN_CREATED, {"plan": self._session.plan.to_dict()})
            return copy.deepcopy(self._session.plan)

    def start_step(self, step_number: int) -> Step:
        with self._lock:
            plan = self._require_active_plan()
            step = self._require_step(plan, step_number)
            if step.status != StepStatus.PENDING:
                raise PlanValidationError(
                    f"Step {step_number} cannot start from status {step.status.value}."
                )
            if self._enforce_dependencies:
                blocking = self._blocking_prerequisites(plan, step)
                if blocking:
                    raise PlanValidationError(
                        f"Step {step_number} is blocked by unfinished prerequisite step(s) {blocking}."
                    )
            step.status = StepStatus.IN_PROGRESS
            step.started_at = _now_ts()
            return self._step_updated(plan, step, "start_step")

    def complete_step(self, step_number: int, result: str | None = None) -> Step:
        with self._lock:
            plan = self._require_active_plan()
            step = self._require_step(plan, step_number)
            if step.status != StepStatus.IN_PROGRESS:
                raise PlanValidationError(
                    f"Step {step_number} cannot complete from status {step.status.value}."
                )
            step.status = StepStatus.COMPLETED
            step.result = result
            step.completed_at = _now_ts()
            return self._step_updated(plan, step, "complete_step")

    def fail_step(self, step_number: int, reason: str | None = None) -> Step:
        with self._lock:
            plan = self._require_active_plan()
            step = self._require_step(plan, step_number)
            if step.status != StepStatus.IN_PROGRESS:
                raise PlanValidationError(
                    f"Step {step_number} cannot fail from status {step.status.value}."
                )
            step.status = StepStatus.FAILED
            step.failure_reason = reason
            step.completed_at = _now_ts()
            return self._step_updated(plan, step, "fail_step")

    def skip_step(self, step_number: int, reason: str | None = None) -> Step:
        with self._lock:
            plan = self._require_active_plan()
            step = self._require_step(plan, step_number)
            step.status = StepStatus.SKIPPED
            step.failure_reason = reason
            step.completed_at = _now_ts()
            return self._step_updated(plan, step, "skip_step")

    def add_step(self, description: str, *, after_step: int | None = None) -> Step:
        description = (description or "").strip()
        if not description:
            raise PlanValidationError("new_step.description is required.")
        with self._lock:
            plan = self._require_active_plan()
            if after_step is not None:
                self._require_step(plan, after_step)
            new_number = max((s.step_number for s in plan.steps), default=0) + 1
            step = Step(step_number=new_number, description=description)
            if after_step is None:
                plan.steps.append(step)
            else:
                idx = next(i for i, s in enumerate(plan.steps) if s.step_number == after_step)
                plan.steps.insert(idx + 1, step)
            self._publish(
                PlanEvent.PLAN_MODIFIED,
                {
                    "action": "add_step",
                    "step": step.to_dict(),
                    "after_step": after_step,
                    "progress": plan.progress_counts(),
                },
            )
            return copy.deepcopy(step)

    def add_note(self, text: str, *, step_number: int | None = None) -> None:
        text = (text or "").strip()
        if not text:
            raise PlanValidationError("note text is required.")
        with self._lock:
            plan = self._require_active_plan()
            key = 0
            if step_number is not None:
                self._require_step(plan, step_number)
                key = step_number
            self._session.notes.setdefault(key, []).append(text)
            self._publish(PlanEvent.PLAN_MODIFIED, {"action": "note", "step_number": key, "note": text})

    def record_verification(
        self,
        step_number: int,
        status: VerificationStatus,
        *,
        observations: str | None = None,
        issues: str | None = None,
    ) -> Step:
        with self._lock:
            plan = self._require_active_plan()
            step = self._require_step(plan, step_number)
            step.verification_status = status
            step.verification_observations = observations
            step.verification_issues = issues
            step.verified_at = _now_ts()
            return self._step_updated(plan, step, "record_verification")

    def complete_plan(
        self,
        status: CompletionStatus,
        *,
        signature: str,
        render_report: Callable[[Plan], str],
        summary: str,
        issues_encountered: list[str],
        elements_created: list[int],
        elements_modified: list[int],
        recommendations: str | None,
    ) -> str:
        """Finish the plan; an identical repeat call returns the stored report untouched."""
        with self._lock:
            plan = self._session.plan
            if plan is None:
                raise PlanValidationError("No active plan.")
            if plan.completion_status is not None:
                if signature == self._completion_signature and plan.report is not None:
                    return plan.report
                raise PlanValidationError(
                    f"Plan already finished with status {plan.completion_status.value}."
                )

            staged = copy.deepcopy(plan)
            staged.completion_status = status
            staged.completed_at = _now_ts()
            staged.summary = summary
            staged.issues_encountered = list(issues_encountered)
            staged.elements_created = _ordered_unique(elements_created)
            staged.elements_modified = _ordered_unique(elements_modified)
            staged.recommendations = recommendations
            staged.report = render_report(staged)

            self._session.plan = staged
            self._session.escalation = None
            self._completion_signature = signature
            self._publish(PlanEvent.PLAN_COMPLETED, {"plan": staged.to_dict()})
            return staged.report

    def cancel_plan(self, reason: str = "cancel_requested") -> bool:
        """Mark the plan Cancelled. Steps keep their current status."""
        with self._lock:
            plan = self._session.plan
            if plan is None or plan.completion_status is not None:
                return False
            plan.completion_status = CompletionStatus.CANCELLED
            plan.completed_at = _now_ts()
            plan.summary = reason
            self._session.escalation = None
            self._publish(
                PlanEvent.PLAN_COMPLETED,
                {"plan": plan.to_dict(), "reason": reason},
            )
            return True

    def reset(self) -> None:
        """Forget the plan, ledger and notes (new conversation)."""
        with self._lock:
            self._session = Session(session_id=self._session.session_id, created_at=_now_ts())
            self._completion_signature = None
            self._publish("session_reset", {})

    # ---- retry ledger / escalation --------------------------------------

    def record_retry(
        self,
        step_number: int,
        *,
        error: str,
        suggested_modification: str | None,
        tool_name: str = "",
        strategy: str = "",
        budgeted: bool = True,
    ) -> RetryRecord:
        with self._lock:
            attempt = 1 + sum(1 for r in self._session.retry_records if r.step_number == step_number)
            record = RetryRecord(
                step_number=step_number,
                attempt=attempt,
                error=error,
                suggested_modification=suggested_modification,
                created_at=_now_ts(),
                tool_name=tool_name,
                strategy=strategy,
                budgeted=budgeted,
            )
            self._session.retry_records.append(record)
            self._publish("retry_recorded", {"record": record.to_dict()})
            return record

    def set_escalation(self, escalation: Escalation) -> None:
        with self._lock:
            self._require_active_plan()
            self._session.escalation = escalation
            self._publish("escalation_raised", {"escalation": escalation.to_dict()})

    def clear_escalation(self) -> Escalation | None:
        with self._lock:
            current = self._session.escalation
            self._session.escalation = None
            return current

    def add_guidance(self, text: str) -> None:
        with self._lock:
            self._session.guidance.append(text)
            self._publish("guidance_received", {"guidance": text})

    # ---- internals -------------------------------------------------------

    def _require_active_plan(self) -> Plan:
        plan = self._session.plan
        if plan is None:
            raise PlanValidationError("No active plan. Call create_plan first.")
        if plan.completion_status is not None:
            raise PlanValidationError(f"Plan is already {plan.completion_status.value}.")
        return plan

    def _require_step(self, plan: Plan, step_number: int | None) -> Step:
        if step_number is None:
            raise PlanValidationError("step_number is required.")
        step = plan.get_step(step_number)
        if step is None:
            known = [s.step_number for s in plan.steps]
            raise PlanValidationError(f"Step {step_number} does not exist. Known steps: {known}")
        return step

    def _blocking_prerequisites(self, plan: Plan, step: Step) -> list[int]:
        blocking: list[int] = []
        for n in step.depends_on:
            prereq = plan.get_step(n)
            if prereq is None or prereq.status not in SETTLED_STATUSES:
                blocking.append(n)
        return blocking

    def _step_updated(self, plan: Plan, step: Step, action: str) -> Step:
        self._publish(
            PlanEvent.STEP_UPDATED,
            {"action": action, "step": step.to_dict(), "progress": plan.progress_counts()},
        )
        return copy.deepcopy(step)


def _ordered_unique(values: list[int]) -> list[int]:
    seen: set[int] = set()
    out: list[int] = []
    for v in values:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out
