from __future__ import annotations

import json
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError

from planloop.plan.models import CompletionStatus, Plan, Step
from planloop.plan.store import PlanValidationError, SessionStore


class StepInput(BaseModel):
    step_number: int = Field(ge=1)
    description: str = Field(min_length=1)
    tools_to_use: list[str] = Field(default_factory=list)
    success_criteria: str | None = None
    depends_on: list[int] = Field(default_factory=list)
    is_verification: bool = False


class CreatePlanRequest(BaseModel):
    goal: str = Field(min_length=1)
    steps: list[StepInput]
    verification_approach: str | None = None
    estimated_tool_calls: int | None = Field(default=None, ge=0)
    rollback_strategy: str | None = None


class NewStepInput(BaseModel):
    description: str = Field(min_length=1)
    after_step: int | None = None


class UpdatePlanRequest(BaseModel):
    action: str
    step_number: int | None = None
    result: str | None = None
    reason: str | None = None
    new_step: NewStepInput | None = None
    note: str | None = None


class CompletePlanRequest(BaseModel):
    status: Literal["success", "partial_success", "failed"]
    summary: str
    steps_completed: int | None = Field(default=None, ge=0)
    steps_failed: int | None = Field(default=None, ge=0)
    steps_skipped: int | None = Field(default=None, ge=0)
    issues_encountered: list[str] = Field(default_factory=list)
    elements_created: list[int] = Field(default_factory=list)
    elements_modified: list[int] = Field(default_factory=list)
    recommendations: str | None = None


UPDATE_ACTIONS = ("start_step", "complete_step", "fail_step", "skip_step", "add_step", "note")

_STATUS_TITLES = {
    CompletionStatus.SUCCESS: "Completed Successfully",
    CompletionStatus.PARTIAL_SUCCESS: "Partially Completed",
    CompletionStatus.FAILED: "Failed",
    CompletionStatus.CANCELLED: "Cancelled",
}

_M = TypeVar("_M", bound=BaseModel)


def _coerce(model: type[_M], value: _M | dict[str, Any]) -> _M:
    if isinstance(value, model):
        return value
    try:
        return model.model_validate(value)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise PlanValidationError(f"Invalid {model.__name__}: {fields}") from e


def _progress_line(plan: Plan) -> str:
    c = plan.progress_counts()
    return (
        f"Progress: {c['completed']}/{c['total']} completed, {c['failed']} failed, "
        f"{c['skipped']} skipped, {c['in_progress']} in progress"
    )


def _format_step_line(step: Step) -> str:
    parts = [f"  {step.step_number}. {step.description}"]
    if step.is_verification:
        parts.append("(verification)")
    if step.tools_to_use:
        parts.append(f"[tools: {', '.join(step.tools_to_use)}]")
    if step.depends_on:
        parts.append(f"[after: {', '.join(str(n) for n in step.depends_on)}]")
    return " ".join(parts)


class PlanningInterface:
    """create_plan / update_plan / complete_plan over a SessionStore.

    Every call either fully applies or raises PlanValidationError with nothing
    changed. Return values are short text summaries meant for the caller's
    conversation.
    """

    def __init__(self, store: SessionStore) -> None:
        self._store = store

    @property
    def store(self) -> SessionStore:
        return self._store

    def create_plan(self, request: CreatePlanRequest | dict[str, Any]) -> str:
        req = _coerce(CreatePlanRequest, request)
        steps = [
            Step(
                step_number=s.step_number,
                description=s.description,
                tools_to_use=list(s.tools_to_use),
                success_criteria=s.success_criteria,
                depends_on=list(s.depends_on),
                is_verification=s.is_verification,
            )
            for s in req.steps
        ]
        plan = self._store.create_plan(
            req.goal,
            steps,
            verification_approach=req.verification_approach,
            rollback_strategy=req.rollback_strategy,
            estimated_tool_calls=req.estimated_tool_calls,
        )

        lines = [f"Plan created: {plan.goal}", f"Steps ({len(plan.steps)}):"]
        lines.extend(_format_step_line(s) for s in plan.steps)
        if plan.verification_approach:
            lines.append(f"Verification approach: {plan.verification_approach}")
        if plan.rollback_strategy:
            lines.append(f"Rollback strategy: {plan.rollback_strategy}")
        if plan.estimated_tool_calls is not None:
            lines.append(f"Estimated tool calls: {plan.estimated_tool_calls}")
        return "\n".join(lines)

    def update_plan(self, request: UpdatePlanRequest | dict[str, Any]) -> str:
        req = _coerce(UpdatePlanRequest, request)
        action = (req.action or "").strip()
        if action not in UPDATE_ACTIONS:
            raise PlanValidationError(f"Unknown action {req.action!r}. Expected one of: {', '.join(UPDATE_ACTIONS)}")

        if action == "start_step":
            step = self._store.start_step(self._require_number(req))
            head = f"Step {step.step_number} started: {step.description}"
        elif action == "complete_step":
            step = self._store.complete_step(self._require_number(req), result=req.result)
            head = f"Step {step.step_number} completed: {step.description}"
            if req.result:
                head += f"\nResult: {req.result}"
        elif action == "fail_step":
            step = self._store.fail_step(self._require_number(req), reason=req.reason)
            head = f"Step {step.step_number} failed: {step.description}"
            if req.reason:
                head += f"\nReason: {req.reason}"
        elif action == "skip_step":
            step = self._store.skip_step(self._require_number(req), reason=req.reason)
            head = f"Step {step.step_number} skipped: {step.description}"
            if req.reason:
                head += f"\nReason: {req.reason}"
        elif action == "add_step":
            if req.new_step is None:
                raise PlanValidationError("add_step requires new_step.")
            step = self._store.add_step(req.new_step.description, after_step=req.new_step.after_step)
            where = f" after step {req.new_step.after_step}" if req.new_step.after_step is not None else ""
            head = f"Step {step.step_number} added{where}: {step.description}"
        else:
            if not (req.note or "").strip():
                raise PlanValidationError("note requires note text.")
            self._store.add_note(req.note or "", step_number=req.step_number)
            target = f" on step {req.step_number}" if req.step_number is not None else ""
            head = f"Note recorded{target}."

        plan = self._store.snapshot().plan
        return f"{head}\n{_progress_line(plan)}" if plan is not None else head

    def complete_plan(self, request: CompletePlanRequest | dict[str, Any]) -> str:
        req = _coerce(CompletePlanRequest, request)
        status = CompletionStatus(req.status)
        signature = json.dumps(req.model_dump(), sort_keys=True, ensure_ascii=False)

        def _render(plan: Plan) -> str:
            return _render_report(plan, req)

        return self._store.complete_plan(
            status,
            signature=signature,
            render_report=_render,
            summary=req.summary,
            issues_encountered=list(req.issues_encountered),
            elements_created=list(req.elements_created),
            elements_modified=list(req.elements_modified),
            recommendations=req.recommendations,
        )

    def cancel_plan(self, reason: str = "cancelled_by_user") -> str:
        changed = self._store.cancel_plan(reason=reason)
        plan = self._store.snapshot().plan
        if plan is None:
            return "No plan to cancel."
        if not changed:
            status = plan.completion_status.value if plan.completion_status else "active"
            return f"Plan already {status}.\n{_progress_line(plan)}"
        return f"Plan cancelled: {plan.goal}\n{_progress_line(plan)}"

    def _require_number(self, req: UpdatePlanRequest) -> int:
        if req.step_number is None:
            raise PlanValidationError(f"{req.action} requires step_number.")
        return req.step_number


def _render_report(plan: Plan, req: CompletePlanRequest) -> str:
    counts = plan.progress_counts()
    completed = req.steps_completed if req.steps_completed is not None else counts["completed"]
    failed = req.steps_failed if req.steps_failed is not None else counts["failed"]
    skipped = req.steps_skipped if req.steps_skipped is not None else counts["skipped"]
    title = _STATUS_TITLES[plan.completion_status or CompletionStatus.SUCCESS]

    lines = [f"## Plan {title}: {plan.goal}", "", req.summary.strip() or "(no summary)", ""]
    lines.append(f"Steps: {completed} completed, {failed} failed, {skipped} skipped (of {counts['total']})")
    for step in plan.steps:
        mark = {
            "completed": "[x]",
            "failed": "[!]",
            "skipped": "[-]",
            "in_progress": "[~]",
            "pending": "[ ]",
        }[step.status.value]
        line = f"  {mark} {step.step_number}. {step.description}"
        if step.failure_reason and step.status.value in {"failed", "skipped"}:
            line += f" ({step.failure_reason})"
        lines.append(line)

    if plan.issues_encountered:
        lines.append("")
        lines.append("Issues encountered:")
        lines.extend(f"- {issue}" for issue in plan.issues_encountered)
    if plan.elements_created:
        lines.append("")
        lines.append(
            f"Elements created ({len(plan.elements_created)}): {', '.join(str(e) for e in plan.elements_created)}"
        )
    if plan.elements_modified:
        lines.append("")
        lines.append(
            f"Elements modified ({len(plan.elements_modified)}): {', '.join(str(e) for e in plan.elements_modified)}"
        )
    if plan.recommendations:
        lines.append("")
        lines.append(f"Recommendations: {plan.recommendations}")
    return "\n".join(lines)
