from __future__ import annotations

from collections import deque
from typing import Any, Callable

from planloop.engine.dispatcher import ActionRequest
from planloop.engine.verification import VerificationReport
from planloop.plan.models import Step

from .types import ExecutionContext


class ScriptedActionSource:
    """Step action source driven by a fixed script.

    `actions` maps step_number -> list of {"action_name", "tool_input"} (or
    ActionRequest). `verdicts` maps step_number -> queued VerificationReports,
    consumed one per verification; when a step's queue is empty the step is
    approved. Used by the CLI, the HTTP dry-run executor and tests.
    """

    def __init__(
        self,
        actions: dict[int, list[Any]] | None = None,
        *,
        verdicts: dict[int, list[VerificationReport]] | None = None,
        on_verify: Callable[[Step, str], None] | None = None,
    ) -> None:
        self._actions: dict[int, list[ActionRequest]] = {}
        for step_number, items in (actions or {}).items():
            self._actions[int(step_number)] = [_as_request(int(step_number), x) for x in items]
        self._verdicts: dict[int, deque[VerificationReport]] = {
            int(k): deque(v) for k, v in (verdicts or {}).items()
        }
        self._on_verify = on_verify
        self.directives: list[tuple[int, str]] = []

    def action_names(self) -> list[str]:
        """Scripted action names in step order, first occurrence only."""
        names: list[str] = []
        for step_number in sorted(self._actions):
            names.extend(r.action_name for r in self._actions[step_number])
        return list(dict.fromkeys(names))

    def actions_for(self, step: Step, context: ExecutionContext) -> list[ActionRequest]:
        planned = self._actions.get(step.step_number)
        if planned is not None:
            return list(planned)
        # Fallback: one call per declared tool, with no input.
        return [ActionRequest(step_number=step.step_number, action_name=t) for t in step.tools_to_use]

    def verify(self, step: Step, directive: str, context: ExecutionContext) -> VerificationReport:
        self.directives.append((step.step_number, directive))
        if self._on_verify is not None:
            self._on_verify(step, directive)
        queued = self._verdicts.get(step.step_number)
        if queued:
            return queued.popleft()
        return VerificationReport(approved=True, observations="Scripted check passed.")


def _as_request(step_number: int, item: Any) -> ActionRequest:
    if isinstance(item, ActionRequest):
        return item
    if isinstance(item, str):
        return ActionRequest(step_number=step_number, action_name=item)
    if not isinstance(item, dict):
        raise ValueError(f"Step {step_number}: action must be a string or object, got {type(item).__name__}")
    name = str(item.get("action_name") or item.get("tool") or "").strip()
    if not name:
        raise ValueError(f"Step {step_number}: action_name is required.")
    tool_input = item.get("tool_input") or {}
    if not isinstance(tool_input, dict):
        raise ValueError(f"Step {step_number}: tool_input must be an object.")
    return ActionRequest(step_number=step_number, action_name=name, tool_input=dict(tool_input))
