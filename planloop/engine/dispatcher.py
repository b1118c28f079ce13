from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from planloop.plan.store import SessionStore
from planloop.tools.changes import ChangeTracker
from planloop.tools.registry import CapabilityRegistry, ToolResult
from planloop.tools.transactions import NullTransactions, TransactionCollaborator
from planloop.utils.cancel import CancellationToken, CancelledError
from planloop.utils.template import truncate_line

from .recovery import RecoveryAction, RecoveryEngine, RecoveryStrategy


@dataclass(frozen=True)
class ActionRequest:
    """One capability call on behalf of a plan step."""

    step_number: int
    action_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)


class DispatchKind(Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    ESCALATED = "escalated"
    CANCELLED = "cancelled"
    NOT_RUN = "not_run"


@dataclass(frozen=True)
class DispatchOutcome:
    kind: DispatchKind
    request: ActionRequest
    attempts: int
    result: ToolResult | None = None
    strategy: RecoveryStrategy | None = None
    message: str | None = None
    # Budgeted retries on the step when the terminal strategy was chosen.
    retry_count: int = 0
    # Guided call that succeeded before any retry was recorded against the guidance.
    guidance_pending: bool = False

    @property
    def succeeded(self) -> bool:
        return self.kind == DispatchKind.SUCCEEDED

    @property
    def needs_human_input(self) -> bool:
        return self.kind == DispatchKind.ESCALATED

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "step_number": self.request.step_number,
            "action_name": self.request.action_name,
            "attempts": self.attempts,
            "success": self.result.success if self.result is not None else None,
            "content": self.result.content if self.result is not None else None,
            "strategy": self.strategy.to_dict() if self.strategy is not None else None,
            "message": self.message,
            "retry_count": self.retry_count,
        }


def stopping_outcome(outcomes: list[DispatchOutcome]) -> DispatchOutcome | None:
    """The outcome that ended a batch early, or None when every request succeeded."""
    for outcome in outcomes:
        if outcome.kind not in {DispatchKind.SUCCEEDED, DispatchKind.NOT_RUN}:
            return outcome
    return None


InputAdjuster = Callable[[dict[str, Any], RecoveryStrategy], dict[str, Any]]


class CapabilityDispatcher:
    """Invoke -> classify -> record -> act, until success or a terminal strategy."""

    def __init__(
        self,
        *,
        store: SessionStore,
        registry: CapabilityRegistry,
        recovery: RecoveryEngine,
        transactions: TransactionCollaborator | None = None,
        changes: ChangeTracker | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._recovery = recovery
        self._transactions = transactions or NullTransactions()
        self._changes = changes

    def dispatch(
        self,
        request: ActionRequest,
        cancel: CancellationToken,
        *,
        adjust_input: InputAdjuster | None = None,
        guided: bool = False,
    ) -> DispatchOutcome:
        step_number = request.step_number
        tool_input = dict(request.tool_input)
        # The attempt right after human guidance does not consume retry budget.
        budgeted = not guided
        attempts = 0

        while True:
            attempts += 1
            current = ActionRequest(step_number=step_number, action_name=request.action_name, tool_input=tool_input)
            self._store.trace(
                "dispatch_attempt",
                {
                    "step_number": step_number,
                    "action_name": request.action_name,
                    "attempt": attempts,
                    "tool_input": tool_input,
                },
            )
            try:
                result = self._registry.invoke(request.action_name, tool_input, cancel)
            except CancelledError:
                return self._cancelled(current, cancel, attempts=attempts)

            if result.success:
                self._record_change(current, result)
                self._store.trace(
                    "dispatch_succeeded",
                    {
                        "step_number": step_number,
                        "action_name": request.action_name,
                        "attempt": attempts,
                        "content": truncate_line(result.content, 200),
                        "element_ids": list(result.element_ids),
                    },
                )
                return DispatchOutcome(
                    kind=DispatchKind.SUCCEEDED,
                    request=current,
                    attempts=attempts,
                    result=result,
                    guidance_pending=guided and attempts == 1,
                )

            retry_count = self._store.retry_count(step_number)
            strategy = self._recovery.decide(
                step_number=step_number,
                error_text=result.content,
                retry_count=retry_count,
                tool_name=request.action_name,
                tool_input=tool_input,
            )
            self._store.record_retry(
                step_number,
                error=result.content,
                suggested_modification=strategy.suggested_modification,
                tool_name=request.action_name,
                strategy=strategy.action.value,
                budgeted=budgeted,
            )
            budgeted = True
            self._store.trace(
                "recovery_decision",
                {
                    "step_number": step_number,
                    "action_name": request.action_name,
                    "attempt": attempts,
                    "retry_count": retry_count,
                    "error": result.content,
                    "strategy": strategy.to_dict(),
                },
            )

            if strategy.action == RecoveryAction.SKIP_AND_CONTINUE:
                self._store.skip_step(step_number, reason=strategy.reason)
                return DispatchOutcome(
                    kind=DispatchKind.SKIPPED,
                    request=current,
                    attempts=attempts,
                    result=result,
                    strategy=strategy,
                    message=strategy.message,
                    retry_count=retry_count,
                )

            if strategy.action == RecoveryAction.ESCALATE_TO_USER:
                return DispatchOutcome(
                    kind=DispatchKind.ESCALATED,
                    request=current,
                    attempts=attempts,
                    result=result,
                    strategy=strategy,
                    message=strategy.message,
                    retry_count=retry_count,
                )

            if strategy.action == RecoveryAction.ROLLBACK_AND_RETRY:
                rolled_back = self._transactions.rollback_if_active()
                self._store.trace(
                    "rollback_requested",
                    {"step_number": step_number, "action_name": request.action_name, "rolled_back": bool(rolled_back)},
                )

            try:
                cancel.sleep(strategy.retry_delay_s)
            except CancelledError:
                return self._cancelled(current, cancel, attempts=attempts)

            if adjust_input is not None:
                tool_input = dict(adjust_input(dict(tool_input), strategy))

    def dispatch_batch(
        self,
        requests: list[ActionRequest],
        cancel: CancellationToken,
        *,
        adjust_input: InputAdjuster | None = None,
        guided: bool = False,
    ) -> list[DispatchOutcome]:
        """Sequential; stops at the first outcome that is not a success.

        Requests after the stopping one are reported as NOT_RUN. Guidance stays
        with the batch until a failure is recorded against it.
        """
        outcomes: list[DispatchOutcome] = []
        for i, request in enumerate(requests):
            outcome = self.dispatch(request, cancel, adjust_input=adjust_input, guided=guided)
            outcomes.append(outcome)
            if not outcome.succeeded:
                outcomes.extend(self._not_run(requests[i + 1 :], stopped=outcome))
                break
            guided = outcome.guidance_pending
        return outcomes

    def _not_run(self, requests: list[ActionRequest], *, stopped: DispatchOutcome) -> list[DispatchOutcome]:
        message = f"Not run: {stopped.request.action_name} ended the batch ({stopped.kind.value})."
        out: list[DispatchOutcome] = []
        for request in requests:
            self._store.trace(
                "dispatch_not_run",
                {
                    "step_number": request.step_number,
                    "action_name": request.action_name,
                    "stopped_by": stopped.request.action_name,
                    "reason": stopped.kind.value,
                },
            )
            out.append(DispatchOutcome(kind=DispatchKind.NOT_RUN, request=request, attempts=0, message=message))
        return out

    def _record_change(self, request: ActionRequest, result: ToolResult) -> None:
        if self._changes is None or not result.element_ids:
            return
        if not self._registry.is_mutating(request.action_name):
            return
        self._changes.record(
            change_type=result.change_type or "modified",
            tool_name=request.action_name,
            element_ids=list(result.element_ids),
            description=result.content,
            step_number=request.step_number,
        )

    def _cancelled(self, request: ActionRequest, cancel: CancellationToken, *, attempts: int) -> DispatchOutcome:
        reason = cancel.reason or "cancel_requested"
        self._store.cancel_plan(reason=reason)
        self._store.trace(
            "dispatch_cancelled",
            {"step_number": request.step_number, "action_name": request.action_name, "attempt": attempts},
        )
        return DispatchOutcome(kind=DispatchKind.CANCELLED, request=request, attempts=attempts, message=reason)
