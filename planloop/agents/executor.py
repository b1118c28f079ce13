from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterator, Protocol

from planloop.config.load_config import AppConfig, default_app_config
from planloop.engine.dispatcher import (
    ActionRequest,
    CapabilityDispatcher,
    DispatchKind,
    DispatchOutcome,
    InputAdjuster,
    stopping_outcome,
)
from planloop.engine.escalation import ResumeAction, format_escalation_message, interpret_reply
from planloop.engine.recovery import RecoveryEngine
from planloop.engine.verification import VerificationAction, VerificationReport, VerificationTrigger
from planloop.plan.models import CompletionStatus, Escalation, Plan, Step, StepStatus
from planloop.plan.store import PlanValidationError, SessionStore
from planloop.tools.changes import ChangeTracker
from planloop.tools.registry import CapabilityRegistry
from planloop.tools.transactions import TransactionCollaborator
from planloop.utils.cancel import CancellationToken, CancelledError
from planloop.utils.template import truncate_line

from .planning import CompletePlanRequest, PlanningInterface
from .types import ExecutionContext


class ExecutorBusyError(RuntimeError):
    """run()/resume() called while another call is still driving the same plan."""


class StepActionSource(Protocol):
    """The autonomous caller: decides what to invoke for a step and judges outcomes."""

    def actions_for(self, step: Step, context: ExecutionContext) -> list[ActionRequest]: ...

    def verify(self, step: Step, directive: str, context: ExecutionContext) -> VerificationReport: ...


class ExecutionStatus(Enum):
    AWAITING_HUMAN = "awaiting_human"
    BLOCKED = "blocked"
    FINISHED = "finished"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ExecutionResult:
    status: ExecutionStatus
    progress: dict[str, int]
    message: str | None = None
    escalation: Escalation | None = None
    report: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "progress": dict(self.progress),
            "message": self.message,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "report": self.report,
        }


class PlanExecutor:
    """Drives the active plan step by step until it finishes, blocks, or needs a human.

    Sequential: one step in flight, one capability call in flight. A step that is
    already InProgress (for example after guidance) is resumed before any Pending
    step is started.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        registry: CapabilityRegistry,
        source: StepActionSource,
        config: AppConfig | None = None,
        transactions: TransactionCollaborator | None = None,
        changes: ChangeTracker | None = None,
        cancel: CancellationToken | None = None,
        adjust_input: InputAdjuster | None = None,
        auto_complete: bool = True,
    ) -> None:
        self._config = config or default_app_config()
        self._store = store
        self._source = source
        self._changes = changes if changes is not None else ChangeTracker()
        self._adjust_input = adjust_input
        self._auto_complete = auto_complete
        self._busy = threading.Lock()
        # step_number -> (requests, outcomes) that succeeded before a dispatch escalation.
        self._settled_actions: dict[int, tuple[list[ActionRequest], list[DispatchOutcome]]] = {}

        self.context = ExecutionContext(
            store=store,
            config=self._config,
            cancel=cancel or CancellationToken(),
            changes=self._changes,
        )
        self._dispatcher = CapabilityDispatcher(
            store=store,
            registry=registry,
            recovery=RecoveryEngine(
                max_retries=self._config.execution.max_retries,
                delays=self._config.retry_delays,
            ),
            transactions=transactions,
            changes=self._changes,
        )
        self._trigger = VerificationTrigger(config=self._config, registry=registry)
        self._planning = PlanningInterface(store)

    @property
    def cancel(self) -> CancellationToken:
        return self.context.cancel

    @property
    def changes(self) -> ChangeTracker:
        return self._changes

    def run(self) -> ExecutionResult:
        with self._exclusive():
            snap = self._store.snapshot()
            if snap.plan is None:
                raise PlanValidationError("No active plan. Call create_plan first.")
            if snap.escalation is not None:
                raise PlanValidationError(
                    f"Step {snap.escalation.step_number} is waiting for a human reply; call resume()."
                )
            self.context.trace("execution_started", {"progress": snap.progress})
            return self._loop(guided_step=None)

    def resume(self, reply: str) -> ExecutionResult:
        """Apply a human reply to the pending escalation, then keep going."""
        with self._exclusive():
            escalation = self._store.snapshot().escalation
            if escalation is None:
                raise PlanValidationError("No escalation is pending.")

            decision = interpret_reply(reply)
            step_number = escalation.step_number
            if decision.action != ResumeAction.GUIDANCE:
                self._settled_actions.pop(step_number, None)
            self.context.trace(
                "escalation_resolved",
                {"step_number": step_number, "decision": decision.action.value, "reply": decision.text},
            )

            if decision.action == ResumeAction.ABORT:
                self._store.cancel_plan(reason="aborted_by_user")
                return self._result(ExecutionStatus.CANCELLED, message="Plan aborted by user.")

            self._store.clear_escalation()
            if decision.action == ResumeAction.SKIP:
                self._store.skip_step(step_number, reason="skipped_by_user")
                return self._loop(guided_step=None)

            self._store.add_guidance(decision.text)
            self._store.add_note(decision.text, step_number=step_number)
            self.context.guidance.append(decision.text)
            return self._loop(guided_step=step_number)

    # ---- loop ------------------------------------------------------------

    def _loop(self, *, guided_step: int | None) -> ExecutionResult:
        guided = guided_step
        while True:
            if self.cancel.cancelled:
                return self._cancelled()

            plan = self._store.snapshot().plan
            if plan is None:
                raise PlanValidationError("No active plan. Call create_plan first.")
            if not plan.is_active:
                return self._terminal(plan)

            step = self._current_step(plan)
            if step is None:
                step = self._store.next_ready_step()
                if step is None:
                    if plan.progress_counts()[StepStatus.PENDING.value]:
                        waiting = [s.step_number for s in plan.steps if s.status == StepStatus.PENDING]
                        self.context.trace("execution_blocked", {"pending_steps": waiting})
                        return self._result(
                            ExecutionStatus.BLOCKED,
                            message=f"Pending step(s) {waiting} are waiting on unsettled prerequisites.",
                        )
                    return self._finish()
                step = self._store.start_step(step.step_number)

            try:
                outcome = self._run_step(step, guided=guided == step.step_number)
            except CancelledError:
                return self._cancelled()
            guided = None
            if outcome is not None:
                return outcome

    def _current_step(self, plan: Plan) -> Step | None:
        for step in plan.steps:
            if step.status == StepStatus.IN_PROGRESS:
                return step
        return None

    def _run_step(self, step: Step, *, guided: bool) -> ExecutionResult | None:
        """Returns None when the step is settled and the loop should move on."""
        n = step.step_number
        settled = self._settled_actions.pop(n, None)
        while True:
            self.context.check_cancelled()
            planned = self._source.actions_for(step, self.context)
            requests = planned
            done: list[DispatchOutcome] = []
            if guided and settled is not None and planned[: len(settled[0])] == settled[0]:
                # Actions that succeeded before the escalation are not invoked again.
                done = list(settled[1])
                requests = planned[len(settled[0]) :]
                self.context.trace(
                    "dispatch_resumed",
                    {"step_number": n, "already_succeeded": [r.action_name for r in settled[0]]},
                )
            settled = None
            outcomes = done + self._dispatcher.dispatch_batch(
                requests, self.cancel, adjust_input=self._adjust_input, guided=guided
            )
            guided = False

            stopped = stopping_outcome(outcomes)
            if stopped is not None and stopped.kind == DispatchKind.CANCELLED:
                return self._result(ExecutionStatus.CANCELLED, message=stopped.message)
            if stopped is not None and stopped.kind == DispatchKind.SKIPPED:
                return None
            if stopped is not None and stopped.kind == DispatchKind.ESCALATED:
                succeeded = [o for o in outcomes if o.succeeded]
                self._settled_actions[n] = (planned[: len(succeeded)], succeeded)
                error = stopped.result.content if stopped.result is not None else ""
                return self._escalate(n, message=stopped.message or "", error=error, retry_count=stopped.retry_count)

            results = [o.result for o in outcomes if o.result is not None]
            tools = [o.request.action_name for o in outcomes]
            current = self._store.get_step(n) or step
            if not self._trigger.should_verify(results, tools, current):
                self._store.complete_step(n, result=_summarize(outcomes))
                return None

            directive = self._trigger.build_directive(step=current, batch_results=results, batch_tools=tools)
            self.context.trace("verification_requested", {"step_number": n, "tools": tools})
            report = self._source.verify(current, directive, self.context)
            # A cancel during the check leaves the step as it was.
            self.context.check_cancelled()
            retry_attempts = self._store.retry_count(n)
            verdict = self._trigger.classify(
                approved=report.approved, issue_text=report.issues, retry_attempts=retry_attempts
            )
            self._store.record_verification(
                n, verdict.status, observations=report.observations, issues=report.issues
            )
            self.context.trace(
                "verification_decision",
                {
                    "step_number": n,
                    "status": verdict.status.value,
                    "action": verdict.action.value,
                    "retry_attempts": retry_attempts,
                },
            )

            if verdict.action in {VerificationAction.PROCEED, VerificationAction.WAIT_FOR_ANALYSIS}:
                self._store.complete_step(n, result=report.observations or _summarize(outcomes))
                return None

            issues = (report.issues or "").strip()
            if verdict.action == VerificationAction.RETRY:
                self._store.record_retry(
                    n,
                    error=f"Verification issues: {issues}",
                    suggested_modification=issues,
                    strategy="verification_retry",
                )
                continue

            error = f"Verification failed: {issues}"
            return self._escalate(
                n,
                message=format_escalation_message(step_number=n, retry_count=retry_attempts, error_text=error),
                error=error,
                retry_count=retry_attempts,
            )

    # ---- results ---------------------------------------------------------

    def _escalate(self, step_number: int, *, message: str, error: str, retry_count: int) -> ExecutionResult:
        escalation = Escalation(
            step_number=step_number,
            message=message,
            error=error,
            retry_count=retry_count,
            created_at=time.time(),
        )
        self._store.set_escalation(escalation)
        return self._result(ExecutionStatus.AWAITING_HUMAN, message=message, escalation=escalation)

    def _cancelled(self) -> ExecutionResult:
        reason = self.cancel.reason or "cancel_requested"
        self._store.cancel_plan(reason=reason)
        return self._result(ExecutionStatus.CANCELLED, message=reason)

    def _terminal(self, plan: Plan) -> ExecutionResult:
        if plan.completion_status == CompletionStatus.CANCELLED:
            return self._result(ExecutionStatus.CANCELLED, message=plan.summary)
        return self._result(ExecutionStatus.FINISHED, report=plan.report)

    def _finish(self) -> ExecutionResult:
        if not self._auto_complete:
            return self._result(ExecutionStatus.FINISHED, message="All steps settled.")

        plan = self._store.snapshot().plan
        assert plan is not None
        counts = plan.progress_counts()
        if counts[StepStatus.COMPLETED.value] == counts["total"]:
            status = CompletionStatus.SUCCESS
        elif counts[StepStatus.COMPLETED.value] > 0:
            status = CompletionStatus.PARTIAL_SUCCESS
        else:
            status = CompletionStatus.FAILED

        issues = [
            f"Step {s.step_number} {s.status.value}: {truncate_line(s.failure_reason, 160)}"
            for s in plan.steps
            if s.status in {StepStatus.SKIPPED, StepStatus.FAILED} and s.failure_reason
        ]
        report = self._planning.complete_plan(
            CompletePlanRequest(
                status=status.value,
                summary=f"Executed {counts[StepStatus.COMPLETED.value]} of {counts['total']} steps.",
                issues_encountered=issues,
                elements_created=self._changes.element_ids("created"),
                elements_modified=self._changes.element_ids("modified"),
            )
        )
        return self._result(ExecutionStatus.FINISHED, report=report)

    def _result(
        self,
        status: ExecutionStatus,
        *,
        message: str | None = None,
        escalation: Escalation | None = None,
        report: str | None = None,
    ) -> ExecutionResult:
        result = ExecutionResult(
            status=status,
            progress=self._store.progress(),
            message=message,
            escalation=escalation,
            report=report,
        )
        self.context.trace("execution_result", {"status": status.value, "progress": result.progress})
        return result

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._busy.acquire(blocking=False):
            raise ExecutorBusyError("Executor is already running this plan.")
        try:
            yield
        finally:
            self._busy.release()


def _summarize(outcomes: list[DispatchOutcome]) -> str:
    if not outcomes:
        return "No actions required."
    parts = [f"{o.request.action_name}: {truncate_line(o.result.content if o.result else '', 120)}" for o in outcomes]
    return "; ".join(parts)
