from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from planloop.config.load_config import AppConfig
from planloop.plan.models import Step, VerificationStatus
from planloop.tools.registry import CapabilityRegistry, ToolResult
from planloop.utils.template import render_template


class VerificationAction(Enum):
    PROCEED = "proceed"
    WAIT_FOR_ANALYSIS = "wait_for_analysis"
    RETRY = "retry"
    ESCALATE_TO_USER = "escalate_to_user"


@dataclass(frozen=True)
class VerificationOutcome:
    status: VerificationStatus
    action: VerificationAction


@dataclass(frozen=True)
class VerificationReport:
    """Assessment returned by the caller after running a check capability."""

    approved: bool
    issues: str | None = None
    observations: str | None = None


def classify_verification(
    *, approved: bool, issue_text: str | None, retry_attempts: int, max_retries: int
) -> VerificationOutcome:
    if approved:
        return VerificationOutcome(VerificationStatus.PASSED, VerificationAction.PROCEED)
    if not (issue_text or "").strip():
        return VerificationOutcome(VerificationStatus.PENDING, VerificationAction.WAIT_FOR_ANALYSIS)
    if retry_attempts >= max_retries:
        return VerificationOutcome(VerificationStatus.FAILED, VerificationAction.ESCALATE_TO_USER)
    return VerificationOutcome(VerificationStatus.ISSUES, VerificationAction.RETRY)


class VerificationTrigger:
    def __init__(
        self,
        *,
        config: AppConfig,
        registry: CapabilityRegistry,
        autonomous_mode: bool | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self.autonomous_mode = config.execution.autonomous_mode if autonomous_mode is None else autonomous_mode

    def should_verify(
        self,
        batch_results: list[ToolResult],
        batch_tools: list[str],
        current_step: Step | None,
    ) -> bool:
        if not self.autonomous_mode:
            return False
        if not self._config.verification.auto_verification_enabled:
            return False
        # A verification step must not trigger another verification.
        if current_step is not None and current_step.is_verification:
            return False

        any_mutating = False
        any_mutating_ok = False
        for tool, result in zip(batch_tools, batch_results):
            if not self._registry.is_mutating(tool):
                continue
            any_mutating = True
            if result.success:
                any_mutating_ok = True
        return any_mutating and any_mutating_ok

    def build_directive(
        self,
        *,
        step: Step,
        batch_results: list[ToolResult],
        batch_tools: list[str],
    ) -> str:
        """Internal instruction for the caller; never shown to the user."""
        ran: list[str] = []
        affected: list[int] = []
        for tool, result in zip(batch_tools, batch_results):
            ran.append(f"{tool} ({'ok' if result.success else 'failed'})")
            if result.success and self._registry.is_mutating(tool):
                for eid in result.element_ids:
                    if eid not in affected:
                        affected.append(eid)

        strictness = self._config.verification.strictness
        return render_template(
            self._config.prompts.verification_directive_template,
            {
                "step_number": step.step_number,
                "step_description": step.description,
                "tools": ", ".join(ran) or "none",
                "affected": ", ".join(str(e) for e in affected) or "none reported",
                "instruction": self._config.prompts.instruction_for(strictness),
                "success_criteria": step.success_criteria or "not specified",
                "strictness": strictness,
            },
        ).strip()

    def classify(self, *, approved: bool, issue_text: str | None, retry_attempts: int) -> VerificationOutcome:
        return classify_verification(
            approved=approved,
            issue_text=issue_text,
            retry_attempts=retry_attempts,
            max_retries=self._config.execution.max_retries,
        )
