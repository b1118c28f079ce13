from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class StepStatus(Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class CompletionStatus(Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class VerificationStatus(Enum):
    """Orthogonal to StepStatus; read by the loop, never drives transitions."""

    PENDING = "pending"
    PASSED = "passed"
    ISSUES = "issues"
    FAILED = "failed"


# Prerequisites in these states no longer block a dependent step.
SETTLED_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


@dataclass
class Step:
    step_number: int
    description: str
    tools_to_use: list[str] = field(default_factory=list)
    success_criteria: str | None = None
    depends_on: list[int] = field(default_factory=list)
    is_verification: bool = False
    status: StepStatus = StepStatus.PENDING
    result: str | None = None
    failure_reason: str | None = None
    started_at: float | None = None
    completed_at: float | None = None
    verification_status: VerificationStatus | None = None
    verification_observations: str | None = None
    verification_issues: str | None = None
    verified_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "description": self.description,
            "tools_to_use": list(self.tools_to_use),
            "success_criteria": self.success_criteria,
            "depends_on": list(self.depends_on),
            "is_verification": self.is_verification,
            "status": self.status.value,
            "result": self.result,
            "failure_reason": self.failure_reason,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "verification_status": self.verification_status.value if self.verification_status else None,
            "verification_observations": self.verification_observations,
            "verification_issues": self.verification_issues,
            "verified_at": self.verified_at,
        }


@dataclass
class Plan:
    goal: str
    steps: list[Step]
    created_at: float
    verification_approach: str | None = None
    rollback_strategy: str | None = None
    estimated_tool_calls: int | None = None
    completion_status: CompletionStatus | None = None
    completed_at: float | None = None
    summary: str | None = None
    issues_encountered: list[str] = field(default_factory=list)
    elements_created: list[int] = field(default_factory=list)
    elements_modified: list[int] = field(default_factory=list)
    recommendations: str | None = None
    report: str | None = None

    @property
    def is_active(self) -> bool:
        return self.completion_status is None

    def get_step(self, step_number: int) -> Step | None:
        for step in self.steps:
            if step.step_number == step_number:
                return step
        return None

    def progress_counts(self) -> dict[str, int]:
        counts = {s.value: 0 for s in StepStatus}
        for step in self.steps:
            counts[step.status.value] += 1
        counts["total"] = len(self.steps)
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "goal": self.goal,
            "steps": [s.to_dict() for s in self.steps],
            "created_at": self.created_at,
            "verification_approach": self.verification_approach,
            "rollback_strategy": self.rollback_strategy,
            "estimated_tool_calls": self.estimated_tool_calls,
            "completion_status": self.completion_status.value if self.completion_status else None,
            "completed_at": self.completed_at,
            "summary": self.summary,
            "issues_encountered": list(self.issues_encountered),
            "elements_created": list(self.elements_created),
            "elements_modified": list(self.elements_modified),
            "recommendations": self.recommendations,
            "progress": self.progress_counts(),
        }


@dataclass(frozen=True)
class RetryRecord:
    step_number: int
    attempt: int
    error: str
    suggested_modification: str | None
    created_at: float
    tool_name: str = ""
    strategy: str = ""
    # False for the single attempt that follows human guidance.
    budgeted: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "attempt": self.attempt,
            "error": self.error,
            "suggested_modification": self.suggested_modification,
            "created_at": self.created_at,
            "tool_name": self.tool_name,
            "strategy": self.strategy,
            "budgeted": self.budgeted,
        }


@dataclass(frozen=True)
class Escalation:
    step_number: int
    message: str
    error: str
    retry_count: int
    created_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_number": self.step_number,
            "message": self.message,
            "error": self.error,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }


@dataclass
class Session:
    session_id: str
    created_at: float
    plan: Plan | None = None
    retry_records: list[RetryRecord] = field(default_factory=list)
    # step_number -> notes; plan-level notes live under 0.
    notes: dict[int, list[str]] = field(default_factory=dict)
    escalation: Escalation | None = None
    guidance: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SessionSnapshot:
    """Deep copy of a Session taken under the store lock."""

    session_id: str
    created_at: float
    plan: Plan | None
    retry_records: tuple[RetryRecord, ...]
    notes: dict[int, list[str]]
    escalation: Escalation | None
    guidance: tuple[str, ...]

    @property
    def progress(self) -> dict[str, int]:
        if self.plan is None:
            return {**{s.value: 0 for s in StepStatus}, "total": 0}
        return self.plan.progress_counts()

    def retry_count(self, step_number: int) -> int:
        return sum(1 for r in self.retry_records if r.step_number == step_number and r.budgeted)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "plan": self.plan.to_dict() if self.plan else None,
            "progress": self.progress,
            "retry_records": [r.to_dict() for r in self.retry_records],
            "notes": {str(k): list(v) for k, v in sorted(self.notes.items())},
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "guidance": list(self.guidance),
        }
