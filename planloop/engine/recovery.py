from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from planloop.config.load_config import RetryDelaysConfig

from .escalation import format_escalation_message


class ErrorCategory(Enum):
    INVALID_PARAMETER = "invalid_parameter"
    ELEMENT_NOT_FOUND = "element_not_found"
    TYPE_NOT_AVAILABLE = "type_not_available"
    GEOMETRY_CONFLICT = "geometry_conflict"
    TRANSACTION_FAILED = "transaction_failed"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"


class RecoveryAction(Enum):
    RETRY_WITH_MODIFICATION = "retry_with_modification"
    REFRESH_CONTEXT_AND_RETRY = "refresh_context_and_retry"
    RETRY_WITH_ALTERNATIVE = "retry_with_alternative"
    ROLLBACK_AND_RETRY = "rollback_and_retry"
    SKIP_AND_CONTINUE = "skip_and_continue"
    ESCALATE_TO_USER = "escalate_to_user"


RETRY_ACTIONS = frozenset(
    {
        RecoveryAction.RETRY_WITH_MODIFICATION,
        RecoveryAction.REFRESH_CONTEXT_AND_RETRY,
        RecoveryAction.RETRY_WITH_ALTERNATIVE,
        RecoveryAction.ROLLBACK_AND_RETRY,
    }
)


@dataclass(frozen=True)
class RecoveryStrategy:
    action: RecoveryAction
    reason: str
    category: ErrorCategory
    suggested_modification: str | None = None
    message: str | None = None
    retry_delay_s: float = 0.0

    @property
    def is_retry(self) -> bool:
        return self.action in RETRY_ACTIONS

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "reason": self.reason,
            "category": self.category.value,
            "suggested_modification": self.suggested_modification,
            "message": self.message,
            "retry_delay_s": self.retry_delay_s,
        }


# Ordered rules; first match wins. Substring matching over lowercased text is
# fragile, but outcomes must stay stable for callers that depend on them.
def classify_error(error_text: str) -> ErrorCategory:
    e = (error_text or "").lower()
    if "parameter" in e or "value" in e or "invalid" in e:
        return ErrorCategory.INVALID_PARAMETER
    if "not found" in e or "does not exist" in e or "no element" in e:
        return ErrorCategory.ELEMENT_NOT_FOUND
    if "type" in e and ("not available" in e or "not loaded" in e):
        return ErrorCategory.TYPE_NOT_AVAILABLE
    if "geometry" in e or "overlap" in e or "conflict" in e or "intersect" in e:
        return ErrorCategory.GEOMETRY_CONFLICT
    if "transaction" in e or "rollback" in e or "commit" in e:
        return ErrorCategory.TRANSACTION_FAILED
    if "timeout" in e or "timed out" in e:
        return ErrorCategory.TIMEOUT
    return ErrorCategory.UNKNOWN


def _parameter_hint(error_text: str) -> str:
    e = (error_text or "").lower()
    if "level" in e:
        return "Verify the level name against the project's levels (query levels first) and use an exact match."
    if "coordinate" in e or "point" in e or "location" in e:
        return "Check coordinate values: use feet, and make sure start and end points differ."
    if "type" in e:
        return "Query the available types for this category and use an exact type name."
    return "Review the input parameters against the tool schema and correct the invalid values."


class RecoveryEngine:
    """Maps a failed capability call to a recovery strategy.

    GeometryConflict and Unknown act on the first occurrence and never consult the
    retry budget; every other category escalates once `retry_count >= max_retries`.
    """

    def __init__(self, *, max_retries: int, delays: RetryDelaysConfig) -> None:
        self._max_retries = int(max_retries)
        self._delays = delays

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def decide(
        self,
        *,
        step_number: int,
        error_text: str,
        retry_count: int,
        tool_name: str = "",
        tool_input: dict[str, Any] | None = None,
    ) -> RecoveryStrategy:
        category = classify_error(error_text)

        if category == ErrorCategory.GEOMETRY_CONFLICT:
            return RecoveryStrategy(
                action=RecoveryAction.SKIP_AND_CONTINUE,
                reason=error_text,
                category=category,
                message=f"Step {step_number} skipped: geometry conflicts are not retried.",
            )

        if category == ErrorCategory.UNKNOWN:
            return RecoveryStrategy(
                action=RecoveryAction.ESCALATE_TO_USER,
                reason=f"Unrecognized failure from {tool_name or 'capability'}.",
                category=category,
                message=format_escalation_message(
                    step_number=step_number, retry_count=retry_count, error_text=error_text
                ),
            )

        if retry_count >= self._max_retries:
            return RecoveryStrategy(
                action=RecoveryAction.ESCALATE_TO_USER,
                reason=f"Retry budget exhausted ({retry_count}/{self._max_retries}).",
                category=category,
                message=format_escalation_message(
                    step_number=step_number, retry_count=retry_count, error_text=error_text
                ),
            )

        delay_s = self._delays.delay_s(category.value)

        if category == ErrorCategory.INVALID_PARAMETER:
            return RecoveryStrategy(
                action=RecoveryAction.RETRY_WITH_MODIFICATION,
                reason="Invalid parameter; adjust the input and retry.",
                category=category,
                suggested_modification=_parameter_hint(error_text),
                retry_delay_s=delay_s,
            )
        if category == ErrorCategory.ELEMENT_NOT_FOUND:
            return RecoveryStrategy(
                action=RecoveryAction.REFRESH_CONTEXT_AND_RETRY,
                reason="Referenced element not found; refresh model context and retry.",
                category=category,
                suggested_modification="Re-query the model: element ids may have changed since they were read.",
                retry_delay_s=delay_s,
            )
        if category == ErrorCategory.TYPE_NOT_AVAILABLE:
            return RecoveryStrategy(
                action=RecoveryAction.RETRY_WITH_ALTERNATIVE,
                reason="Requested type is not available; retry with an alternative type.",
                category=category,
                suggested_modification="Pick the closest loaded type from the available types list.",
                retry_delay_s=delay_s,
            )
        if category == ErrorCategory.TRANSACTION_FAILED:
            return RecoveryStrategy(
                action=RecoveryAction.ROLLBACK_AND_RETRY,
                reason="Transaction failed; roll back open transactions and retry.",
                category=category,
                retry_delay_s=delay_s,
            )
        # ErrorCategory.TIMEOUT
        return RecoveryStrategy(
            action=RecoveryAction.RETRY_WITH_MODIFICATION,
            reason="Operation timed out; reduce scope and retry.",
            category=category,
            suggested_modification="Reduce scope: process fewer elements per call.",
            retry_delay_s=delay_s,
        )
