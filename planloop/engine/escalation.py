from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ResumeAction(Enum):
    SKIP = "skip"
    ABORT = "abort"
    GUIDANCE = "guidance"


@dataclass(frozen=True)
class ResumeDecision:
    action: ResumeAction
    text: str


_SKIP_WORDS = ("skip", "continue")
_ABORT_WORDS = ("abort", "stop", "cancel")


def _plural(n: int, word: str, plural: str) -> str:
    return f"{n} {word if n == 1 else plural}"


def format_escalation_message(*, step_number: int, retry_count: int, error_text: str) -> str:
    """Human-facing pause message. Output depends only on the arguments."""
    attempts = retry_count + 1
    return (
        f"Step {step_number} needs your input after {_plural(retry_count, 'retry', 'retries')} "
        f"({_plural(attempts, 'attempt', 'attempts')}).\n"
        f"Error: {error_text}\n"
        "\n"
        "How would you like to proceed?\n"
        "1. Provide guidance: describe what to change and this step will be attempted again.\n"
        f"2. Skip step: reply \"skip\" to mark step {step_number} as skipped and continue with the plan.\n"
        "3. Abort plan: reply \"abort\" to stop and cancel the remaining steps."
    )


def interpret_reply(text: str) -> ResumeDecision:
    """Keyword containment, checked in order: skip words, then abort words, else guidance."""
    raw = text or ""
    lowered = raw.lower()
    if any(w in lowered for w in _SKIP_WORDS):
        return ResumeDecision(action=ResumeAction.SKIP, text=raw)
    if any(w in lowered for w in _ABORT_WORDS):
        return ResumeDecision(action=ResumeAction.ABORT, text=raw)
    return ResumeDecision(action=ResumeAction.GUIDANCE, text=raw)
