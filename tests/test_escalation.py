from __future__ import annotations

import pytest

from planloop.engine.escalation import ResumeAction, format_escalation_message, interpret_reply


def test_escalation_message_is_deterministic() -> None:
    msg = format_escalation_message(step_number=2, retry_count=2, error_text="invalid parameter: type not found")
    assert msg == format_escalation_message(
        step_number=2, retry_count=2, error_text="invalid parameter: type not found"
    )
    assert msg.startswith("Step 2 needs your input after 2 retries (3 attempts).")
    assert "Error: invalid parameter: type not found" in msg
    options = [line for line in msg.splitlines() if line[:2] in {"1.", "2.", "3."}]
    assert [o.split(":", 1)[0] for o in options] == ["1. Provide guidance", "2. Skip step", "3. Abort plan"]


def test_escalation_message_singular_forms() -> None:
    msg = format_escalation_message(step_number=1, retry_count=0, error_text="x")
    assert msg.startswith("Step 1 needs your input after 0 retries (1 attempt).")
    msg = format_escalation_message(step_number=1, retry_count=1, error_text="x")
    assert msg.startswith("Step 1 needs your input after 1 retry (2 attempts).")


@pytest.mark.parametrize(
    "reply, action",
    [
        ("please just skip it", ResumeAction.SKIP),
        ("SKIP", ResumeAction.SKIP),
        ("continue with the rest", ResumeAction.SKIP),
        ("abort", ResumeAction.ABORT),
        ("Stop everything", ResumeAction.ABORT),
        ("cancel the plan", ResumeAction.ABORT),
        # skip words are checked before abort words
        ("don't abort, skip", ResumeAction.SKIP),
        ("Use the 'Generic - 200mm' wall type instead", ResumeAction.GUIDANCE),
        ("", ResumeAction.GUIDANCE),
    ],
)
def test_interpret_reply(reply: str, action: ResumeAction) -> None:
    decision = interpret_reply(reply)
    assert decision.action == action
    assert decision.text == reply
