from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import pytest

from planloop.cli.run_plan import main


REPO_CONFIG = Path(__file__).resolve().parents[1] / "config" / "default.toml"

_PLAN = {
    "goal": "Create 2 levels",
    "failures": {"create_level": ["Host returned an unexpected response"]},
    "steps": [
        {
            "step_number": 1,
            "description": "Create Level A",
            "tools_to_use": ["create_level"],
            "actions": [{"action_name": "create_level", "tool_input": {"element_ids": [101]}}],
        },
        {
            "step_number": 2,
            "description": "Create Level B",
            "tools_to_use": ["create_level"],
            "actions": [{"action_name": "create_level", "tool_input": {"element_ids": [102]}}],
        },
    ],
}


def _write_plan(td: str, data: dict) -> str:
    path = os.path.join(td, "plan.json")
    Path(path).write_text(json.dumps(data), encoding="utf-8")
    return path


def test_dry_run_only_validates(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("PLANLOOP_CONFIG_PATH", str(REPO_CONFIG))
    with tempfile.TemporaryDirectory() as td:
        rc = main(["--plan", _write_plan(td, _PLAN), "--dry-run"])
    out = capsys.readouterr().out
    assert rc == 0
    assert out.startswith("Plan created: Create 2 levels")
    assert "Executed" not in out


def test_escalation_answered_by_scripted_reply(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("PLANLOOP_CONFIG_PATH", str(REPO_CONFIG))
    with tempfile.TemporaryDirectory() as td:
        rc = main(["--plan", _write_plan(td, _PLAN), "--no-journal", "--reply", "skip"])
    out = capsys.readouterr().out
    assert rc == 0
    assert "Step 1 needs your input after 0 retries (1 attempt)." in out
    assert "> skip" in out
    assert "## Plan Partially Completed: Create 2 levels" in out
    assert '"status": "finished"' in out


def test_invalid_plan_exits_2(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("PLANLOOP_CONFIG_PATH", str(REPO_CONFIG))
    bad = {"goal": "Broken", "steps": [{"step_number": 1, "description": "A", "depends_on": [9]}]}
    with tempfile.TemporaryDirectory() as td:
        rc = main(["--plan", _write_plan(td, bad), "--dry-run"])
    assert rc == 2
    assert "unknown step(s) [9]" in capsys.readouterr().err


@pytest.mark.parametrize(
    "step, fragment",
    [
        ({"step_number": 1, "description": "A", "actions": [{"tool_input": {}}]}, "action_name is required"),
        ({"step_number": "one", "description": "A"}, "integer step_number"),
        ({"step_number": 1, "description": "A", "verdicts": ["approved"]}, "each verdict must be an object"),
        ({"step_number": 1, "description": "A", "actions": [42]}, "action must be a string or object"),
    ],
)
def test_malformed_plan_file_exits_2(
    step: dict, fragment: str, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setenv("PLANLOOP_CONFIG_PATH", str(REPO_CONFIG))
    with tempfile.TemporaryDirectory() as td:
        rc = main(["--plan", _write_plan(td, {"goal": "Broken", "steps": [step]}), "--no-journal"])
    assert rc == 2
    err = capsys.readouterr().err
    assert err.startswith("Invalid plan: ")
    assert fragment in err


def test_missing_plan_file_exits_2(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    monkeypatch.setenv("PLANLOOP_CONFIG_PATH", str(REPO_CONFIG))
    with tempfile.TemporaryDirectory() as td:
        rc = main(["--plan", os.path.join(td, "nope.json"), "--no-journal"])
    assert rc == 2
    assert "Plan file not found" in capsys.readouterr().err
