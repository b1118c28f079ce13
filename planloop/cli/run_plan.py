from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Callable

from planloop.agents.executor import ExecutionStatus, PlanExecutor
from planloop.agents.planning import PlanningInterface
from planloop.agents.scripted import ScriptedActionSource
from planloop.config.load_config import ConfigError, default_config_path, default_app_config, load_app_config
from planloop.engine.verification import VerificationReport
from planloop.plan.store import PlanValidationError, SessionStore
from planloop.storage.sqlite_store import EventJournal
from planloop.tools.echo import build_echo_registry


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a plan file through the execution/recovery loop.")
    parser.add_argument("--plan", required=True, help="Plan JSON file (goal, steps, per-step actions).")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only validate the plan and print the create_plan summary; nothing is executed.",
    )
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite journal path (default: env PLANLOOP_SQLITE_PATH or data/events.db).",
    )
    parser.add_argument("--no-journal", action="store_true", help="Do not record trace events in SQLite.")
    parser.add_argument(
        "--reply",
        action="append",
        default=[],
        help="Scripted answer for the next escalation (repeatable). Falls back to stdin when exhausted.",
    )
    return parser.parse_args(argv)


def _load_plan_file(path: Path) -> dict[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ValueError(f"Plan file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Plan file must contain a JSON object: {path}")
    return data


def _verdict(step_number: int, raw: Any) -> VerificationReport:
    if not isinstance(raw, dict):
        raise ValueError(f"Step {step_number}: each verdict must be an object.")
    return VerificationReport(
        approved=bool(raw.get("approved")),
        issues=raw.get("issues"),
        observations=raw.get("observations"),
    )


def _split_plan(data: dict[str, Any]) -> tuple[dict[str, Any], dict[int, list[Any]], dict[int, list[VerificationReport]]]:
    """Separate the create_plan payload from per-step actions and scripted verdicts."""
    raw_steps = data.get("steps") or []
    if not isinstance(raw_steps, list):
        raise ValueError("steps must be a list.")

    actions: dict[int, list[Any]] = {}
    verdicts: dict[int, list[VerificationReport]] = {}
    steps: list[dict[str, Any]] = []
    for raw in raw_steps:
        if not isinstance(raw, dict):
            raise ValueError("Each step must be a JSON object.")
        step = dict(raw)
        n = step.get("step_number")
        if not isinstance(n, int) or isinstance(n, bool):
            raise ValueError(f"Each step needs an integer step_number (got {n!r}).")
        if "actions" in step:
            items = step.pop("actions") or []
            if not isinstance(items, list):
                raise ValueError(f"Step {n}: actions must be a list.")
            actions[n] = items
        if "verdicts" in step:
            items = step.pop("verdicts") or []
            if not isinstance(items, list):
                raise ValueError(f"Step {n}: verdicts must be a list.")
            verdicts[n] = [_verdict(n, v) for v in items]
        steps.append(step)

    request = {k: v for k, v in data.items() if k not in {"steps", "capabilities", "failures"}}
    request["steps"] = steps
    return request, actions, verdicts


def _capabilities(data: dict[str, Any], source: ScriptedActionSource, request: dict[str, Any]) -> dict[str, bool]:
    declared = data.get("capabilities")
    if declared is not None and not isinstance(declared, dict):
        raise ValueError("capabilities must map action names to a mutating flag.")
    if declared:
        return {str(k): bool(v) for k, v in declared.items()}
    names = source.action_names()
    for step in request["steps"]:
        names.extend(str(t) for t in step.get("tools_to_use") or [])
    return {n: True for n in dict.fromkeys(n for n in names if n)}


def _failures(data: dict[str, Any]) -> dict[str, list[str]]:
    raw = data.get("failures") or {}
    if not isinstance(raw, dict) or not all(isinstance(v, list) for v in raw.values()):
        raise ValueError("failures must map action names to lists of error texts.")
    return {str(k): [str(e) for e in v] for k, v in raw.items()}


def _reply_source(scripted: list[str]) -> Callable[[str], str]:
    queue = list(scripted)

    def _ask(message: str) -> str:
        print(message)
        if queue:
            reply = queue.pop(0)
            print(f"> {reply}")
            return reply
        try:
            return input("> ")
        except EOFError:
            return "abort"

    return _ask


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv or sys.argv[1:])

    try:
        app_config = load_app_config() if default_config_path().exists() else default_app_config()
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    try:
        data = _load_plan_file(Path(args.plan))
        request, actions, verdicts = _split_plan(data)
        source = ScriptedActionSource(actions, verdicts=verdicts)
        capabilities = _capabilities(data, source, request)
        failures = _failures(data)
    except ValueError as e:
        print(f"Invalid plan: {e}", file=sys.stderr)
        return 2

    store = SessionStore(enforce_dependencies=app_config.execution.enforce_dependencies)
    journal: EventJournal | None = None
    if app_config.journal.enabled and not args.no_journal and not args.dry_run:
        journal = EventJournal(args.db_path or None)
        store.subscribe(journal.observer(store.session_id))

    try:
        planning = PlanningInterface(store)
        try:
            print(planning.create_plan(request))
        except PlanValidationError as e:
            print(f"Invalid plan: {e}", file=sys.stderr)
            return 2
        if args.dry_run:
            return 0

        registry, _echo = build_echo_registry(capabilities, failures=failures)
        executor = PlanExecutor(
            store=store,
            registry=registry,
            source=source,
            config=app_config,
        )
        ask = _reply_source(list(args.reply))

        try:
            result = executor.run()
            while result.status == ExecutionStatus.AWAITING_HUMAN:
                result = executor.resume(ask(result.message or ""))
        except KeyboardInterrupt:
            executor.cancel.request_cancel("interrupted")
            store.cancel_plan(reason="interrupted")
            print("Cancelled.", file=sys.stderr)
            return 130

        if result.report:
            print(result.report)
        elif result.message:
            print(result.message)
        print(json.dumps({"session_id": store.session_id, **result.to_dict()}, ensure_ascii=False, indent=2))
        if journal is not None:
            print(f"Trace events recorded in {journal.db_path}")
        return 0 if result.status == ExecutionStatus.FINISHED else 1
    finally:
        if journal is not None:
            journal.close()


if __name__ == "__main__":
    raise SystemExit(main())
