from __future__ import annotations

import time
from dataclasses import replace
from typing import Any

import pytest

from planloop.agents.executor import ExecutionStatus, ExecutorBusyError, PlanExecutor
from planloop.agents.planning import PlanningInterface
from planloop.agents.scripted import ScriptedActionSource
from planloop.config.load_config import AppConfig, RetryDelaysConfig, default_app_config
from planloop.plan.models import CompletionStatus
from planloop.plan.store import SessionStore
from planloop.runtime.worker import PlanWorker
from planloop.tools.echo import build_echo_registry


def _config(timeout_ms: int = 0) -> AppConfig:
    cfg = default_app_config()
    return replace(
        cfg,
        retry_delays=RetryDelaysConfig(
            invalid_parameter_ms=0,
            element_not_found_ms=0,
            type_not_available_ms=0,
            transaction_failed_ms=0,
            timeout_ms=timeout_ms,
        ),
    )


def _executor(*, failures: dict[str, list[str]] | None = None, timeout_ms: int = 0) -> tuple[SessionStore, PlanExecutor, list[str]]:
    store = SessionStore()
    events: list[str] = []
    store.subscribe(lambda t, _p: events.append(t))
    PlanningInterface(store).create_plan(
        {
            "goal": "Create a level",
            "steps": [{"step_number": 1, "description": "Create Level A", "tools_to_use": ["create_level"]}],
        }
    )
    registry, _echo = build_echo_registry({"create_level": True}, failures=failures)
    source = ScriptedActionSource({1: [{"action_name": "create_level", "tool_input": {"element_ids": [7]}}]})
    executor = PlanExecutor(store=store, registry=registry, source=source, config=_config(timeout_ms))
    return store, executor, events


def _wait_for(predicate: Any, timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not reached in time")


def test_worker_runs_plan_in_background() -> None:
    store, executor, _events = _executor()
    worker = PlanWorker(executor)
    worker.start()
    assert worker.wait(timeout_s=5.0)

    assert worker.last_result is not None
    assert worker.last_result.status == ExecutionStatus.FINISHED
    snap = worker.status_snapshot()
    assert snap["running"] is False
    assert snap["jobs"] == 1
    assert snap["last_error"] is None
    plan = store.snapshot().plan
    assert plan is not None and plan.completion_status == CompletionStatus.SUCCESS


def test_worker_rejects_second_job_and_stop_interrupts_retry_delay() -> None:
    store, executor, _events = _executor(failures={"create_level": ["Operation timed out"]}, timeout_ms=30_000)
    worker = PlanWorker(executor)
    worker.start()
    _wait_for(lambda: store.retry_count(1) >= 1)

    assert worker.running
    with pytest.raises(ExecutorBusyError):
        worker.start()

    started = time.monotonic()
    worker.stop(timeout_s=5.0)
    assert time.monotonic() - started < 5.0
    assert not worker.running

    assert worker.last_result is not None
    assert worker.last_result.status == ExecutionStatus.CANCELLED
    plan = store.snapshot().plan
    assert plan is not None
    assert plan.completion_status == CompletionStatus.CANCELLED
    assert worker.status_snapshot()["cancel_requested"] is True


def test_worker_records_job_failures() -> None:
    store = SessionStore()
    events: list[str] = []
    store.subscribe(lambda t, _p: events.append(t))
    registry, _echo = build_echo_registry({})
    executor = PlanExecutor(store=store, registry=registry, source=ScriptedActionSource(), config=_config())
    worker = PlanWorker(executor)
    worker.start()
    assert worker.wait(timeout_s=5.0)

    snap = worker.status_snapshot()
    assert snap["last_result"] is None
    assert snap["last_error"] is not None and snap["last_error"].startswith("PlanValidationError")
    assert "execution_failed" in events
