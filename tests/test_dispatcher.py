from __future__ import annotations

from typing import Any

import pytest

from planloop.config.load_config import RetryDelaysConfig, default_app_config
from planloop.engine.dispatcher import ActionRequest, CapabilityDispatcher, DispatchKind, stopping_outcome
from planloop.engine.recovery import RecoveryAction, RecoveryEngine
from planloop.plan.models import CompletionStatus, Step, StepStatus
from planloop.plan.store import SessionStore
from planloop.tools.changes import ChangeTracker
from planloop.tools.echo import EchoCapability, build_echo_registry
from planloop.tools.registry import CapabilityRegistry, ToolResult
from planloop.utils.cancel import CancellationToken


_NO_DELAYS = RetryDelaysConfig(
    invalid_parameter_ms=0,
    element_not_found_ms=0,
    type_not_available_ms=0,
    transaction_failed_ms=0,
    timeout_ms=0,
)


class _FakeTransactions:
    def __init__(self) -> None:
        self.rollbacks = 0

    def rollback_if_active(self) -> bool:
        self.rollbacks += 1
        return True


def _store_with_step_two_running() -> SessionStore:
    store = SessionStore()
    store.create_plan(
        "Create 3 levels",
        [
            Step(step_number=1, description="Create Level A"),
            Step(step_number=2, description="Create Level B"),
            Step(step_number=3, description="Verify levels", is_verification=True),
        ],
    )
    store.start_step(1)
    store.complete_step(1, result="ok")
    store.start_step(2)
    return store


def _dispatcher(
    store: SessionStore,
    registry: CapabilityRegistry,
    *,
    delays: RetryDelaysConfig = _NO_DELAYS,
    max_retries: int = 2,
    **kwargs: Any,
) -> CapabilityDispatcher:
    return CapabilityDispatcher(
        store=store,
        registry=registry,
        recovery=RecoveryEngine(max_retries=max_retries, delays=delays),
        **kwargs,
    )


def test_element_not_found_refreshes_then_succeeds() -> None:
    store = _store_with_step_two_running()
    registry, echo = build_echo_registry({"create_level": True}, failures={"create_level": ["Element not found: Level B"]})
    decisions: list[dict[str, Any]] = []
    store.subscribe(lambda t, p: decisions.append(p["strategy"]) if t == "recovery_decision" else None)

    # Default delays: element_not_found waits 500 ms before the retry.
    dispatcher = _dispatcher(store, registry, delays=default_app_config().retry_delays)
    outcome = dispatcher.dispatch(ActionRequest(2, "create_level", {"name": "Level B"}), CancellationToken())

    assert outcome.kind == DispatchKind.SUCCEEDED
    assert outcome.attempts == 2
    assert decisions[0]["action"] == RecoveryAction.REFRESH_CONTEXT_AND_RETRY.value
    assert decisions[0]["retry_delay_s"] == pytest.approx(0.5)
    records = [r for r in store.snapshot().retry_records if r.step_number == 2]
    assert len(records) == 1
    assert records[0].error == "Element not found: Level B"
    assert len(echo.calls) == 2


def test_geometry_conflict_skips_step_without_retrying() -> None:
    store = _store_with_step_two_running()
    registry, echo = build_echo_registry(
        {"create_level": True}, failures={"create_level": ["geometry conflict with existing beam"]}
    )
    outcome = _dispatcher(store, registry).dispatch(ActionRequest(2, "create_level"), CancellationToken())

    assert outcome.kind == DispatchKind.SKIPPED
    assert outcome.attempts == 1
    step = store.get_step(2)
    assert step is not None
    assert step.status == StepStatus.SKIPPED
    assert step.failure_reason == "geometry conflict with existing beam"
    assert len(echo.calls) == 1


def test_retry_budget_exhaustion_escalates_with_retry_count() -> None:
    store = _store_with_step_two_running()
    registry, _echo = build_echo_registry(
        {"create_wall": True}, failures={"create_wall": ["invalid parameter: type not found"] * 3}
    )
    outcome = _dispatcher(store, registry, max_retries=2).dispatch(
        ActionRequest(2, "create_wall"), CancellationToken()
    )

    assert outcome.kind == DispatchKind.ESCALATED
    assert outcome.needs_human_input
    assert outcome.attempts == 3
    assert outcome.retry_count == 2
    assert outcome.strategy is not None and outcome.strategy.action == RecoveryAction.ESCALATE_TO_USER
    assert "after 2 retries" in (outcome.message or "")
    # Step stays InProgress while waiting for a human.
    assert store.get_step(2).status == StepStatus.IN_PROGRESS  # type: ignore[union-attr]


def test_unknown_capability_escalates_listing_registered_names() -> None:
    store = _store_with_step_two_running()
    registry, _echo = build_echo_registry({"create_level": True, "get_levels": False})
    outcome = _dispatcher(store, registry).dispatch(ActionRequest(2, "make_roof"), CancellationToken())

    assert outcome.kind == DispatchKind.ESCALATED
    assert outcome.result is not None
    assert "Registered: create_level, get_levels" in outcome.result.content


def test_provider_exception_becomes_failure_result() -> None:
    class _Broken:
        def execute(self, action_name: str, tool_input: dict[str, Any], cancel: CancellationToken) -> ToolResult:
            raise RuntimeError("socket closed")

    store = _store_with_step_two_running()
    registry = CapabilityRegistry()
    registry.register("create_level", _Broken(), mutating=True)
    outcome = _dispatcher(store, registry).dispatch(ActionRequest(2, "create_level"), CancellationToken())

    assert outcome.kind == DispatchKind.ESCALATED
    assert outcome.result is not None
    assert outcome.result.content == "Capability execution failed: socket closed"


def test_transaction_failure_rolls_back_before_retry() -> None:
    store = _store_with_step_two_running()
    tx = _FakeTransactions()
    registry, _echo = build_echo_registry({"create_level": True}, failures={"create_level": ["Transaction failed"]})
    outcome = _dispatcher(store, registry, transactions=tx).dispatch(
        ActionRequest(2, "create_level"), CancellationToken()
    )
    assert outcome.succeeded
    assert tx.rollbacks == 1


def test_adjust_input_is_applied_between_attempts() -> None:
    store = _store_with_step_two_running()
    registry, echo = build_echo_registry({"create_wall": True}, failures={"create_wall": ["Wall type not available"]})

    def _adjust(tool_input: dict[str, Any], strategy: Any) -> dict[str, Any]:
        tool_input["type"] = "Generic - 200mm"
        return tool_input

    outcome = _dispatcher(store, registry).dispatch(
        ActionRequest(2, "create_wall", {"type": "Missing"}), CancellationToken(), adjust_input=_adjust
    )
    assert outcome.succeeded
    assert [c[1]["type"] for c in echo.calls] == ["Missing", "Generic - 200mm"]


def test_guided_attempt_does_not_consume_budget() -> None:
    store = _store_with_step_two_running()
    registry, _echo = build_echo_registry(
        {"create_wall": True}, failures={"create_wall": ["invalid value", "invalid value"]}
    )
    outcome = _dispatcher(store, registry).dispatch(ActionRequest(2, "create_wall"), CancellationToken(), guided=True)

    assert outcome.succeeded
    records = [r for r in store.snapshot().retry_records if r.step_number == 2]
    assert [r.budgeted for r in records] == [False, True]
    assert store.retry_count(2) == 1


def test_mutating_success_is_tracked_as_change() -> None:
    store = _store_with_step_two_running()
    changes = ChangeTracker()
    registry, _echo = build_echo_registry({"create_level": True, "get_levels": False})
    d = _dispatcher(store, registry, changes=changes)
    d.dispatch(ActionRequest(2, "create_level", {"element_ids": [7, 8]}), CancellationToken())
    d.dispatch(ActionRequest(2, "get_levels", {"element_ids": [9]}), CancellationToken())

    tracked = changes.changes(step_number=2)
    assert len(tracked) == 1
    assert tracked[0].element_ids == (7, 8)
    assert changes.element_ids("created") == [7, 8]


def test_cancel_during_retry_delay_cancels_plan() -> None:
    store = _store_with_step_two_running()
    token = CancellationToken()

    class _FailThenCancel:
        def execute(self, action_name: str, tool_input: dict[str, Any], cancel: CancellationToken) -> ToolResult:
            return ToolResult.error("Operation timed out")

    registry = CapabilityRegistry()
    registry.register("create_level", _FailThenCancel(), mutating=True)
    delays = RetryDelaysConfig(
        invalid_parameter_ms=0,
        element_not_found_ms=0,
        type_not_available_ms=0,
        transaction_failed_ms=0,
        timeout_ms=60_000,
    )
    store.subscribe(lambda t, p: token.request_cancel("user") if t == "recovery_decision" else None)

    outcome = _dispatcher(store, registry, delays=delays).dispatch(ActionRequest(2, "create_level"), token)

    assert outcome.kind == DispatchKind.CANCELLED
    plan = store.snapshot().plan
    assert plan is not None
    assert plan.completion_status == CompletionStatus.CANCELLED
    assert plan.summary == "user"
    assert store.get_step(2).status == StepStatus.IN_PROGRESS  # type: ignore[union-attr]


def test_dispatch_batch_stops_at_first_non_success() -> None:
    store = _store_with_step_two_running()
    registry, echo = build_echo_registry(
        {"a": True, "b": True, "c": True}, failures={"b": ["geometry overlap"]}
    )
    outcomes = _dispatcher(store, registry).dispatch_batch(
        [ActionRequest(2, "a"), ActionRequest(2, "b"), ActionRequest(2, "c")], CancellationToken()
    )
    assert [o.kind for o in outcomes] == [DispatchKind.SUCCEEDED, DispatchKind.SKIPPED, DispatchKind.NOT_RUN]
    assert [c[0] for c in echo.calls] == ["a", "b"]
    assert outcomes[2].request.action_name == "c"
    assert outcomes[2].message == "Not run: b ended the batch (skipped)."
    assert stopping_outcome(outcomes) is outcomes[1]


def test_batch_guidance_applies_to_the_first_recorded_failure() -> None:
    store = _store_with_step_two_running()
    registry, _echo = build_echo_registry({"a": False, "b": True}, failures={"b": ["invalid value"]})
    outcomes = _dispatcher(store, registry).dispatch_batch(
        [ActionRequest(2, "a"), ActionRequest(2, "b")], CancellationToken(), guided=True
    )

    assert all(o.succeeded for o in outcomes)
    assert outcomes[0].guidance_pending is True
    assert outcomes[1].guidance_pending is False
    records = [r for r in store.snapshot().retry_records if r.step_number == 2]
    assert [r.budgeted for r in records] == [False]
    assert store.retry_count(2) == 0


def test_echo_capability_records_calls() -> None:
    echo = EchoCapability()
    result = echo.execute("create_level", {"element_ids": [1], "change_type": "modified"}, CancellationToken())
    assert result.success
    assert result.element_ids == [1]
    assert result.change_type == "modified"
    assert echo.calls == [("create_level", {"element_ids": [1], "change_type": "modified"})]
