from __future__ import annotations

from typing import Any

import pytest

from planloop.plan.models import CompletionStatus, Step, StepStatus, VerificationStatus
from planloop.plan.store import PlanEvent, PlanValidationError, SessionStore


def _three_level_plan(store: SessionStore) -> None:
    store.create_plan(
        "Create 3 levels",
        [
            Step(step_number=1, description="Create Level A"),
            Step(step_number=2, description="Create Level B", depends_on=[1]),
            Step(step_number=3, description="Verify levels", is_verification=True, depends_on=[1, 2]),
        ],
    )


def test_create_plan_starts_all_steps_pending() -> None:
    store = SessionStore()
    _three_level_plan(store)
    snap = store.snapshot()
    assert snap.plan is not None
    assert [s.status for s in snap.plan.steps] == [StepStatus.PENDING] * 3
    assert snap.progress == {
        "pending": 3,
        "in_progress": 0,
        "completed": 0,
        "failed": 0,
        "skipped": 0,
        "total": 3,
    }


@pytest.mark.parametrize(
    "steps, fragment",
    [
        ([], "at least one step"),
        ([Step(step_number=1, description="a"), Step(step_number=1, description="b")], "Duplicate"),
        ([Step(step_number=1, description="  ")], "description is required"),
        ([Step(step_number=1, description="a", depends_on=[7])], "unknown step"),
        ([Step(step_number=1, description="a", depends_on=[1])], "cannot depend on itself"),
        ([Step(step_number=0, description="a")], "must be 1 or greater"),
    ],
)
def test_create_plan_rejects_malformed_steps(steps: list[Step], fragment: str) -> None:
    store = SessionStore()
    with pytest.raises(PlanValidationError) as e:
        store.create_plan("goal", steps)
    assert fragment in str(e.value)
    assert store.snapshot().plan is None


def test_valid_transitions_and_timestamps() -> None:
    store = SessionStore()
    _three_level_plan(store)

    started = store.start_step(1)
    assert started.status == StepStatus.IN_PROGRESS
    assert started.started_at is not None

    done = store.complete_step(1, result="ok")
    assert done.status == StepStatus.COMPLETED
    assert done.result == "ok"
    assert done.completed_at is not None

    store.start_step(2)
    failed = store.fail_step(2, reason="boom")
    assert failed.status == StepStatus.FAILED
    assert failed.failure_reason == "boom"

    # any -> Skipped, including from a terminal status
    skipped = store.skip_step(2, reason="not needed")
    assert skipped.status == StepStatus.SKIPPED
    assert skipped.failure_reason == "not needed"


@pytest.mark.parametrize("action", ["complete", "fail"])
def test_complete_or_fail_requires_in_progress(action: str) -> None:
    store = SessionStore()
    _three_level_plan(store)
    before = store.snapshot().to_dict()
    with pytest.raises(PlanValidationError):
        if action == "complete":
            store.complete_step(1)
        else:
            store.fail_step(1)
    after = store.snapshot().to_dict()
    assert before["plan"]["steps"] == after["plan"]["steps"]


def test_start_requires_pending() -> None:
    store = SessionStore()
    _three_level_plan(store)
    store.start_step(1)
    with pytest.raises(PlanValidationError):
        store.start_step(1)


def test_unknown_step_errors_without_mutation() -> None:
    store = SessionStore()
    _three_level_plan(store)
    before = store.snapshot().to_dict()
    with pytest.raises(PlanValidationError) as e:
        store.skip_step(42)
    assert "Known steps: [1, 2, 3]" in str(e.value)
    assert store.snapshot().to_dict()["plan"] == before["plan"]


def test_dependencies_block_start_until_settled() -> None:
    store = SessionStore()
    _three_level_plan(store)
    with pytest.raises(PlanValidationError) as e:
        store.start_step(2)
    assert "[1]" in str(e.value)

    store.skip_step(1, reason="exists already")
    assert store.start_step(2).status == StepStatus.IN_PROGRESS


def test_dependencies_ignored_when_not_enforced() -> None:
    store = SessionStore(enforce_dependencies=False)
    _three_level_plan(store)
    assert store.start_step(3).status == StepStatus.IN_PROGRESS


def test_next_ready_step_follows_plan_order_and_dependencies() -> None:
    store = SessionStore()
    _three_level_plan(store)
    ready = store.next_ready_step()
    assert ready is not None and ready.step_number == 1

    store.start_step(1)
    assert store.next_ready_step() is None
    store.complete_step(1)
    ready = store.next_ready_step()
    assert ready is not None and ready.step_number == 2


def test_add_step_numbers_after_max_and_inserts_in_position() -> None:
    store = SessionStore()
    _three_level_plan(store)
    added = store.add_step("Create Level C", after_step=1)
    assert added.step_number == 4
    assert added.status == StepStatus.PENDING

    numbers = [s.step_number for s in store.snapshot().plan.steps]  # type: ignore[union-attr]
    assert numbers == [1, 4, 2, 3]

    appended = store.add_step("Tag levels")
    assert appended.step_number == 5
    assert [s.step_number for s in store.snapshot().plan.steps][-1] == 5  # type: ignore[union-attr]


def test_add_step_after_unknown_step_is_rejected() -> None:
    store = SessionStore()
    _three_level_plan(store)
    with pytest.raises(PlanValidationError):
        store.add_step("x", after_step=9)
    assert len(store.snapshot().plan.steps) == 3  # type: ignore[union-attr]


def test_notes_are_kept_per_step_and_plan() -> None:
    store = SessionStore()
    _three_level_plan(store)
    store.add_note("plan-wide")
    store.add_note("about step 2", step_number=2)
    notes = store.snapshot().notes
    assert notes == {0: ["plan-wide"], 2: ["about step 2"]}


def test_record_verification_does_not_change_status() -> None:
    store = SessionStore()
    _three_level_plan(store)
    store.start_step(1)
    step = store.record_verification(1, VerificationStatus.ISSUES, issues="wrong elevation")
    assert step.status == StepStatus.IN_PROGRESS
    assert step.verification_status == VerificationStatus.ISSUES
    assert step.verification_issues == "wrong elevation"
    assert step.verified_at is not None


def test_snapshot_is_a_detached_copy() -> None:
    store = SessionStore()
    _three_level_plan(store)
    snap = store.snapshot()
    snap.plan.steps[0].status = StepStatus.COMPLETED  # type: ignore[union-attr]
    assert store.get_step(1).status == StepStatus.PENDING  # type: ignore[union-attr]


def test_observers_see_events_in_mutation_order() -> None:
    store = SessionStore()
    seen: list[tuple[str, dict[str, Any]]] = []
    store.subscribe(lambda event_type, payload: seen.append((event_type, payload)))

    _three_level_plan(store)
    store.start_step(1)
    store.complete_step(1)
    store.add_step("extra")

    types = [t for t, _ in seen]
    assert types == [
        PlanEvent.PLAN_CREATED,
        PlanEvent.STEP_UPDATED,
        PlanEvent.STEP_UPDATED,
        PlanEvent.PLAN_MODIFIED,
    ]
    assert seen[1][1]["step"]["status"] == "in_progress"
    assert seen[2][1]["progress"]["completed"] == 1
    assert all("ts" in p and p["session_id"] == store.session_id for _, p in seen)


def test_broken_observer_does_not_undo_mutation() -> None:
    store = SessionStore()

    def _boom(event_type: str, payload: dict[str, Any]) -> None:
        raise RuntimeError("observer down")

    unsubscribe = store.subscribe(_boom)
    _three_level_plan(store)
    assert store.snapshot().plan is not None
    assert store.observer_errors == ["plan_created: RuntimeError: observer down"]

    unsubscribe()
    store.start_step(1)
    assert len(store.observer_errors) == 1


def test_retry_ledger_counts_only_budgeted_records() -> None:
    store = SessionStore()
    _three_level_plan(store)
    store.record_retry(2, error="e1", suggested_modification=None)
    store.record_retry(2, error="e2", suggested_modification=None, budgeted=False)
    store.record_retry(1, error="e3", suggested_modification="fix")

    assert store.retry_count(2) == 1
    assert store.retry_count(1) == 1
    records = store.snapshot().retry_records
    assert [r.attempt for r in records if r.step_number == 2] == [1, 2]


def test_create_plan_resets_ledger_and_notes() -> None:
    store = SessionStore()
    _three_level_plan(store)
    store.record_retry(1, error="e", suggested_modification=None)
    store.add_note("n")
    _three_level_plan(store)
    snap = store.snapshot()
    assert snap.retry_records == ()
    assert snap.notes == {}


def test_cancel_plan_keeps_step_statuses() -> None:
    store = SessionStore()
    _three_level_plan(store)
    store.start_step(1)
    assert store.cancel_plan(reason="user") is True
    assert store.cancel_plan(reason="again") is False

    plan = store.snapshot().plan
    assert plan is not None
    assert plan.completion_status == CompletionStatus.CANCELLED
    assert plan.steps[0].status == StepStatus.IN_PROGRESS
    with pytest.raises(PlanValidationError):
        store.start_step(2)


def test_mutations_without_plan_are_rejected() -> None:
    store = SessionStore()
    with pytest.raises(PlanValidationError):
        store.start_step(1)
    with pytest.raises(PlanValidationError):
        store.add_note("x")
    assert store.progress()["total"] == 0


def test_reset_forgets_everything_but_session_id() -> None:
    store = SessionStore(session_id="ses_fixed")
    _three_level_plan(store)
    store.reset()
    snap = store.snapshot()
    assert snap.session_id == "ses_fixed"
    assert snap.plan is None
