from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from planloop.agents.executor import ExecutorBusyError, PlanExecutor
from planloop.agents.planning import PlanningInterface
from planloop.agents.scripted import ScriptedActionSource
from planloop.config.load_config import AppConfig
from planloop.plan.models import CompletionStatus
from planloop.plan.store import PlanValidationError, SessionStore
from planloop.storage.sqlite_store import EventJournal
from planloop.tools.changes import ChangeTracker
from planloop.tools.registry import CapabilityRegistry

from .worker import PlanWorker


class SessionNotFoundError(KeyError):
    pass


@dataclass
class SessionRuntime:
    store: SessionStore
    planning: PlanningInterface
    changes: ChangeTracker
    created_at: float
    worker: PlanWorker | None = None
    _unsubscribe: list[Callable[[], None]] = field(default_factory=list)

    @property
    def session_id(self) -> str:
        return self.store.session_id

    @property
    def busy(self) -> bool:
        return self.worker is not None and self.worker.running

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "session": self.store.snapshot().to_dict(),
            "changes": self.changes.session_summary(),
            "worker": self.worker.status_snapshot() if self.worker is not None else None,
            "observer_errors": self.store.observer_errors,
        }


class SessionRegistry:
    """In-memory conversations keyed by session_id.

    Each session gets its own SessionStore, ChangeTracker and (while executing)
    PlanWorker. Trace events are mirrored into the journal when one is given.
    """

    def __init__(self, *, config: AppConfig, journal: EventJournal | None = None) -> None:
        self._config = config
        self._journal = journal
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionRuntime] = {}

    @property
    def journal(self) -> EventJournal | None:
        return self._journal

    @property
    def config(self) -> AppConfig:
        return self._config

    def create(self) -> SessionRuntime:
        store = SessionStore(enforce_dependencies=self._config.execution.enforce_dependencies)
        runtime = SessionRuntime(
            store=store,
            planning=PlanningInterface(store),
            changes=ChangeTracker(),
            created_at=time.time(),
        )
        if self._journal is not None:
            runtime._unsubscribe.append(store.subscribe(self._journal.observer(store.session_id)))
        with self._lock:
            self._sessions[store.session_id] = runtime
        store.trace("session_created", {})
        return runtime

    def get(self, session_id: str) -> SessionRuntime:
        with self._lock:
            runtime = self._sessions.get(session_id)
        if runtime is None:
            raise SessionNotFoundError(session_id)
        return runtime

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)

    def reset(self, session_id: str) -> SessionRuntime:
        runtime = self.get(session_id)
        if runtime.busy:
            raise ExecutorBusyError("Cannot reset a session while its plan is executing.")
        runtime.store.reset()
        runtime.changes.reset()
        runtime.worker = None
        return runtime

    def start_execution(
        self,
        session_id: str,
        *,
        registry: CapabilityRegistry,
        source: ScriptedActionSource,
    ) -> PlanWorker:
        runtime = self.get(session_id)
        if runtime.busy:
            raise ExecutorBusyError("A job is already running for this session.")
        snap = runtime.store.snapshot()
        if snap.plan is None or not snap.plan.is_active:
            raise PlanValidationError("No active plan to execute.")
        if snap.escalation is not None:
            raise PlanValidationError("The plan is waiting for a human reply; resume it instead.")
        executor = PlanExecutor(
            store=runtime.store,
            registry=registry,
            source=source,
            config=self._config,
            changes=runtime.changes,
        )
        worker = PlanWorker(executor)
        runtime.worker = worker
        worker.start()
        return worker

    def resume_execution(self, session_id: str, reply: str) -> PlanWorker:
        runtime = self.get(session_id)
        if runtime.worker is None:
            raise ExecutorBusyError("Nothing to resume: no execution was started for this session.")
        if runtime.store.snapshot().escalation is None:
            raise PlanValidationError("No escalation is pending.")
        runtime.worker.resume(reply)
        return runtime.worker

    def cancel(self, session_id: str, *, reason: str = "cancelled_by_user") -> bool:
        runtime = self.get(session_id)
        if runtime.busy and runtime.worker is not None:
            runtime.worker.executor.cancel.request_cancel(reason)
            runtime.worker.wait()
        runtime.store.cancel_plan(reason=reason)
        plan = runtime.store.snapshot().plan
        return plan is not None and plan.completion_status == CompletionStatus.CANCELLED

    def close(self) -> None:
        with self._lock:
            runtimes = list(self._sessions.values())
            self._sessions.clear()
        for runtime in runtimes:
            if runtime.worker is not None and runtime.worker.running:
                runtime.worker.stop()
            for unsubscribe in runtime._unsubscribe:
                unsubscribe()
