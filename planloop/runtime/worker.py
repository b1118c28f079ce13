from __future__ import annotations

import threading
import traceback
from dataclasses import dataclass
from typing import Any, Callable

from planloop.agents.executor import ExecutionResult, ExecutorBusyError, PlanExecutor
from planloop.utils.cancel import CancelledError


@dataclass(frozen=True)
class WorkerConfig:
    join_timeout_s: float = 5.0


class PlanWorker:
    """Background thread that drives one session's executor.

    One job at a time: `start()` runs the plan, `resume(reply)` answers an
    escalation. Both return immediately; results land in `status_snapshot()`.
    """

    def __init__(self, executor: PlanExecutor, *, config: WorkerConfig | None = None) -> None:
        self._executor = executor
        self._config = config or WorkerConfig()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_result: ExecutionResult | None = None
        self._last_error: str | None = None
        self._jobs = 0

    @property
    def executor(self) -> PlanExecutor:
        return self._executor

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_result(self) -> ExecutionResult | None:
        with self._lock:
            return self._last_result

    def status_snapshot(self) -> dict[str, Any]:
        with self._lock:
            result = self._last_result.to_dict() if self._last_result is not None else None
            error = self._last_error
            jobs = self._jobs
        return {
            "running": self.running,
            "jobs": jobs,
            "last_result": result,
            "last_error": error,
            "cancel_requested": self._executor.cancel.cancelled,
        }

    def start(self) -> None:
        self._launch(self._executor.run, job="run")

    def resume(self, reply: str) -> None:
        self._launch(lambda: self._executor.resume(reply), job="resume")

    def stop(self, *, timeout_s: float | None = None) -> None:
        """Cancel the executor (aborting any wait) and join the thread."""
        self._executor.cancel.request_cancel("worker_stopped")
        self.wait(timeout_s=timeout_s)

    def wait(self, *, timeout_s: float | None = None) -> bool:
        """Join the current job; True once no job is running."""
        t = self._thread
        if t is None:
            return True
        t.join(timeout=self._config.join_timeout_s if timeout_s is None else timeout_s)
        return not t.is_alive()

    def _launch(self, fn: Callable[[], ExecutionResult], *, job: str) -> None:
        with self._lock:
            if self.running:
                raise ExecutorBusyError("A job is already running for this session.")
            self._last_error = None
            self._jobs += 1
            self._thread = threading.Thread(
                target=self._run_job, args=(fn, job), name=f"planloop-plan-worker-{job}", daemon=True
            )
            self._thread.start()

    def _run_job(self, fn: Callable[[], ExecutionResult], job: str) -> None:
        ctx = self._executor.context
        try:
            result = fn()
        except CancelledError:
            # Cancellation outside a cancellable wait; the executor did not get to record it.
            ctx.store.cancel_plan(reason=self._executor.cancel.reason or "cancel_requested")
            with self._lock:
                self._last_error = "cancelled"
            return
        except Exception as e:
            # Keep the failure visible; the worker thread must not die silently.
            ctx.trace("execution_failed", {"job": job, "error": str(e), "traceback": traceback.format_exc()})
            with self._lock:
                self._last_error = f"{type(e).__name__}: {e}"
            return
        with self._lock:
            self._last_result = result
