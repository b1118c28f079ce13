from __future__ import annotations

import json
import threading
from collections import deque
from typing import Any

from planloop.utils.cancel import CancellationToken

from .registry import CapabilityRegistry, ToolResult


class EchoCapability:
    """Dry-run provider: echoes its input back as a successful result.

    Failures can be queued per action name to rehearse recovery paths without a
    real backend. Inputs may carry `element_ids` (reported as `change_type`,
    default "created").
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._failures: dict[str, deque[str]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def queue_failures(self, action_name: str, errors: list[str]) -> None:
        with self._lock:
            self._failures.setdefault(action_name.lower(), deque()).extend(errors)

    def execute(self, action_name: str, tool_input: dict[str, Any], cancel: CancellationToken) -> ToolResult:
        cancel.raise_if_cancelled()
        with self._lock:
            self.calls.append((action_name, dict(tool_input)))
            pending = self._failures.get(action_name.lower())
            error = pending.popleft() if pending else None
        if error is not None:
            return ToolResult.error(error)

        raw_ids = tool_input.get("element_ids") or []
        element_ids = [int(x) for x in raw_ids] if isinstance(raw_ids, list) else []
        change_type = str(tool_input.get("change_type") or "created") if element_ids else None
        content = json.dumps({"tool": action_name, "input": tool_input}, ensure_ascii=False, sort_keys=True)
        return ToolResult.ok(content, element_ids=element_ids, change_type=change_type)


def build_echo_registry(
    capabilities: dict[str, bool],
    *,
    failures: dict[str, list[str]] | None = None,
) -> tuple[CapabilityRegistry, EchoCapability]:
    """Registry where every named capability (name -> mutating) is served by one echo provider."""
    echo = EchoCapability()
    registry = CapabilityRegistry()
    for name, mutating in capabilities.items():
        registry.register(name, echo, mutating=bool(mutating), description="dry-run echo")
    for name, errors in (failures or {}).items():
        echo.queue_failures(name, list(errors))
    return registry, echo
