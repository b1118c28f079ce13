from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

from planloop.utils.cancel import CancellationToken, CancelledError


class CapabilityRegistryError(RuntimeError):
    pass


@dataclass(frozen=True)
class ToolResult:
    success: bool
    content: str
    element_ids: list[int] = field(default_factory=list)
    # created | modified | deleted; only meaningful for mutating capabilities.
    change_type: str | None = None

    @property
    def is_error(self) -> bool:
        return not self.success

    @classmethod
    def ok(cls, content: str, *, element_ids: list[int] | None = None, change_type: str | None = None) -> "ToolResult":
        return cls(success=True, content=content, element_ids=list(element_ids or []), change_type=change_type)

    @classmethod
    def error(cls, message: str) -> "ToolResult":
        return cls(success=False, content=message)

    @classmethod
    def from_exception(cls, exc: Exception) -> "ToolResult":
        return cls(success=False, content=f"Capability execution failed: {exc}")


class CapabilityProvider(Protocol):
    def execute(self, action_name: str, tool_input: dict[str, Any], cancel: CancellationToken) -> ToolResult: ...


@dataclass(frozen=True)
class Capability:
    name: str
    provider: CapabilityProvider
    mutating: bool
    description: str = ""


class CapabilityRegistry:
    """Name -> capability lookup (case-insensitive)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_key: dict[str, Capability] = {}

    def register(
        self,
        name: str,
        provider: CapabilityProvider,
        *,
        mutating: bool,
        description: str = "",
    ) -> Capability:
        key = (name or "").strip().lower()
        if not key:
            raise CapabilityRegistryError("Capability name is required.")
        cap = Capability(name=name.strip(), provider=provider, mutating=bool(mutating), description=description)
        with self._lock:
            if key in self._by_key:
                raise CapabilityRegistryError(f"A capability named {name!r} is already registered.")
            self._by_key[key] = cap
        return cap

    def get(self, name: str) -> Capability | None:
        with self._lock:
            return self._by_key.get((name or "").strip().lower())

    def is_mutating(self, name: str) -> bool:
        cap = self.get(name)
        return bool(cap is not None and cap.mutating)

    def available_names(self) -> list[str]:
        with self._lock:
            return sorted(c.name for c in self._by_key.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_key)

    def invoke(self, name: str, tool_input: dict[str, Any], cancel: CancellationToken) -> ToolResult:
        """Run one capability. Failures come back as results; only cancellation raises."""
        cap = self.get(name)
        if cap is None:
            names = self.available_names()
            if not names:
                return ToolResult.error(f"Unknown capability: {name!r}. No capabilities are currently registered.")
            return ToolResult.error(f"Unknown capability: {name!r}. Registered: {', '.join(names)}")

        cancel.raise_if_cancelled()
        try:
            result = cap.provider.execute(cap.name, dict(tool_input), cancel)
        except CancelledError:
            raise
        except Exception as e:
            return ToolResult.from_exception(e)
        cancel.raise_if_cancelled()
        return result
