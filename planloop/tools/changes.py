from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from planloop.utils.template import truncate_line


_MAX_SUMMARY_CHANGES = 20


@dataclass(frozen=True)
class ModelChange:
    change_type: str
    tool_name: str
    element_ids: tuple[int, ...]
    description: str
    step_number: int
    created_at: float


class ChangeTracker:
    """Model changes reported by mutating capabilities during one session."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._changes: list[ModelChange] = []

    def record(
        self,
        *,
        change_type: str,
        tool_name: str,
        element_ids: list[int],
        description: str,
        step_number: int,
    ) -> ModelChange:
        change = ModelChange(
            change_type=change_type,
            tool_name=tool_name,
            element_ids=tuple(element_ids),
            description=description,
            step_number=step_number,
            created_at=time.time(),
        )
        with self._lock:
            self._changes.append(change)
        return change

    def changes(self, *, step_number: int | None = None) -> list[ModelChange]:
        with self._lock:
            if step_number is None:
                return list(self._changes)
            return [c for c in self._changes if c.step_number == step_number]

    def element_ids(self, change_type: str) -> list[int]:
        seen: set[int] = set()
        out: list[int] = []
        for c in self.changes():
            if c.change_type != change_type:
                continue
            for eid in c.element_ids:
                if eid not in seen:
                    seen.add(eid)
                    out.append(eid)
        return out

    def session_summary(self) -> str:
        with self._lock:
            if not self._changes:
                return ""
            recent = self._changes[-_MAX_SUMMARY_CHANGES:]
            total = len(self._changes)

        lines: list[str] = []
        for c in recent:
            if len(c.element_ids) == 0:
                ids = ""
            elif len(c.element_ids) == 1:
                ids = f" [ID: {c.element_ids[0]}]"
            else:
                ids = f" [{len(c.element_ids)} elements]"
            lines.append(f"- {c.change_type}: {c.tool_name}{ids} - {truncate_line(c.description, 80)}")
        if total > _MAX_SUMMARY_CHANGES:
            lines.append(f"(showing {_MAX_SUMMARY_CHANGES} of {total} total changes)")
        return "\n".join(lines)

    def reset(self) -> None:
        with self._lock:
            self._changes.clear()
