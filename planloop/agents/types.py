from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from planloop.config.load_config import AppConfig
from planloop.plan.store import SessionStore
from planloop.tools.changes import ChangeTracker
from planloop.utils.cancel import CancellationToken


@dataclass
class ExecutionContext:
    store: SessionStore
    config: AppConfig
    cancel: CancellationToken
    changes: ChangeTracker | None = None
    # Human guidance received during escalations, oldest first.
    guidance: list[str] = field(default_factory=list)

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        self.store.trace(event_type, payload)

    def check_cancelled(self) -> None:
        self.cancel.raise_if_cancelled()

    def latest_guidance(self) -> str | None:
        return self.guidance[-1] if self.guidance else None
