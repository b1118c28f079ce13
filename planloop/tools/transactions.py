from __future__ import annotations

from typing import Protocol


class TransactionCollaborator(Protocol):
    def rollback_if_active(self) -> bool: ...


class NullTransactions:
    """No transactional state to roll back (read-only or dry-run providers)."""

    def rollback_if_active(self) -> bool:
        return False
