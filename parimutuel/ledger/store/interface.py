"""LedgerStore protocol - pluggable persistence interface.

Implementations: FilesystemStore (gzip JSON snapshots), SqlStore
(relational tables via SQLAlchemy).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from parimutuel.ledger.models import LedgerSnapshot


@runtime_checkable
class LedgerStore(Protocol):
    """Abstract interface for persisting ledger snapshots."""

    async def put_snapshot(self, snapshot: LedgerSnapshot) -> str:
        """Write a snapshot. Returns the snapshot ID."""
        ...

    async def get_latest_snapshot(self) -> LedgerSnapshot | None:
        """Fetch the most recent snapshot."""
        ...

    async def list_snapshots(self) -> list[str]:
        """List stored snapshot IDs, oldest first."""
        ...


__all__ = ["LedgerStore"]
