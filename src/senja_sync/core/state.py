"""
Sync State - Per-collection status and the pending-write journal.

Provides in-process state tracking for:
- Sync status of each collection (idle, pulling, pushing, failed)
- Timestamps and last error per collection
- Local writes not yet confirmed by a successful push
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from senja_sync.core.schema import Collection


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SyncStatus(str, Enum):
    """Observable state of one collection."""

    IDLE = "idle"
    PULLING = "pulling"
    PUSHING = "pushing"
    FAILED = "failed"


class WriteKind(str, Enum):
    UPSERT = "upsert"
    DELETE = "delete"


@dataclass
class PendingWrite:
    """A local mutation waiting for a push that includes it to succeed."""

    seq: int
    kind: WriteKind
    record: dict[str, Any] | None = None
    key: str | None = None
    at: str = field(default_factory=_now)


@dataclass
class CollectionState:
    """Status tracking for a single collection."""

    collection: Collection
    status: SyncStatus = SyncStatus.IDLE
    last_pull_at: str | None = None
    last_push_at: str | None = None
    last_error: str | None = None
    pushes_ok: int = 0
    pushes_failed: int = 0
    truncated_fields: set[str] = field(default_factory=set)
    pending: list[PendingWrite] = field(default_factory=list)

    @property
    def has_pending(self) -> bool:
        return bool(self.pending)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for display or JSON output."""
        return {
            "collection": self.collection.value,
            "status": self.status.value,
            "last_pull_at": self.last_pull_at,
            "last_push_at": self.last_push_at,
            "last_error": self.last_error,
            "pushes_ok": self.pushes_ok,
            "pushes_failed": self.pushes_failed,
            "truncated_fields": sorted(self.truncated_fields),
            "pending_writes": len(self.pending),
        }


class StateManager:
    """
    Sync state for all collections.

    Example:
        state_mgr = StateManager()

        seq = state_mgr.record_write(Collection.ROSTER, WriteKind.UPSERT, record=row)
        state_mgr.set_status(Collection.ROSTER, SyncStatus.PUSHING)

        # A push that carried every write up to `seq` succeeded
        state_mgr.mark_pushed(Collection.ROSTER, seq)
    """

    def __init__(self) -> None:
        self._states = {c: CollectionState(collection=c) for c in Collection}
        self._seq = 0
        self.degraded = False
        self.last_pull_at: str | None = None
        self.last_pull_error: str | None = None

    def get(self, collection: Collection) -> CollectionState:
        return self._states[collection]

    def all(self) -> list[CollectionState]:
        return [self._states[c] for c in Collection]

    @property
    def seq(self) -> int:
        """Sequence number of the most recent journaled write."""
        return self._seq

    def set_status(
        self,
        collection: Collection,
        status: SyncStatus,
        error: str | None = None,
    ) -> None:
        """Update a collection's status, recording the error for FAILED."""
        state = self._states[collection]
        state.status = status
        if status is SyncStatus.FAILED:
            state.last_error = error

    # =========================================================================
    # Journal
    # =========================================================================
    def record_write(
        self,
        collection: Collection,
        kind: WriteKind,
        record: dict[str, Any] | None = None,
        key: str | None = None,
    ) -> int:
        """
        Journal a local write.

        Returns:
            The write's sequence number
        """
        self._seq += 1
        self._states[collection].pending.append(
            PendingWrite(seq=self._seq, kind=kind, record=record, key=key)
        )
        return self._seq

    def pending_writes(self, collection: Collection) -> list[PendingWrite]:
        return list(self._states[collection].pending)

    def mark_pushed(self, collection: Collection, up_to_seq: int) -> None:
        """A push carrying every write up to ``up_to_seq`` succeeded."""
        state = self._states[collection]
        state.pending = [w for w in state.pending if w.seq > up_to_seq]
        state.status = SyncStatus.IDLE
        state.last_push_at = _now()
        state.last_error = None
        state.pushes_ok += 1

    def mark_push_failed(
        self,
        collection: Collection,
        up_to_seq: int,
        error: str,
        keep_writes: bool = True,
    ) -> None:
        """
        A push failed. The writes it carried stay journaled unless
        ``keep_writes`` is False, in which case the next pull may drop them.
        """
        state = self._states[collection]
        if not keep_writes:
            state.pending = [w for w in state.pending if w.seq > up_to_seq]
        state.pushes_failed += 1
        self.set_status(collection, SyncStatus.FAILED, error)

    # =========================================================================
    # Pulls
    # =========================================================================
    def mark_pulled(self, collection: Collection, truncated: set[str]) -> None:
        state = self._states[collection]
        state.last_pull_at = _now()
        state.truncated_fields = set(truncated)
        state.status = SyncStatus.IDLE

    def mark_pull_complete(self) -> None:
        self.degraded = False
        self.last_pull_at = _now()
        self.last_pull_error = None

    def mark_pull_failed(self, error: str) -> None:
        self.degraded = True
        self.last_pull_error = error

    def get_summary(self) -> dict[str, Any]:
        """Get a summary of current state for display."""
        return {
            "degraded": self.degraded,
            "last_pull_at": self.last_pull_at,
            "last_pull_error": self.last_pull_error,
            "collections": {s.collection.value: s.to_dict() for s in self.all()},
        }

