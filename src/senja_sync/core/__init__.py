"""Core sync components for Senja Sync."""

from senja_sync.core.schema import Collection
from senja_sync.core.chunker import FieldChunker
from senja_sync.core.sanitizer import sanitize, sanitize_record, sanitize_write
from senja_sync.core.cache import LocalCache
from senja_sync.core.state import StateManager, SyncStatus
from senja_sync.core.engine import PullResult, SyncEngine

__all__ = [
    "Collection",
    "FieldChunker",
    "sanitize",
    "sanitize_record",
    "sanitize_write",
    "LocalCache",
    "StateManager",
    "SyncStatus",
    "PullResult",
    "SyncEngine",
]
