"""
Error taxonomy for Senja Sync.

Every error here is recoverable. The orchestrator catches them at the
collection boundary and turns them into degraded data or a status flag;
none of them should ever take the process down.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for all sync errors."""

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransportError(SyncError):
    """Network failure or non-success HTTP status on pull or push."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, code)
        self.status = status


class MalformedDataError(SyncError):
    """A collection in the remote payload is not an array of objects."""

    def __init__(self, collection: str, detail: str = "") -> None:
        message = f"Malformed payload for {collection}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, code="malformed")
        self.collection = collection


class ChunkSequenceError(SyncError):
    """A chunked field has a gap in its ordinal sequence."""

    def __init__(self, field: str, missing: int) -> None:
        super().__init__(
            f"Chunk sequence for '{field}' is missing ordinal {missing}",
            code="chunk_gap",
        )
        self.field = field
        self.missing = missing


class InvariantViolation(SyncError):
    """A collection invariant does not hold. Healed internally, never surfaced."""

    def __init__(self, collection: str, detail: str) -> None:
        super().__init__(f"{collection}: {detail}", code="invariant")
        self.collection = collection
