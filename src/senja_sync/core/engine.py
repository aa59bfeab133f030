"""
Sync Engine - Read-through and write-through orchestration.

Coordinates all components:
- Local cache for immediate reads and optimistic writes
- Sheet client for the remote pull and push
- Chunker for flattening and splitting oversized fields
- Sanitizer for turning remote rows into canonical records
- State manager for per-collection status and the pending-write journal

Concurrency model (single asyncio event loop):
- One lock per collection serializes network operations and cache swaps
  for that collection. A pull takes every lock in a fixed order, so it
  waits for in-flight pushes and later pushes wait for it.
- A refresh requested while one is in flight awaits the same task and
  gets the same result.
- A write while a push is in flight marks the collection dirty; the
  running push task pushes once more with the latest snapshot.
- Nothing is cancelled; every push or pull runs to completion or failure.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from senja_sync.config import Settings
from senja_sync.connectors.sheet_client import SheetClient, create_sheet_client
from senja_sync.core.cache import LocalCache, create_cache
from senja_sync.core.chunker import FieldChunker
from senja_sync.core.sanitizer import is_reserved, sanitize, sanitize_write
from senja_sync.core.schema import Collection
from senja_sync.core.state import CollectionState, StateManager, SyncStatus, WriteKind
from senja_sync.errors import MalformedDataError, TransportError
from senja_sync.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PullResult:
    """Outcome of a read-through refresh."""

    ok: bool
    degraded: bool = False
    error: str | None = None
    counts: dict[Collection, int] = field(default_factory=dict)
    errors: dict[Collection, str] = field(default_factory=dict)
    truncated: dict[Collection, set[str]] = field(default_factory=dict)
    reapplied: dict[Collection, int] = field(default_factory=dict)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        return 0.0


# Status callback type
StatusCallback = Callable[[CollectionState], None]


class SyncEngine:
    """
    Main sync engine coordinating cache and remote.

    Example:
        async with SyncEngine(settings) as engine:   # pulls on entry
            students = engine.get_all(Collection.ROSTER)

            engine.save(Collection.ROSTER, {"nisn": "12345", "name": "Budi"})
            await engine.wait_idle()                 # push has completed
    """

    def __init__(
        self,
        settings: Settings,
        cache: LocalCache | None = None,
        client: SheetClient | None = None,
        on_status: StatusCallback | None = None,
    ) -> None:
        """
        Initialize sync engine.

        Args:
            settings: Application settings
            cache: Local cache (default: built from settings.cache)
            client: Remote client (default: built from settings)
            on_status: Called whenever a collection's status changes
        """
        self.settings = settings
        self.cache = cache or create_cache(settings.cache)
        self.client = client or create_sheet_client(settings)
        self.chunker = FieldChunker(settings.limits)
        self.state_mgr = StateManager()
        self.on_status = on_status

        self._locks = {c: asyncio.Lock() for c in Collection}
        self._pull_task: asyncio.Task[PullResult] | None = None
        self._push_tasks: dict[Collection, asyncio.Task[bool]] = {}
        self._dirty: set[Collection] = set()

    async def __aenter__(self) -> "SyncEngine":
        if self.settings.sync.pull_on_start and self.settings.endpoint_url:
            await self.refresh()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Wait for in-flight work and close the HTTP client."""
        await self.wait_idle()
        await self.client.close()

    # =========================================================================
    # Reads
    # =========================================================================
    def get_all(self, collection: Collection) -> list[dict[str, Any]]:
        """All cached records of a collection. Never touches the network."""
        return self.cache.get_all(collection)

    def get(self, collection: Collection, key: str = "") -> dict[str, Any] | None:
        """One cached record by key; the key is ignored for Settings."""
        return self.cache.get(collection, key)

    def get_settings(self) -> dict[str, Any]:
        settings = self.cache.get(Collection.SETTINGS, "")
        return settings if settings is not None else {}

    @property
    def degraded(self) -> bool:
        """True when the last pull failed and reads are served from a stale cache."""
        return self.state_mgr.degraded

    def status(self, collection: Collection) -> CollectionState:
        return self.state_mgr.get(collection)

    def statuses(self) -> list[CollectionState]:
        return self.state_mgr.all()

    # =========================================================================
    # Writes
    # =========================================================================
    def save(self, collection: Collection, record: Mapping[str, Any]) -> dict[str, Any]:
        """
        Write a record locally and schedule a push.

        Returns as soon as the cache is updated; the push runs in the
        background. A push failure never rolls the local write back.
        Keys may be wire names (``classGrade``) or field names (``class_grade``).

        Returns:
            The stored record, with a generated key if none was supplied

        Raises:
            TypeError: if ``record`` is not a mapping
        """
        stored = self.cache.upsert(collection, sanitize_write(collection, record))
        self.state_mgr.record_write(collection, WriteKind.UPSERT, record=stored)
        self._schedule_push(collection)
        return stored

    def save_settings(self, **fields: Any) -> dict[str, Any]:
        """Update fields of the settings row, e.g. ``save_settings(cert_background=url)``."""
        return self.save(Collection.SETTINGS, {**self.get_settings(), **fields})

    def import_records(
        self,
        collection: Collection,
        records: list[Mapping[str, Any]],
    ) -> list[dict[str, Any]]:
        """Upsert many records with a single push, e.g. a roster import."""
        stored = []
        for record in records:
            row = self.cache.upsert(collection, sanitize_write(collection, record))
            self.state_mgr.record_write(collection, WriteKind.UPSERT, record=row)
            stored.append(row)
        if stored:
            self._schedule_push(collection)
        return stored

    def delete(self, collection: Collection, key: str) -> bool:
        """
        Delete a record locally and schedule a push.

        The administrator account cannot be deleted.

        Returns:
            True if a record was removed
        """
        if is_reserved(collection, self.cache.get(collection, key)):
            logger.warning("Refusing to delete the administrator account")
            return False

        if not self.cache.delete(collection, key):
            return False
        self.state_mgr.record_write(collection, WriteKind.DELETE, key=str(key))
        self._schedule_push(collection)
        return True

    # =========================================================================
    # Push
    # =========================================================================
    def _schedule_push(self, collection: Collection) -> asyncio.Task[bool] | None:
        """
        Queue a push of ``collection``.

        At most one push task runs per collection; scheduling while one is
        running only marks the collection dirty so the task goes around
        once more. Without a running event loop the push is deferred
        until flush().
        """
        self._dirty.add(collection)

        task = self._push_tasks.get(collection)
        if task is not None and not task.done():
            return task

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No event loop; %s push deferred until flush()", collection.value)
            return None

        task = loop.create_task(self._push_loop(collection))
        self._push_tasks[collection] = task
        return task

    async def _push_loop(self, collection: Collection) -> bool:
        ok = False
        while collection in self._dirty:
            self._dirty.discard(collection)
            ok = await self._push_once(collection)
            if not ok:
                # Leave later writes queued for the next explicit push
                break
        return ok

    async def _push_once(self, collection: Collection) -> bool:
        async with self._locks[collection]:
            up_to_seq = self.state_mgr.seq
            rows = self.chunker.encode_records(self.cache.get_all(collection))
            size = self.chunker.payload_size(rows)
            if size > self.settings.limits.max_payload_chars:
                logger.warning(
                    "%s payload is %d chars, above the %d the backend handles reliably",
                    collection.value,
                    size,
                    self.settings.limits.max_payload_chars,
                )

            self._set_status(collection, SyncStatus.PUSHING)
            try:
                await self.client.push_collection(collection, rows)
            except TransportError as e:
                logger.error(
                    "Push of %s failed: %s", collection.value, e,
                    extra={"collection": collection.value},
                )
                self.state_mgr.mark_push_failed(
                    collection,
                    up_to_seq,
                    str(e),
                    keep_writes=self.settings.sync.keep_unpushed_writes,
                )
                self._notify(collection)
                return False

            self.state_mgr.mark_pushed(collection, up_to_seq)
            self._notify(collection)
            logger.info("Pushed %d %s records", len(rows), collection.value)
            return True

    async def push(self, collection: Collection) -> bool:
        """
        Push a collection now and wait for the result.

        Returns:
            True if the last push attempt succeeded
        """
        task = self._schedule_push(collection)
        if task is None:
            raise RuntimeError("push() must be awaited inside a running event loop")
        return await asyncio.shield(task)

    async def flush(self) -> dict[Collection, bool]:
        """Push every collection with unconfirmed writes and wait for all of them."""
        pending = [
            c for c in Collection
            if c in self._dirty or self.state_mgr.get(c).has_pending
        ]
        results = await asyncio.gather(*(self.push(c) for c in pending))
        return dict(zip(pending, results))

    async def push_all(self) -> dict[Collection, bool]:
        """Push every collection from the cache, regardless of pending writes."""
        results = await asyncio.gather(*(self.push(c) for c in Collection))
        return dict(zip(Collection, results))

    async def wait_idle(self) -> None:
        """Wait until no pull or push task is running."""
        while True:
            tasks = [t for t in self._push_tasks.values() if not t.done()]
            if self._pull_task is not None and not self._pull_task.done():
                tasks.append(self._pull_task)
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # =========================================================================
    # Pull
    # =========================================================================
    async def refresh(self) -> PullResult:
        """
        Pull every collection and replace the cache with it.

        A refresh while another is in flight returns that refresh's
        result. On failure the cache is left untouched and the engine
        enters degraded mode until a pull succeeds.
        """
        if self._pull_task is None or self._pull_task.done():
            self._pull_task = asyncio.get_running_loop().create_task(self._pull())
        return await asyncio.shield(self._pull_task)

    async def _pull(self) -> PullResult:
        result = PullResult(ok=False, start_time=time.time())

        # Fixed order; pushes only ever hold one lock
        for collection in Collection:
            await self._locks[collection].acquire()
        try:
            previous = {c: self.state_mgr.get(c).status for c in Collection}
            for collection in Collection:
                self._set_status(collection, SyncStatus.PULLING)

            try:
                payload = await self.client.pull_all()
            except TransportError as e:
                logger.warning("Pull failed, serving cached data: %s", e)
                self.state_mgr.mark_pull_failed(str(e))
                for collection, status in previous.items():
                    self._set_status(collection, status)
                result.degraded = True
                result.error = str(e)
                result.end_time = time.time()
                return result

            for collection in Collection:
                self._apply_pulled(collection, payload, result)
            self.state_mgr.mark_pull_complete()
        finally:
            for collection in reversed(Collection):
                self._locks[collection].release()

        # Re-applied writes still need to reach the remote
        for collection in result.reapplied:
            self._schedule_push(collection)

        result.ok = True
        result.end_time = time.time()
        logger.info(
            "Pulled %s",
            ", ".join(f"{c.value}={n}" for c, n in result.counts.items()),
        )
        return result

    def _apply_pulled(
        self,
        collection: Collection,
        payload: Mapping[str, Any],
        result: PullResult,
    ) -> None:
        raw = payload.get(collection.wire_key)
        try:
            rows = self._rows_of(collection, raw)
        except MalformedDataError as e:
            logger.warning(
                "%s; treating as empty for this pull", e,
                extra={"collection": collection.value},
            )
            result.errors[collection] = str(e)
            rows = []

        truncated: set[str] = set()
        decoded = []
        for row in rows:
            if isinstance(row, Mapping):
                outcome = self.chunker.decode_record(row)
                truncated |= outcome.truncated
                row = outcome.record
            decoded.append(row)

        records = sanitize(collection, decoded)
        self.cache.replace(collection, records)
        reapplied = self._reapply_pending(collection)

        if reapplied:
            result.reapplied[collection] = reapplied
        if truncated:
            result.truncated[collection] = truncated
        result.counts[collection] = self.cache.count(collection)
        self.state_mgr.mark_pulled(collection, truncated)
        self._notify(collection)

    @staticmethod
    def _rows_of(collection: Collection, raw: Any) -> list[Any]:
        if raw is None:
            raise MalformedDataError(collection.value, "missing from payload")
        if isinstance(raw, list):
            return raw
        if collection.is_singleton and isinstance(raw, Mapping):
            return [raw] if raw else []
        raise MalformedDataError(collection.value, f"expected an array, got {type(raw).__name__}")

    def _reapply_pending(self, collection: Collection) -> int:
        """Replay journaled local writes on top of freshly pulled data."""
        pending = self.state_mgr.pending_writes(collection)
        for write in pending:
            if write.kind is WriteKind.UPSERT and write.record is not None:
                self.cache.upsert(collection, write.record)
            elif write.kind is WriteKind.DELETE and write.key is not None:
                self.cache.delete(collection, write.key)
        return len(pending)

    # =========================================================================
    # Status
    # =========================================================================
    def _set_status(self, collection: Collection, status: SyncStatus) -> None:
        self.state_mgr.set_status(collection, status, self.state_mgr.get(collection).last_error)
        self._notify(collection)

    def _notify(self, collection: Collection) -> None:
        if self.on_status:
            self.on_status(self.state_mgr.get(collection))

    def get_state_summary(self) -> dict[str, Any]:
        """Get summary of current sync state."""
        summary = self.state_mgr.get_summary()
        for name, entry in summary["collections"].items():
            entry["records"] = self.cache.count(Collection(name))
        return summary
