"""
Local Cache Store - Keyed, per-collection record storage.

The cache is the immediate source of truth for every read and the staging
area for every write. It never talks to the network. Each collection is
persisted as one JSON blob through a pluggable storage backend, under a
versioned key namespace; a blob that cannot be read, or that belongs to a
different version, is treated as empty rather than merged.
"""

from __future__ import annotations

import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol

from senja_sync.config import CacheOptions
from senja_sync.core.sanitizer import default_records, new_key, sanitize
from senja_sync.core.schema import Collection
from senja_sync.utils.logger import get_logger

logger = get_logger(__name__)

BLOB_VERSION = 1


class StorageBackend(Protocol):
    """Read/write access to text blobs by key."""

    def read(self, key: str) -> str | None: ...

    def write(self, key: str, blob: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryBackend:
    """Dict-backed storage for tests and throwaway sessions."""

    def __init__(self) -> None:
        self.blobs: dict[str, str] = {}

    def read(self, key: str) -> str | None:
        return self.blobs.get(key)

    def write(self, key: str, blob: str) -> None:
        self.blobs[key] = blob

    def remove(self, key: str) -> None:
        self.blobs.pop(key, None)


class JsonFileBackend:
    """
    One file per key inside a directory.

    Writes go to a temp file in the same directory and are renamed into
    place, so a crash mid-write leaves the previous blob intact.
    """

    def __init__(self, directory: Path | str) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def read(self, key: str) -> str | None:
        path = self.path_for(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read cache file %s: %s", path, e)
            return None

    def write(self, key: str, blob: str) -> None:
        path = self.path_for(key)
        fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=".tmp.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(blob)
            os.replace(tmp_path, path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


class LocalCache:
    """
    Per-collection record store.

    Example:
        cache = LocalCache(MemoryBackend())

        cache.upsert(Collection.ROSTER, {"nisn": "12345", "name": "Budi"})
        students = cache.get_all(Collection.ROSTER)

        # After a successful pull
        cache.replace(Collection.ROSTER, pulled_records)
    """

    def __init__(self, backend: StorageBackend, namespace: str = "senja.v1") -> None:
        """
        Initialize the cache.

        Args:
            backend: Blob storage
            namespace: Versioned key namespace; change it on incompatible
                schema changes so old blobs are ignored
        """
        self.backend = backend
        self.namespace = namespace
        self._collections: dict[Collection, list[dict[str, Any]]] = {}

    def blob_key(self, collection: Collection) -> str:
        return f"{self.namespace}.{collection.wire_key}"

    # =========================================================================
    # Reads
    # =========================================================================
    def get_all(self, collection: Collection) -> list[dict[str, Any]]:
        """All records of a collection, as copies."""
        return copy.deepcopy(self._records(collection))

    def get(self, collection: Collection, key: str) -> dict[str, Any] | None:
        """One record by key (the singleton for Settings), as a copy."""
        records = self._records(collection)
        if collection.is_singleton:
            return copy.deepcopy(records[0]) if records else None
        index = self._index_of(collection, records, key)
        return copy.deepcopy(records[index]) if index is not None else None

    def count(self, collection: Collection) -> int:
        return len(self._records(collection))

    # =========================================================================
    # Writes
    # =========================================================================
    def replace(self, collection: Collection, records: list[dict[str, Any]]) -> None:
        """Swap the whole collection. Used after a successful pull."""
        self._collections[collection] = copy.deepcopy(records)
        self._persist(collection)

    def upsert(self, collection: Collection, record: dict[str, Any]) -> dict[str, Any]:
        """
        Insert or replace a record by exact key match.

        A record without a key gets a generated one. For Settings the
        single row is replaced.

        Returns:
            The stored record (a copy), key included
        """
        record = copy.deepcopy(record)
        records = self._records(collection)

        key_field = collection.key_field
        if key_field is None:
            # Singleton collection
            records[:] = [record]
        else:
            key = str(record.get(key_field) or "").strip()
            if not key:
                key = new_key()
            record[key_field] = key

            index = self._index_of(collection, records, key)
            if index is None:
                records.append(record)
            else:
                records[index] = record

        self._persist(collection)
        return copy.deepcopy(record)

    def delete(self, collection: Collection, key: str) -> bool:
        """
        Remove a record by key.

        Returns:
            True if a record was removed

        Raises:
            ValueError: for the singleton Settings collection
        """
        if collection.is_singleton:
            raise ValueError(f"{collection.value} is a singleton and cannot be deleted from")

        records = self._records(collection)
        index = self._index_of(collection, records, key)
        if index is None:
            return False
        del records[index]
        self._persist(collection)
        return True

    def clear(self) -> None:
        """Forget everything, in memory and on the backend."""
        for collection in Collection:
            self.backend.remove(self.blob_key(collection))
        self._collections.clear()

    # =========================================================================
    # Persistence
    # =========================================================================
    def _records(self, collection: Collection) -> list[dict[str, Any]]:
        if collection not in self._collections:
            self._collections[collection] = self._load(collection)
        return self._collections[collection]

    def _load(self, collection: Collection) -> list[dict[str, Any]]:
        blob = self.backend.read(self.blob_key(collection))
        if blob is None:
            return default_records(collection)

        try:
            data = json.loads(blob)
        except json.JSONDecodeError as e:
            logger.warning("Unreadable cache blob for %s: %s", collection.value, e)
            return default_records(collection)

        if (
            not isinstance(data, dict)
            or data.get("version") != BLOB_VERSION
            or data.get("collection") != collection.value
            or not isinstance(data.get("records"), list)
        ):
            logger.warning("Incompatible cache blob for %s; starting empty", collection.value)
            return default_records(collection)

        return sanitize(collection, data["records"])

    def _persist(self, collection: Collection) -> None:
        blob = json.dumps(
            {
                "version": BLOB_VERSION,
                "collection": collection.value,
                "records": self._collections.get(collection, []),
            },
            ensure_ascii=False,
        )
        self.backend.write(self.blob_key(collection), blob)

    @staticmethod
    def _index_of(
        collection: Collection,
        records: list[dict[str, Any]],
        key: Any,
    ) -> int | None:
        key_field = collection.key_field
        wanted = str(key).strip()
        for i, record in enumerate(records):
            if str(record.get(key_field, "")) == wanted:
                return i
        return None


def create_cache(options: CacheOptions) -> LocalCache:
    """Create a LocalCache from settings."""
    backend: StorageBackend
    if options.backend == "memory":
        backend = MemoryBackend()
    else:
        backend = JsonFileBackend(options.directory)
    return LocalCache(backend, namespace=options.namespace)
