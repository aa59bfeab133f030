"""
Record Sanitizer - Normalize remote rows into canonical records.

The spreadsheet backend has no rigid schema: columns come and go, cells
are typed by whoever typed them, and an empty sheet is a perfectly valid
answer. Sanitizing is therefore best-effort and never raises for bad
input. It validates every row through its collection model, gives rows
without a key a generated one, collapses duplicate keys and repairs
collection invariants (the administrator account, the settings row).

Sanitizing is idempotent: running it over its own output changes nothing.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from senja_sync.core.schema import (
    ADMIN_ID,
    ADMIN_USERNAME,
    Collection,
    default_admin,
)
from senja_sync.errors import InvariantViolation
from senja_sync.utils.logger import get_logger

logger = get_logger(__name__)


def new_key() -> str:
    """Generate a key for a record that arrived without one."""
    return uuid.uuid4().hex


def sanitize_record(collection: Collection, record: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize a single record without applying collection invariants.

    Used for caller writes. The key is left as-is (possibly blank); the
    cache generates one on upsert.

    Raises:
        TypeError: if ``record`` is not a mapping
    """
    _require_mapping(collection, record)
    try:
        return collection.model.model_validate(dict(record)).to_record()
    except ValidationError as e:
        # The annotated coercions accept any scalar, so this is a shape we
        # cannot salvage field by field; fall back to schema defaults.
        logger.warning("Falling back to defaults for %s record: %s", collection.value, e)
        return collection.model().to_record()


def sanitize_write(collection: Collection, record: Mapping[str, Any]) -> dict[str, Any]:
    """
    Normalize a caller write.

    Keys may be wire names or Python field names; see SheetRecord.wire_keys.

    Raises:
        TypeError: if ``record`` is not a mapping
    """
    _require_mapping(collection, record)
    return sanitize_record(collection, collection.model.wire_keys(record))


def sanitize(collection: Collection, raw: Any) -> list[dict[str, Any]]:
    """
    Normalize a batch of raw remote records for ``collection``.

    Args:
        collection: Target collection
        raw: Usually a list of dicts; a bare dict is accepted for Settings.
            Anything else is treated as an empty batch.

    Returns:
        Canonical records, keys present and unique, invariants repaired
    """
    rows = _as_rows(collection, raw)

    records: list[dict[str, Any]] = []
    for row in rows:
        if not isinstance(row, Mapping):
            logger.warning(
                "Dropping non-object row in %s: %r", collection.value, type(row).__name__
            )
            continue
        records.append(sanitize_record(collection, row))

    if collection.is_singleton:
        records = records[:1]
    else:
        records = _dedupe(collection, records)

    try:
        check_invariants(collection, records)
    except InvariantViolation as e:
        logger.warning("%s; repairing", e)
        records = _repair(collection, records)

    return records


def default_records(collection: Collection) -> list[dict[str, Any]]:
    """Records a collection holds when nothing else is known."""
    return sanitize(collection, [])


def check_invariants(collection: Collection, records: list[dict[str, Any]]) -> None:
    """
    Raise InvariantViolation if ``records`` break a collection invariant.

    Raises:
        InvariantViolation: Accounts without the administrator, or a
            Settings collection without exactly one row
    """
    if collection is Collection.ACCOUNTS:
        if not any(r.get("username") == ADMIN_USERNAME for r in records):
            raise InvariantViolation(collection.value, "administrator account missing")
    elif collection is Collection.SETTINGS:
        if len(records) != 1:
            raise InvariantViolation(
                collection.value, f"expected one settings row, found {len(records)}"
            )


def is_reserved(collection: Collection, record: Mapping[str, Any] | None) -> bool:
    """True for records that must never be deleted."""
    return (
        collection is Collection.ACCOUNTS
        and record is not None
        and record.get("username") == ADMIN_USERNAME
    )


def _require_mapping(collection: Collection, record: Any) -> None:
    if not isinstance(record, Mapping):
        raise TypeError(
            f"{collection.value} record must be a mapping, got {type(record).__name__}"
        )


def _as_rows(collection: Collection, raw: Any) -> list[Any]:
    if raw is None:
        return []
    if isinstance(raw, Mapping):
        # The backend script returns the settings sheet as a single object
        return [raw] if collection.is_singleton and raw else []
    if isinstance(raw, (list, tuple)):
        return list(raw)
    logger.warning(
        "Expected a list for %s, got %s; treating as empty",
        collection.value,
        type(raw).__name__,
    )
    return []


def _dedupe(collection: Collection, records: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    """Fill missing keys and keep the last record per key, in first-seen position."""
    key_field = collection.key_field
    if key_field is None:
        raise ValueError(f"{collection.value} has no key field to dedupe on")

    by_key: dict[str, dict[str, Any]] = {}
    for record in records:
        key = record.get(key_field, "").strip()
        if not key:
            key = new_key()
        record[key_field] = key
        if key in by_key:
            logger.debug("Duplicate %s key %s; last row wins", collection.value, key)
        by_key[key] = record
    return list(by_key.values())


def _repair(collection: Collection, records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    if collection is Collection.ACCOUNTS:
        taken = {r.get("id") for r in records}
        admin_id = ADMIN_ID if ADMIN_ID not in taken else new_key()
        return [*records, default_admin(admin_id)]
    if collection is Collection.SETTINGS:
        return records[:1] or [collection.model().to_record()]
    return records
