"""
Field Chunker - Size-aware field splitting for flat, tabular payloads.

A spreadsheet cell holds at most 50k characters, while a certificate
background or a task upload is an image encoded as a data URL that easily
runs to several hundred thousand. Oversized text fields are split into
numbered columns on the way out and stitched back together on the way in.

Chunk column names are parsed into ChunkDescriptor objects here and only
here; nothing else in the package looks at field-name suffixes.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from senja_sync.config import Limits
from senja_sync.errors import ChunkSequenceError
from senja_sync.utils.logger import get_logger

logger = get_logger(__name__)

CHUNK_SEPARATOR = "_chunk_"
_CHUNK_NAME = re.compile(r"^(?P<base>.+)" + CHUNK_SEPARATOR + r"(?P<ordinal>\d+)$")


@dataclass(frozen=True, order=True)
class ChunkDescriptor:
    """Position of one fragment within a chunked field."""

    base: str
    ordinal: int

    @property
    def wire_name(self) -> str:
        """Column name used by the remote backend."""
        return f"{self.base}{CHUNK_SEPARATOR}{self.ordinal}"

    @classmethod
    def parse(cls, name: str) -> "ChunkDescriptor | None":
        """Parse a column name, returning None for ordinary fields."""
        match = _CHUNK_NAME.match(name)
        if match is None:
            return None
        return cls(match.group("base"), int(match.group("ordinal")))

    def __str__(self) -> str:
        return f"{self.base}#{self.ordinal}"


@dataclass(frozen=True)
class FieldFragment:
    """One outbound cell: the whole field, or one chunk of it."""

    field: str
    value: Any
    descriptor: ChunkDescriptor | None = None

    @property
    def name(self) -> str:
        """Column name on the wire."""
        return self.descriptor.wire_name if self.descriptor else self.field

    def __str__(self) -> str:
        return str(self.descriptor) if self.descriptor else self.field


@dataclass
class DecodedRecord:
    """Result of reassembling a record's chunked fields."""

    record: dict[str, Any]
    truncated: set[str] = field(default_factory=set)


def encode_field(name: str, value: Any, limit: int) -> list[FieldFragment]:
    """
    Split a field into fragments of at most ``limit`` characters.

    Values within the limit, and non-string values, come back as a single
    fragment under the original name. Longer strings become
    ``ceil(len / limit)`` contiguous fragments ``name#0 .. name#N-1``.

    Raises:
        ValueError: if ``limit`` is less than 1
    """
    if limit < 1:
        raise ValueError(f"Chunk limit must be at least 1, got {limit}")

    if not isinstance(value, str) or len(value) <= limit:
        return [FieldFragment(name, value)]

    return [
        FieldFragment(name, value[start : start + limit], ChunkDescriptor(name, ordinal))
        for ordinal, start in enumerate(range(0, len(value), limit))
    ]


def decode_fields(record: Mapping[str, Any], strict: bool = False) -> DecodedRecord:
    """
    Reassemble chunked fields of a flat record.

    Chunk columns may arrive in any order; they are grouped by base name,
    sorted by ordinal and concatenated. Fields without a chunk suffix pass
    through unchanged. When a sequence has a gap, strict mode raises;
    otherwise the contiguous prefix is kept and the field is reported in
    ``DecodedRecord.truncated``. Empty or null chunk cells count as absent,
    so a row whose chunk cells are all blank keeps its plain column.

    Raises:
        ChunkSequenceError: on a gap, in strict mode only
    """
    plain: dict[str, Any] = {}
    groups: dict[str, list[tuple[ChunkDescriptor, Any]]] = {}

    for name, value in record.items():
        descriptor = ChunkDescriptor.parse(name)
        if descriptor is None:
            plain[name] = value
        elif value is not None and value != "":
            # Blank cells under a shared chunk header belong to other rows
            groups.setdefault(descriptor.base, []).append((descriptor, value))

    decoded = DecodedRecord(record=plain)
    for base, fragments in groups.items():
        fragments.sort(key=lambda pair: pair[0].ordinal)

        parts: list[str] = []
        for expected, (descriptor, value) in enumerate(fragments):
            if descriptor.ordinal != expected:
                if strict:
                    raise ChunkSequenceError(base, expected)
                logger.warning(
                    "Field '%s' is missing chunk %d; keeping %d of %d fragments",
                    base,
                    expected,
                    expected,
                    len(fragments),
                )
                decoded.truncated.add(base)
                break
            # Sheets may hand back a numeric-looking chunk as a number
            parts.append(value if isinstance(value, str) else str(value))

        # Reassembled chunks win over a stale unchunked column of the same name
        plain[base] = "".join(parts)

    return decoded


class FieldChunker:
    """
    Size-aware record codec.

    Flattens nested values to JSON text and splits long strings so every
    outbound cell respects the backend's per-cell ceiling.

    Example:
        chunker = FieldChunker(limits)

        row = chunker.encode_record(record)      # outbound
        back = chunker.decode_record(row).record # inbound
    """

    def __init__(self, limits: Limits | None = None, chunk_size: int | None = None) -> None:
        """
        Initialize chunker with size limits.

        Args:
            limits: Backend limits from configuration
            chunk_size: Explicit chunk size, overrides the limits-derived one
        """
        self.limits = limits or Limits()
        self.chunk_size = chunk_size if chunk_size is not None else self.limits.chunk_size
        if self.chunk_size < 1:
            raise ValueError(f"Chunk size must be at least 1, got {self.chunk_size}")

    def flatten_value(self, value: Any) -> Any:
        """Render nested structures as JSON text; scalars pass through."""
        if isinstance(value, (dict, list, tuple)):
            return json.dumps(value, ensure_ascii=False)
        return value

    def encode_record(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Encode one record into flat, size-bounded cells."""
        row: dict[str, Any] = {}
        for name, value in record.items():
            for fragment in encode_field(name, self.flatten_value(value), self.chunk_size):
                row[fragment.name] = fragment.value
        return row

    def encode_records(self, records: list[Mapping[str, Any]]) -> list[dict[str, Any]]:
        """Encode every record of a collection."""
        return [self.encode_record(r) for r in records]

    def decode_record(self, record: Mapping[str, Any], strict: bool = False) -> DecodedRecord:
        """Reassemble chunked fields of one inbound record."""
        return decode_fields(record, strict=strict)

    def payload_size(self, rows: list[dict[str, Any]]) -> int:
        """Serialized size of an outbound payload in characters."""
        return len(json.dumps(rows, ensure_ascii=False))
