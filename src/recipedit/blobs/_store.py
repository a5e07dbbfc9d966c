"""BlobStore: protocol and shared records for blob storage backends."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Iterable

BlobKind = Literal["image", "attachment"]

# Logical table name per blob kind.
TABLES: dict[str, str] = {"image": "images", "attachment": "attachmentFiles"}


def utc_now() -> datetime:
    """Return the current timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def table_for(kind: str) -> str:
    """Return the logical table name for a blob kind."""
    try:
        return TABLES[kind]
    except KeyError:
        msg = f"Unknown blob kind {kind!r}; expected one of {sorted(TABLES)!r}."
        raise ValueError(msg) from None


def normalize_cutoff(older_than: datetime) -> datetime:
    """Normalize prune cutoff into timezone-aware UTC."""
    if older_than.tzinfo is None:
        return older_than.replace(tzinfo=timezone.utc)
    return older_than.astimezone(timezone.utc)


@dataclass(frozen=True, slots=True)
class BlobPayload:
    """Binary content plus the file name and media type it arrived with."""

    data: bytes = field(repr=False)
    filename: str
    media_type: str | None = None

    @property
    def size(self) -> int:
        """Payload size in bytes."""
        return len(self.data)


@dataclass(frozen=True, slots=True)
class StoredBlob:
    """One Blob Store record."""

    key: str
    payload: BlobPayload
    created_at: datetime


@dataclass(frozen=True, slots=True)
class PruneReport:
    """Result of a BlobStore prune operation."""

    deleted: tuple[StoredBlob, ...]
    bytes_freed: int
    examined: int
    dry_run: bool


def select_prune_candidates(entries: Iterable[StoredBlob], *, older_than: datetime) -> tuple[StoredBlob, ...]:
    """Select records created before the cutoff, oldest first (``created_at``, then ``key``)."""
    cutoff = normalize_cutoff(older_than)
    ordered = sorted(entries, key=lambda entry: (entry.created_at, entry.key))
    return tuple(entry for entry in ordered if entry.created_at < cutoff)


@runtime_checkable
class BlobStore(Protocol):
    """Async key -> payload storage, one logical table per blob kind.

    Keys are opaque strings with no structural relationship to document
    identity. Implementations must make ``initialize`` idempotent.
    """

    async def initialize(self) -> None:
        """Establish the underlying schema (once)."""
        ...

    async def store(self, key: str, payload: BlobPayload, *, kind: BlobKind = "image") -> StoredBlob:
        """Store ``payload`` under ``key``, replacing any previous record."""
        ...

    async def get(self, key: str, *, kind: BlobKind = "image") -> StoredBlob | None:
        """Return the record for ``key`` or ``None`` when absent."""
        ...

    async def delete(self, key: str, *, kind: BlobKind = "image") -> bool:
        """Delete ``key``. Return ``True`` when something was removed."""
        ...

    async def exists(self, key: str, *, kind: BlobKind = "image") -> bool:
        """Check whether ``key`` is stored."""
        ...

    async def list_blobs(self, *, kind: BlobKind = "image") -> tuple[StoredBlob, ...]:
        """List records of one kind, oldest first."""
        ...

    async def clear(self, *, kind: BlobKind | None = None) -> int:
        """Delete every record (of one kind, or all kinds). Return the count removed."""
        ...

    async def prune(
        self,
        *,
        older_than: datetime,
        kind: BlobKind = "image",
        dry_run: bool = False,
    ) -> PruneReport:
        """Delete records created before ``older_than`` and report what was (or would be) removed."""
        ...
