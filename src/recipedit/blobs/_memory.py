"""InMemoryBlobStore: dict-based blob storage for development and testing."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from recipedit.blobs._store import (
    TABLES,
    BlobKind,
    BlobPayload,
    PruneReport,
    StoredBlob,
    select_prune_candidates,
    table_for,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime

logger = logging.getLogger(__name__)


class InMemoryBlobStore:
    """In-memory blob store for development and testing."""

    def __init__(self) -> None:
        """Initialize an empty in-memory store."""
        self._tables: dict[str, dict[str, StoredBlob]] = {table: {} for table in TABLES.values()}
        self._initialized = False

    @classmethod
    def from_preloaded(
        cls,
        payloads: Mapping[str, BlobPayload],
        *,
        kind: BlobKind = "image",
    ) -> InMemoryBlobStore:
        """Build a store from preloaded ``key -> payload`` data."""
        store = cls()
        table = store._tables[table_for(kind)]
        for key, payload in payloads.items():
            table[key] = StoredBlob(key=key, payload=payload, created_at=utc_now())
        return store

    @property
    def initialized(self) -> bool:
        """Whether ``initialize`` has run."""
        return self._initialized

    async def initialize(self) -> None:
        """Mark the store ready. Safe to call repeatedly."""
        self._initialized = True

    async def store(self, key: str, payload: BlobPayload, *, kind: BlobKind = "image") -> StoredBlob:
        """Store ``payload`` under ``key``, replacing any previous record."""
        record = StoredBlob(key=key, payload=payload, created_at=utc_now())
        self._tables[table_for(kind)][key] = record
        logger.debug("Stored %s blob %s (%d bytes)", kind, key, payload.size)
        return record

    async def get(self, key: str, *, kind: BlobKind = "image") -> StoredBlob | None:
        """Return the record for ``key`` or ``None``."""
        return self._tables[table_for(kind)].get(key)

    async def delete(self, key: str, *, kind: BlobKind = "image") -> bool:
        """Delete ``key``."""
        removed = self._tables[table_for(kind)].pop(key, None)
        if removed is not None:
            logger.debug("Deleted %s blob %s", kind, key)
        return removed is not None

    async def exists(self, key: str, *, kind: BlobKind = "image") -> bool:
        """Check whether ``key`` is stored."""
        return key in self._tables[table_for(kind)]

    async def list_blobs(self, *, kind: BlobKind = "image") -> tuple[StoredBlob, ...]:
        """List records of one kind, oldest first."""
        entries = self._tables[table_for(kind)].values()
        return tuple(sorted(entries, key=lambda entry: (entry.created_at, entry.key)))

    async def clear(self, *, kind: BlobKind | None = None) -> int:
        """Delete every record of one kind, or of all kinds."""
        tables = [table_for(kind)] if kind is not None else list(TABLES.values())
        count = 0
        for table in tables:
            count += len(self._tables[table])
            self._tables[table].clear()
        return count

    async def prune(
        self,
        *,
        older_than: datetime,
        kind: BlobKind = "image",
        dry_run: bool = False,
    ) -> PruneReport:
        """Prune records created before ``older_than``, optionally in dry-run mode.

        References are not checked; use ``SessionManager.prune_blobs`` while
        documents may still point at these keys.
        """
        entries = await self.list_blobs(kind=kind)
        deleted = select_prune_candidates(entries, older_than=older_than)
        if not dry_run:
            for entry in deleted:
                await self.delete(entry.key, kind=kind)
        return PruneReport(
            deleted=deleted,
            bytes_freed=sum(entry.payload.size for entry in deleted),
            examined=len(entries),
            dry_run=dry_run,
        )
