"""FileBlobStore: file-system-based blob storage."""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from pathlib import Path
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
from recipedit.errors import BlobIntegrityError, StorageError
from recipedit.serde import as_str_object_dict

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

_PAYLOAD_SUFFIX = ".blob"
_META_SUFFIX = ".meta.json"
_SCHEMA_FILE = "schema.json"

SCHEMA_VERSION = 2


def _create_table(table: str) -> Callable[[Path], None]:
    def migrate(root: Path) -> None:
        (root / table).mkdir(parents=True, exist_ok=True)

    return migrate


# Applied in order; each entry upgrades the store to the paired version.
MIGRATIONS: tuple[tuple[int, Callable[[Path], None]], ...] = (
    (1, _create_table(TABLES["image"])),
    (2, _create_table(TABLES["attachment"])),
)


class FileBlobStore:
    """File-system-based blob store.

    Each logical table is a directory under the root. A record is stored as
    ``<table>/<key>.blob`` with a ``<table>/<key>.meta.json`` sidecar holding
    the file name, media type, size, SHA-256 digest, and creation time.
    ``schema.json`` at the root records the applied schema version.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize with a root directory. Nothing is touched until ``initialize``."""
        self._root = Path(root)
        self._schema_version: int | None = None

    @property
    def root(self) -> Path:
        """Return the root directory path."""
        return self._root

    @property
    def schema_version(self) -> int | None:
        """Applied schema version, or ``None`` before ``initialize``."""
        return self._schema_version

    async def initialize(self) -> None:
        """Create the root and apply pending schema migrations. Safe to call repeatedly."""
        if self._schema_version == SCHEMA_VERSION:
            return
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            current = self._read_schema_version()
            if current > SCHEMA_VERSION:
                msg = f"Blob store at {self._root} has schema version {current}; newest supported is {SCHEMA_VERSION}."
                raise StorageError(msg)
            for version, migrate in MIGRATIONS:
                if version <= current:
                    continue
                migrate(self._root)
                current = version
                logger.info("Upgraded blob store %s to schema version %d", self._root, version)
            (self._root / _SCHEMA_FILE).write_text(json.dumps({"version": current}), encoding="utf-8")
        except OSError as exc:
            msg = f"Blob store at {self._root} is unavailable: {exc}"
            raise StorageError(msg) from exc
        self._schema_version = current

    def _read_schema_version(self) -> int:
        path = self._root / _SCHEMA_FILE
        if not path.exists():
            return 0
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            msg = f"Unreadable schema file {path}."
            raise StorageError(msg) from exc
        version = raw.get("version") if isinstance(raw, dict) else None
        if not isinstance(version, int) or version < 0:
            msg = f"Invalid schema version in {path}."
            raise StorageError(msg)
        return version

    def _require_initialized(self) -> None:
        if self._schema_version is None:
            msg = "FileBlobStore.initialize() must be awaited before use."
            raise StorageError(msg)

    def _resolve_path(self, key: str, *, kind: BlobKind, suffix: str) -> Path:
        """Resolve a record path and ensure it stays inside its table directory."""
        if not key:
            msg = "Blob key must be non-empty."
            raise StorageError(msg)
        table_dir = (self._root / table_for(kind)).resolve()
        candidate = (table_dir / f"{key}{suffix}").resolve()
        try:
            candidate.relative_to(table_dir)
        except ValueError:
            msg = f"Blob key {key!r} resolves outside store root."
            raise StorageError(msg) from None
        return candidate

    def _meta_to_payload(self, record: StoredBlob, digest: str) -> dict[str, object]:
        return {
            "key": record.key,
            "filename": record.payload.filename,
            "media_type": record.payload.media_type,
            "size": record.payload.size,
            "sha256": digest,
            "created_at": record.created_at.isoformat(),
        }

    def _read_meta(self, key: str, *, kind: BlobKind) -> dict[str, object] | None:
        """Read and sanity-check one sidecar; ``None`` when missing or malformed."""
        meta_path = self._resolve_path(key, kind=kind, suffix=_META_SUFFIX)
        if not meta_path.exists():
            return None
        try:
            meta = as_str_object_dict(json.loads(meta_path.read_text(encoding="utf-8")), field_name="meta")
        except (json.JSONDecodeError, TypeError):
            logger.warning("Ignoring malformed blob metadata %s", meta_path)
            return None
        if (
            meta.get("key") != key
            or not isinstance(meta.get("filename"), str)
            or not isinstance(meta.get("sha256"), str)
            or not isinstance(meta.get("created_at"), str)
        ):
            logger.warning("Ignoring malformed blob metadata %s", meta_path)
            return None
        return meta

    def _load(self, key: str, *, kind: BlobKind) -> StoredBlob | None:
        meta = self._read_meta(key, kind=kind)
        payload_path = self._resolve_path(key, kind=kind, suffix=_PAYLOAD_SUFFIX)
        if meta is None or not payload_path.exists():
            return None
        data = payload_path.read_bytes()
        expected = str(meta["sha256"])
        actual = hashlib.sha256(data).hexdigest()
        if actual != expected:
            raise BlobIntegrityError(key, expected, actual)
        try:
            created_at = datetime.fromisoformat(str(meta["created_at"]))
        except ValueError:
            created_at = utc_now()
        media_type = meta.get("media_type")
        return StoredBlob(
            key=key,
            payload=BlobPayload(
                data=data,
                filename=str(meta["filename"]),
                media_type=media_type if isinstance(media_type, str) else None,
            ),
            created_at=created_at,
        )

    async def store(self, key: str, payload: BlobPayload, *, kind: BlobKind = "image") -> StoredBlob:
        """Write payload and sidecar, replacing any previous record."""
        self._require_initialized()
        payload_path = self._resolve_path(key, kind=kind, suffix=_PAYLOAD_SUFFIX)
        meta_path = self._resolve_path(key, kind=kind, suffix=_META_SUFFIX)
        record = StoredBlob(key=key, payload=payload, created_at=utc_now())
        digest = hashlib.sha256(payload.data).hexdigest()
        try:
            payload_path.write_bytes(payload.data)
            meta_path.write_text(json.dumps(self._meta_to_payload(record, digest), ensure_ascii=False), encoding="utf-8")
        except OSError as exc:
            msg = f"Failed to store {kind} blob {key!r}: {exc}"
            raise StorageError(msg) from exc
        logger.debug("Stored %s blob %s (%d bytes)", kind, key, payload.size)
        return record

    async def get(self, key: str, *, kind: BlobKind = "image") -> StoredBlob | None:
        """Read one record and verify SHA-256 integrity."""
        self._require_initialized()
        try:
            return self._load(key, kind=kind)
        except OSError as exc:
            msg = f"Failed to read {kind} blob {key!r}: {exc}"
            raise StorageError(msg) from exc

    async def delete(self, key: str, *, kind: BlobKind = "image") -> bool:
        """Delete payload and sidecar."""
        self._require_initialized()
        deleted = False
        try:
            for suffix in (_PAYLOAD_SUFFIX, _META_SUFFIX):
                path = self._resolve_path(key, kind=kind, suffix=suffix)
                if path.exists():
                    path.unlink()
                    deleted = True
        except OSError as exc:
            msg = f"Failed to delete {kind} blob {key!r}: {exc}"
            raise StorageError(msg) from exc
        if deleted:
            logger.debug("Deleted %s blob %s", kind, key)
        return deleted

    async def exists(self, key: str, *, kind: BlobKind = "image") -> bool:
        """Check whether both payload and sidecar are present."""
        self._require_initialized()
        payload_path = self._resolve_path(key, kind=kind, suffix=_PAYLOAD_SUFFIX)
        meta_path = self._resolve_path(key, kind=kind, suffix=_META_SUFFIX)
        return payload_path.exists() and meta_path.exists()

    def _keys(self, kind: BlobKind) -> list[str]:
        table_dir = self._root / table_for(kind)
        if not table_dir.is_dir():
            return []
        return sorted(path.name[: -len(_META_SUFFIX)] for path in table_dir.glob(f"*{_META_SUFFIX}"))

    async def list_blobs(self, *, kind: BlobKind = "image") -> tuple[StoredBlob, ...]:
        """List readable records of one kind, oldest first. Corrupt records are skipped."""
        self._require_initialized()
        entries: list[StoredBlob] = []
        for key in self._keys(kind):
            try:
                record = self._load(key, kind=kind)
            except BlobIntegrityError:
                logger.warning("Skipping %s blob %s: integrity check failed", kind, key)
                continue
            except OSError as exc:
                msg = f"Failed to read {kind} blob {key!r}: {exc}"
                raise StorageError(msg) from exc
            if record is not None:
                entries.append(record)
        return tuple(sorted(entries, key=lambda entry: (entry.created_at, entry.key)))

    async def clear(self, *, kind: BlobKind | None = None) -> int:
        """Delete every record of one kind, or of all kinds."""
        self._require_initialized()
        kinds: list[BlobKind] = [kind] if kind is not None else ["image", "attachment"]
        count = 0
        for each in kinds:
            for key in self._keys(each):
                if await self.delete(key, kind=each):
                    count += 1
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
