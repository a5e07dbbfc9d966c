"""Local key-value storage for saved documents and the session snapshot."""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from filelock import FileLock, Timeout

from recipedit.document import Document, strip_ephemeral
from recipedit.errors import StorageError
from recipedit.serde import as_str_object_dict, object_list, optional_bool, optional_string, require_string

if TYPE_CHECKING:
    from collections.abc import Iterator
    from typing import TextIO

logger = logging.getLogger(__name__)

SESSION_ENTRY = "session"
DOCUMENTS_ENTRY = "documents"
DOCUMENT_IDS_ENTRY = "document_ids"

_ENTRY_NAME_RE = re.compile(r"[A-Za-z0-9_.-]+")


@runtime_checkable
class KeyValueStore(Protocol):
    """Durable named JSON entries."""

    async def read(self, name: str) -> object | None:
        """Return the decoded entry or ``None`` when absent."""
        ...

    async def write(self, name: str, value: object) -> None:
        """Replace the entry with ``value`` (JSON-serializable)."""
        ...

    async def delete(self, name: str) -> bool:
        """Remove the entry. Return ``True`` when something was removed."""
        ...


class InMemoryKeyValueStore:
    """In-memory key-value store for development and testing.

    Values are deep-copied on the way in and out. ``writes`` counts
    successful writes.
    """

    def __init__(self) -> None:
        """Initialize an empty store."""
        self._entries: dict[str, object] = {}
        self.writes = 0

    async def read(self, name: str) -> object | None:
        """Return a copy of the entry or ``None``."""
        return copy.deepcopy(self._entries.get(name))

    async def write(self, name: str, value: object) -> None:
        """Replace the entry."""
        try:
            json.dumps(value)
        except (TypeError, ValueError) as exc:
            msg = f"Entry {name!r} is not JSON-serializable: {exc}"
            raise StorageError(msg) from exc
        self._entries[name] = copy.deepcopy(value)
        self.writes += 1

    async def delete(self, name: str) -> bool:
        """Remove the entry."""
        return self._entries.pop(name, None) is not None


@contextlib.contextmanager
def atomic_write(path: Path) -> Iterator[TextIO]:
    """Write to a temporary file and atomically replace the destination."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex}")
    try:
        with tmp.open("w", encoding="utf-8") as handle:
            yield handle
            handle.flush()
            os.fsync(handle.fileno())
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


class FileKeyValueStore:
    """One ``<name>.json`` file per entry under a root directory.

    Writes are atomic and serialized across processes by a per-entry
    ``FileLock``.
    """

    def __init__(self, root: str | Path, *, lock_timeout: float = 10.0) -> None:
        """Initialize with a root directory and the lock acquisition timeout in seconds."""
        self._root = Path(root)
        self._lock_timeout = lock_timeout

    @property
    def root(self) -> Path:
        """Return the root directory path."""
        return self._root

    def _entry_path(self, name: str) -> Path:
        if not _ENTRY_NAME_RE.fullmatch(name) or name.startswith("."):
            msg = f"Invalid entry name {name!r}."
            raise StorageError(msg)
        return self._root / f"{name}.json"

    def _lock(self, path: Path) -> FileLock:
        return FileLock(str(path.with_name(f"{path.name}.lock")), timeout=self._lock_timeout)

    async def read(self, name: str) -> object | None:
        """Return the decoded entry or ``None`` when the file does not exist."""
        path = self._entry_path(name)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            msg = f"Failed to read entry {name!r}: {exc}"
            raise StorageError(msg) from exc
        try:
            return json.loads(text)
        except json.JSONDecodeError as exc:
            msg = f"Entry {name!r} is not valid JSON."
            raise StorageError(msg) from exc

    async def write(self, name: str, value: object) -> None:
        """Atomically replace the entry under its file lock."""
        path = self._entry_path(name)
        try:
            text = json.dumps(value, ensure_ascii=False, indent=2)
        except (TypeError, ValueError) as exc:
            msg = f"Entry {name!r} is not JSON-serializable: {exc}"
            raise StorageError(msg) from exc
        try:
            self._root.mkdir(parents=True, exist_ok=True)
            with self._lock(path), atomic_write(path) as handle:
                handle.write(text)
        except Timeout as exc:
            msg = f"Timed out acquiring lock for entry {name!r} after {self._lock_timeout}s."
            raise StorageError(msg) from exc
        except OSError as exc:
            msg = f"Failed to write entry {name!r}: {exc}"
            raise StorageError(msg) from exc

    async def delete(self, name: str) -> bool:
        """Remove the entry file."""
        path = self._entry_path(name)
        try:
            with self._lock(path):
                if not path.exists():
                    return False
                path.unlink()
        except Timeout as exc:
            msg = f"Timed out acquiring lock for entry {name!r} after {self._lock_timeout}s."
            raise StorageError(msg) from exc
        except OSError as exc:
            msg = f"Failed to delete entry {name!r}: {exc}"
            raise StorageError(msg) from exc
        return True


# =============================================================================
# Saved documents
# =============================================================================


class DocumentRepository:
    """Saved documents, stored as one list entry keyed by document id."""

    def __init__(self, store: KeyValueStore) -> None:
        """Initialize on top of a key-value store."""
        self._store = store

    async def _load_raw(self) -> list[dict[str, object]]:
        raw = await self._store.read(DOCUMENTS_ENTRY)
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring malformed %r entry", DOCUMENTS_ENTRY)
            return []
        return [item for item in raw if isinstance(item, dict)]

    async def _write_raw(self, items: list[dict[str, object]]) -> None:
        await self._store.write(DOCUMENTS_ENTRY, items)
        await self._store.write(DOCUMENT_IDS_ENTRY, [str(item.get("id", "")) for item in items])

    async def save(self, document: Document) -> None:
        """Insert or replace the saved copy with the same id."""
        if not document.id:
            msg = "Cannot save a document without an id."
            raise StorageError(msg)
        payload = strip_ephemeral(document).to_dict()
        items = await self._load_raw()
        for index, item in enumerate(items):
            if item.get("id") == document.id:
                items[index] = payload
                break
        else:
            items.append(payload)
        await self._write_raw(items)
        logger.debug("Saved document %s", document.id)

    async def list_documents(self) -> tuple[Document, ...]:
        """Return every readable saved document in save order."""
        documents: list[Document] = []
        for item in await self._load_raw():
            try:
                documents.append(Document.from_dict(item))
            except (TypeError, ValueError) as exc:
                logger.warning("Skipping unreadable saved document %r: %s", item.get("id"), exc)
        return tuple(documents)

    async def ids(self) -> tuple[str, ...]:
        """Return the ids of saved documents."""
        return tuple(str(item.get("id", "")) for item in await self._load_raw())

    async def get(self, document_id: str) -> Document | None:
        """Return the saved copy with ``document_id`` or ``None``."""
        for document in await self.list_documents():
            if document.id == document_id:
                return document
        return None

    async def delete(self, document_id: str) -> bool:
        """Remove the saved copy with ``document_id``."""
        items = await self._load_raw()
        kept = [item for item in items if item.get("id") != document_id]
        if len(kept) == len(items):
            return False
        await self._write_raw(kept)
        return True

    async def clear(self) -> None:
        """Remove every saved document."""
        await self._store.delete(DOCUMENTS_ENTRY)
        await self._store.delete(DOCUMENT_IDS_ENTRY)


# =============================================================================
# Session snapshot
# =============================================================================


@dataclass(frozen=True, slots=True)
class TabSnapshot:
    """Persisted form of one tab."""

    id: str
    title: str
    has_changes: bool
    is_active: bool
    document: Document

    def to_dict(self) -> dict[str, object]:
        """Serialize to the snapshot wire format."""
        return {
            "id": self.id,
            "title": self.title,
            "hasChanges": self.has_changes,
            "isActive": self.is_active,
            "recipe": strip_ephemeral(self.document).to_dict(),
        }

    @classmethod
    def from_dict(cls, value: object) -> TabSnapshot:
        """Deserialize from the snapshot wire format."""
        data = as_str_object_dict(value, field_name="tab")
        return cls(
            id=require_string(data.get("id"), field_name="tab.id"),
            title=optional_string(data.get("title"), field_name="tab.title") or "",
            has_changes=optional_bool(data.get("hasChanges"), field_name="tab.hasChanges"),
            is_active=optional_bool(data.get("isActive"), field_name="tab.isActive"),
            document=Document.from_dict(data.get("recipe")),
        )


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Persisted form of the whole tab session."""

    tabs: tuple[TabSnapshot, ...] = ()
    active_tab_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Serialize to the snapshot wire format."""
        return {"tabs": [tab.to_dict() for tab in self.tabs], "activeTabId": self.active_tab_id}

    @classmethod
    def from_dict(cls, value: object) -> SessionSnapshot:
        """Deserialize from the snapshot wire format."""
        data = as_str_object_dict(value, field_name="session")
        tabs = object_list(data.get("tabs"), field_name="tabs")
        return cls(
            tabs=tuple(TabSnapshot.from_dict(item) for item in tabs),
            active_tab_id=optional_string(data.get("activeTabId"), field_name="activeTabId"),
        )


class SessionSnapshotStore:
    """Reads and writes the ``session`` entry."""

    def __init__(self, store: KeyValueStore) -> None:
        """Initialize on top of a key-value store."""
        self._store = store

    async def save(self, snapshot: SessionSnapshot) -> None:
        """Replace the persisted snapshot."""
        await self._store.write(SESSION_ENTRY, snapshot.to_dict())

    async def load(self) -> SessionSnapshot | None:
        """Return the persisted snapshot, or ``None`` when absent or unreadable."""
        try:
            raw = await self._store.read(SESSION_ENTRY)
        except StorageError as exc:
            logger.warning("Discarding unreadable session snapshot: %s", exc)
            return None
        if raw is None:
            return None
        try:
            return SessionSnapshot.from_dict(raw)
        except (TypeError, ValueError) as exc:
            logger.warning("Discarding unreadable session snapshot: %s", exc)
            return None

    async def clear(self) -> None:
        """Remove the persisted snapshot."""
        await self._store.delete(SESSION_ENTRY)
