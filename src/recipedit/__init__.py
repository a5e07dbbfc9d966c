"""recipedit: local multi-document editor core for recipe documentation."""

import importlib.metadata as importlib_metadata

from recipedit.archive import ArchiveReconciler, EntryFailure, ExportProgress, ImportProgress, ImportReport
from recipedit.autosave import AutosavePipeline
from recipedit.blobs import (
    BlobPayload,
    BlobStore,
    FileBlobStore,
    InMemoryBlobStore,
    StoredBlob,
    ValidationResult,
    payload_from_path,
    validate_payload,
)
from recipedit.config import EditorSettings, configure_logging
from recipedit.debounce import Debouncer
from recipedit.document import (
    AttachmentRef,
    ConfigEntry,
    Document,
    Link,
    MediaRef,
    Prerequisite,
    Step,
    new_document,
    validate_document_payload,
)
from recipedit.errors import (
    BlobIntegrityError,
    RecipeditError,
    SessionError,
    StorageError,
    ValidationError,
)
from recipedit.events import DocumentChanged, EventBus, TabActivated, TabClosed, TabSaved
from recipedit.naming import MissingReference, NamingResolver, RenameFailure, ResyncResult, folder_name, slugify
from recipedit.session import AttachResult, SessionManager, Tab
from recipedit.storage import (
    DocumentRepository,
    FileKeyValueStore,
    InMemoryKeyValueStore,
    SessionSnapshot,
    SessionSnapshotStore,
)


def _detect_version() -> str:
    """Return installed package version or a local fallback when metadata is unavailable."""
    try:
        return importlib_metadata.version("recipedit")
    except importlib_metadata.PackageNotFoundError:
        return "0.0.0+unknown"


__version__ = _detect_version()

__all__ = [
    "ArchiveReconciler",
    "AttachResult",
    "AttachmentRef",
    "AutosavePipeline",
    "BlobIntegrityError",
    "BlobPayload",
    "BlobStore",
    "ConfigEntry",
    "Debouncer",
    "Document",
    "DocumentChanged",
    "DocumentRepository",
    "EditorSettings",
    "EntryFailure",
    "EventBus",
    "ExportProgress",
    "FileBlobStore",
    "FileKeyValueStore",
    "ImportProgress",
    "ImportReport",
    "InMemoryBlobStore",
    "InMemoryKeyValueStore",
    "Link",
    "MediaRef",
    "MissingReference",
    "NamingResolver",
    "Prerequisite",
    "RecipeditError",
    "RenameFailure",
    "ResyncResult",
    "SessionError",
    "SessionManager",
    "SessionSnapshot",
    "SessionSnapshotStore",
    "Step",
    "StorageError",
    "StoredBlob",
    "Tab",
    "TabActivated",
    "TabClosed",
    "TabSaved",
    "ValidationError",
    "ValidationResult",
    "configure_logging",
    "folder_name",
    "new_document",
    "payload_from_path",
    "slugify",
    "validate_document_payload",
    "validate_payload",
]
