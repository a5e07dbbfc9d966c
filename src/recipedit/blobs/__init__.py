"""BlobStore: durable storage for image and attachment payloads."""

from recipedit.blobs._file import SCHEMA_VERSION, FileBlobStore
from recipedit.blobs._helpers import data_uri, guess_media_type, payload_from_bytes, payload_from_path
from recipedit.blobs._memory import InMemoryBlobStore
from recipedit.blobs._store import (
    TABLES,
    BlobKind,
    BlobPayload,
    BlobStore,
    PruneReport,
    StoredBlob,
    select_prune_candidates,
    table_for,
)
from recipedit.blobs._validation import ValidationResult, format_file_size, validate_payload

__all__ = [
    "SCHEMA_VERSION",
    "TABLES",
    "BlobKind",
    "BlobPayload",
    "BlobStore",
    "FileBlobStore",
    "InMemoryBlobStore",
    "PruneReport",
    "StoredBlob",
    "ValidationResult",
    "data_uri",
    "format_file_size",
    "guess_media_type",
    "payload_from_bytes",
    "payload_from_path",
    "select_prune_candidates",
    "table_for",
    "validate_payload",
]
