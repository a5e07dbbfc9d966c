"""Payload validation against the configured allow-lists and size caps."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from recipedit.blobs._helpers import guess_media_type

if TYPE_CHECKING:
    from recipedit.blobs._store import BlobKind, BlobPayload
    from recipedit.config import EditorSettings


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of a payload check. ``error`` is a user-facing message when invalid."""

    valid: bool
    error: str | None = None


def format_file_size(size: int) -> str:
    """Format a byte count for display (``"10 MB"``, ``"512 Bytes"``)."""
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB")
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{round(value, 2):g} {units[index]}"


def validate_payload(payload: BlobPayload, expected_kind: BlobKind, settings: EditorSettings) -> ValidationResult:
    """Check a payload's type and size for the given blob kind. Never raises."""
    if expected_kind == "image":
        media_type = payload.media_type or guess_media_type(payload.filename) or ""
        if media_type.lower() not in settings.allowed_image_types:
            return ValidationResult(False, "Invalid file type. Only images are allowed.")
        limit = settings.max_image_bytes
    elif expected_kind == "attachment":
        suffix = PurePosixPath(payload.filename or "").suffix.lower()
        if suffix not in settings.allowed_attachment_extensions:
            allowed = ", ".join(settings.allowed_attachment_extensions)
            return ValidationResult(False, f"Invalid file type. Allowed attachment types: {allowed}.")
        limit = settings.max_attachment_bytes
    else:
        return ValidationResult(False, f"Unknown blob kind {expected_kind!r}.")

    if payload.size > limit:
        return ValidationResult(False, f"File too large. Maximum size is {format_file_size(limit)}.")
    return ValidationResult(True)
