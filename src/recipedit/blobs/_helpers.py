"""Helper functions for blob operations."""

from __future__ import annotations

import base64
import mimetypes
from pathlib import Path

from recipedit.blobs._store import BlobPayload


def guess_media_type(filename: str) -> str | None:
    """Guess a media type from a file name's extension."""
    media_type, _ = mimetypes.guess_type(filename)
    return media_type


def payload_from_path(path: str | Path, *, media_type: str | None = None) -> BlobPayload:
    """Read a file into a BlobPayload, guessing media_type from the extension."""
    path = Path(path)
    if media_type is None:
        media_type = guess_media_type(path.name)
    return BlobPayload(data=path.read_bytes(), filename=path.name, media_type=media_type)


def payload_from_bytes(data: bytes, filename: str, *, media_type: str | None = None) -> BlobPayload:
    """Wrap raw bytes, guessing media_type from ``filename`` when not given."""
    if media_type is None:
        media_type = guess_media_type(filename)
    return BlobPayload(data=data, filename=filename, media_type=media_type)


def data_uri(payload: BlobPayload) -> str:
    """Encode a payload as a ``data:`` URI usable as a preview handle."""
    media_type = payload.media_type or guess_media_type(payload.filename) or "application/octet-stream"
    return f"data:{media_type};base64,{base64.b64encode(payload.data).decode('ascii')}"
