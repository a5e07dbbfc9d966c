"""Naming Resolver: stable, human-readable blob keys derived from document content."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from recipedit.document import (
    ReferenceKind,
    image_extension_from_url,
    image_url,
    iter_local_references,
    referenced_keys,
    rewrite_image_url,
)
from recipedit.errors import RecipeditError

if TYPE_CHECKING:
    from collections.abc import Collection

    from recipedit.blobs import BlobStore
    from recipedit.document import Document

logger = logging.getLogger(__name__)

GENERAL_IMAGE_BASE = "general-image"
FOLDER_NAME_MAX_LENGTH = 50

_UNSAFE_PATH_RE = re.compile(r'[/\\?<>:*|"]')
_NON_WORD_RE = re.compile(r"[^\w\s-]")
_WHITESPACE_RE = re.compile(r"\s+")
_HYPHENS_RE = re.compile(r"-+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_INVALID_FILENAME_RE = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_DOTS_RE = re.compile(r"\.{2,}")


def safe_segment(text: str | None, *, max_length: int = 30, fallback: str = "unnamed") -> str:
    """Reduce free text to a lower-case, hyphenated key segment.

    Example: ``"Retrieve  Records!"`` -> ``"retrieve-records"``.
    """
    if not text:
        return fallback
    value = _UNSAFE_PATH_RE.sub("", text.lower())
    value = _NON_WORD_RE.sub("", value)
    value = _WHITESPACE_RE.sub("-", value)
    value = _HYPHENS_RE.sub("-", value).strip("-")
    value = value[:max_length].strip("-")
    return value or fallback


def slugify(title: str) -> str:
    """Build a URL-friendly document id from a title (``""`` for an empty title)."""
    if not title:
        return ""
    return _SLUG_RE.sub("-", title.lower()).strip("-")


def unique_key(base: str, used: Collection[str]) -> str:
    """Return ``base`` or the first ``base-N`` (N >= 2) not in ``used``."""
    if base not in used:
        return base
    counter = 2
    while f"{base}-{counter}" in used:
        counter += 1
    return f"{base}-{counter}"


def matches_base(key: str, base: str) -> bool:
    """Check whether ``key`` is ``base`` or ``base-N``."""
    return re.fullmatch(rf"{re.escape(base)}(-\d+)?", key) is not None


def folder_name(title: str, existing: Collection[str]) -> str:
    """Derive a unique archive folder name from a document title."""
    base = safe_segment(title, max_length=FOLDER_NAME_MAX_LENGTH, fallback="unnamed-folder")
    return unique_key(base, existing)


def sanitize_filename(name: str) -> str:
    """Strip characters that are invalid in file names and normalize spacing and dots."""
    value = _INVALID_FILENAME_RE.sub("", PurePosixPath(name.replace("\\", "/")).name)
    value = _WHITESPACE_RE.sub("_", value.strip())
    value = _DOTS_RE.sub(".", value).lstrip(".")
    return value or "file"


def naming_context(document: Document) -> tuple[str, tuple[str, ...]]:
    """Return the parts of a document that step image keys derive from."""
    return document.category, tuple(step.label for step in document.walkthrough)


# =============================================================================
# Records
# =============================================================================


@dataclass(frozen=True, slots=True)
class MissingReference:
    """A reserved-prefix reference whose payload is absent from the Blob Store."""

    kind: ReferenceKind
    key: str
    url: str
    location: str
    document_id: str = ""


@dataclass(frozen=True, slots=True)
class RenameFailure:
    """A rename that could not complete; the reference still points at ``old_key``."""

    old_key: str
    new_key: str
    url: str
    reason: str


@dataclass(frozen=True, slots=True)
class Rename:
    """One completed rename-as-move."""

    old_key: str
    new_key: str
    old_url: str
    new_url: str


@dataclass(frozen=True, slots=True)
class ResyncResult:
    """Outcome of one re-derivation pass."""

    document: Document
    renamed: tuple[Rename, ...] = ()
    missing: tuple[MissingReference, ...] = ()
    failures: tuple[RenameFailure, ...] = ()

    @property
    def changed(self) -> bool:
        """Whether any reference was rewritten."""
        return bool(self.renamed)


async def find_missing_references(document: Document, store: BlobStore) -> tuple[MissingReference, ...]:
    """Return every reserved-prefix reference of ``document`` absent from ``store``."""
    missing: list[MissingReference] = []
    for ref in iter_local_references(document):
        if not await store.exists(ref.key, kind=ref.kind):
            missing.append(MissingReference(ref.kind, ref.key, ref.url, ref.location, document.id))
    return tuple(missing)


# =============================================================================
# Resolver
# =============================================================================


class NamingResolver:
    """Derive and re-derive blob keys for a document's attachments.

    Counters are recomputed from the document every time; nothing is cached
    between calls. ``reserved`` arguments name keys owned by other documents
    that must not be reused.
    """

    def __init__(self, *, key_max_length: int = 30) -> None:
        """Initialize with the maximum length of each slug segment."""
        self._key_max_length = key_max_length

    def step_image_base(self, document: Document, step_index: int) -> str:
        """Return the base key for images of walkthrough step ``step_index``."""
        label = document.walkthrough[step_index].label if 0 <= step_index < len(document.walkthrough) else ""
        category = safe_segment(document.category, max_length=self._key_max_length, fallback="uncategorized")
        step = safe_segment(label, max_length=self._key_max_length, fallback="step")
        return f"{category}-{step}-image"

    def image_key(self, document: Document, *, step_index: int | None = None, reserved: Collection[str] = ()) -> str:
        """Resolve a fresh image key for a step (or a document-level image when ``step_index`` is None)."""
        base = GENERAL_IMAGE_BASE if step_index is None else self.step_image_base(document, step_index)
        used = referenced_keys(document, "image") | set(reserved)
        return unique_key(base, used)

    def attachment_key(self, document: Document, filename: str, *, reserved: Collection[str] = ()) -> str:
        """Resolve a fresh attachment key from an uploaded file name."""
        name = sanitize_filename(filename)
        used = referenced_keys(document, "attachment") | set(reserved)
        if name not in used:
            return name
        path = PurePosixPath(name)
        stem, suffix = (path.stem, path.suffix) if path.stem else (name, "")
        counter = 2
        while f"{stem}-{counter}{suffix}" in used:
            counter += 1
        return f"{stem}-{counter}{suffix}"

    async def resync(
        self,
        document: Document,
        store: BlobStore,
        *,
        reserved: Collection[str] = (),
        retain: Collection[str] = (),
    ) -> ResyncResult:
        """Rename step images whose key no longer matches their step's context.

        Each rename stores the payload under the new key, then deletes the old
        key, then rewrites the reference. Old keys listed in ``retain`` are
        still referenced elsewhere and are copied instead of moved. A
        reference whose payload is missing is reported and left alone; a
        failed store or delete leaves the reference on its old key and is
        retried by the next pass.
        """
        working = document
        renamed: list[Rename] = []
        missing: list[MissingReference] = []
        failures: list[RenameFailure] = []
        seen: set[str] = set()

        for ref in list(iter_local_references(document)):
            if ref.kind != "image" or ref.step_index is None or ref.url in seen:
                continue
            seen.add(ref.url)
            base = self.step_image_base(working, ref.step_index)
            if matches_base(ref.key, base):
                continue

            used = (referenced_keys(working, "image") - {ref.key}) | set(reserved)
            new_key = unique_key(base, used)
            new_url = image_url(new_key, image_extension_from_url(ref.url))

            try:
                record = await store.get(ref.key, kind="image")
            except RecipeditError as exc:
                failures.append(RenameFailure(ref.key, new_key, ref.url, str(exc)))
                logger.warning("Rename %s -> %s failed: %s", ref.key, new_key, exc)
                continue
            if record is None:
                missing.append(MissingReference("image", ref.key, ref.url, ref.location, document.id))
                logger.warning("Image %s referenced at %s is missing; rename skipped", ref.key, ref.location)
                continue

            try:
                await store.store(new_key, record.payload, kind="image")
                if ref.key not in retain:
                    await store.delete(ref.key, kind="image")
            except RecipeditError as exc:
                failures.append(RenameFailure(ref.key, new_key, ref.url, str(exc)))
                logger.warning("Rename %s -> %s failed: %s", ref.key, new_key, exc)
                continue

            working = rewrite_image_url(working, ref.url, new_url)
            renamed.append(Rename(ref.key, new_key, ref.url, new_url))
            logger.debug("Renamed image %s -> %s", ref.key, new_key)

        return ResyncResult(
            document=working,
            renamed=tuple(renamed),
            missing=tuple(missing),
            failures=tuple(failures),
        )
