"""Import/Export Reconciler: documents and their blobs in and out of archives."""

from __future__ import annotations

import io
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from recipedit.blobs import format_file_size, payload_from_bytes, validate_payload
from recipedit.document import (
    ATTACHMENT_PREFIX,
    IMAGE_PREFIX,
    Document,
    iter_local_references,
    strip_ephemeral,
    validate_document_payload,
)
from recipedit.errors import SessionError, StorageError, ValidationError
from recipedit.naming import folder_name

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable

    from recipedit.blobs import BlobKind
    from recipedit.naming import MissingReference
    from recipedit.session import SessionManager

logger = logging.getLogger(__name__)

RECIPE_FILE = "recipe.json"
INDEX_FILE = "index.json"
SUPPORTED_SUFFIXES = (".json", ".zip")

# Errors ZipFile.read raises for members it cannot decompress or verify.
_MEMBER_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError)


@dataclass(frozen=True, slots=True)
class ExportProgress:
    """One step of an export. The final ``done`` event carries the archive bytes."""

    stage: str
    current: int
    total: int
    archive: bytes | None = field(default=None, repr=False)


@dataclass(frozen=True, slots=True)
class ImportProgress:
    """One step of an import."""

    stage: str
    current: int
    total: int


@dataclass(frozen=True, slots=True)
class EntryFailure:
    """An archive entry that could not be imported."""

    entry: str
    error: str


@dataclass(frozen=True, slots=True)
class ImportReport:
    """Outcome of an import."""

    tab_ids: tuple[str, ...] = ()
    documents: tuple[Document, ...] = ()
    missing: tuple[MissingReference, ...] = ()
    failures: tuple[EntryFailure, ...] = ()


def is_zip_bytes(data: bytes) -> bool:
    """Check whether ``data`` looks like a ZIP archive."""
    return zipfile.is_zipfile(io.BytesIO(data))


def is_unsafe_member(name: str) -> bool:
    """Reject absolute paths, parent references, and drive letters in archive member names."""
    if not name or not name.strip():
        return True
    if name.startswith(("/", "\\")):
        return True
    if ":" in name:
        return True
    return ".." in PurePosixPath(name.replace("\\", "/")).parts


def _decode_json(data: bytes, *, source: str) -> object:
    try:
        return json.loads(data.decode("utf-8-sig"))
    except UnicodeDecodeError:
        msg = "File is not UTF-8 text."
        raise ValidationError(msg, source=source) from None
    except json.JSONDecodeError as exc:
        msg = f"Invalid JSON: {exc.msg} (line {exc.lineno})."
        raise ValidationError(msg, source=source) from None


def _read_member(archive: zipfile.ZipFile, member: str | zipfile.ZipInfo) -> bytes:
    """Read one archive member, turning decompression and CRC failures into ``ValidationError``."""
    name = member.filename if isinstance(member, zipfile.ZipInfo) else member
    try:
        return archive.read(member)
    except _MEMBER_READ_ERRORS as exc:
        msg = f"Unreadable archive entry: {exc}"
        raise ValidationError(msg, source=name) from exc


def _inactive_folders(raw: object) -> set[str]:
    """Folder ids marked ``active: false`` in an ``index.json`` payload."""
    if not isinstance(raw, dict) or not isinstance(raw.get("recipes"), list):
        msg = "Index must be an object with a 'recipes' array."
        raise ValidationError(msg, source=INDEX_FILE)
    return {
        str(item["folderId"])
        for item in raw["recipes"]
        if isinstance(item, dict) and "folderId" in item and item.get("active") is False
    }


class ArchiveReconciler:
    """Exports saved documents with their blobs and imports them back into a session."""

    def __init__(self, session: SessionManager) -> None:
        """Initialize on top of a session; blobs and saved documents come from its stores."""
        self._session = session

    # -------------------------------------------------------------------------
    # Export
    # -------------------------------------------------------------------------

    def export_document(self, document: Document) -> bytes:
        """Serialize one document as a standalone JSON file."""
        return strip_ephemeral(document).to_json().encode("utf-8")

    async def export_stages(self, documents: Iterable[Document] | None = None) -> AsyncIterator[ExportProgress]:
        """Build an archive of ``documents`` (all saved documents by default), reporting progress."""
        items = list(documents) if documents is not None else list(await self._session.documents.list_documents())
        total = len(items)
        yield ExportProgress("collecting", 0, total)

        blobs = self._session.blobs
        buffer = io.BytesIO()
        folders: list[str] = []
        with zipfile.ZipFile(buffer, mode="w", compression=zipfile.ZIP_DEFLATED) as archive:
            for current, document in enumerate(items, start=1):
                folder = folder_name(document.title, folders)
                folders.append(folder)
                clean = strip_ephemeral(document)
                archive.writestr(f"{folder}/{RECIPE_FILE}", clean.to_json())

                written: set[str] = set()
                for ref in iter_local_references(clean):
                    if ref.url in written:
                        continue
                    written.add(ref.url)
                    try:
                        record = await blobs.get(ref.key, kind=ref.kind)
                    except StorageError as exc:
                        logger.warning("Skipping unreadable %s %s in export: %s", ref.kind, ref.key, exc)
                        continue
                    if record is None:
                        logger.warning("Skipping missing %s %s in export of %s", ref.kind, ref.key, folder)
                        continue
                    archive.writestr(f"{folder}/{ref.url}", record.payload.data)
                yield ExportProgress("packing", current, total)

            index = {"recipes": [{"folderId": folder, "active": True} for folder in sorted(folders)]}
            archive.writestr(INDEX_FILE, json.dumps(index, indent=2))

        logger.info("Exported %d document(s)", total)
        yield ExportProgress("done", total, total, archive=buffer.getvalue())

    async def export_archive(self, on_progress: Callable[[ExportProgress], None] | None = None) -> bytes:
        """Export every saved document and return the archive bytes."""
        archive = b""
        async for event in self.export_stages():
            if on_progress is not None:
                on_progress(event)
            if event.archive is not None:
                archive = event.archive
        return archive

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    async def import_file(
        self,
        filename: str,
        data: bytes,
        *,
        on_progress: Callable[[ImportProgress], None] | None = None,
    ) -> ImportReport:
        """Import a ``.json`` document or a ``.zip`` archive into new tabs."""
        suffix = PurePosixPath(filename).suffix.lower()
        if suffix == ".json":
            return await self._import_document(filename, data)
        if suffix == ".zip":
            return await self._import_archive(filename, data, on_progress)
        msg = f"Unsupported file type; expected one of {', '.join(SUPPORTED_SUFFIXES)}."
        raise ValidationError(msg, source=filename)

    async def _import_document(self, filename: str, data: bytes) -> ImportReport:
        document = validate_document_payload(_decode_json(data, source=filename), source=filename)
        tab = await self._session.open_document(document, has_changes=True, reuse=False)
        missing = await self._session.check_references(tab.id)
        logger.info("Imported %s into tab %s", filename, tab.id)
        return ImportReport(tab_ids=(tab.id,), documents=(document,), missing=missing)

    async def _import_archive(
        self,
        filename: str,
        data: bytes,
        on_progress: Callable[[ImportProgress], None] | None,
    ) -> ImportReport:
        if not is_zip_bytes(data):
            msg = "Invalid ZIP archive."
            raise ValidationError(msg, source=filename)

        tab_ids: list[str] = []
        documents: list[Document] = []
        failures: list[EntryFailure] = []

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            members = [info for info in archive.infolist() if not info.is_dir()]
            for info in members:
                if is_unsafe_member(info.filename):
                    msg = f"Unsafe path in archive: {info.filename!r}."
                    raise ValidationError(msg, source=filename)

            inactive: set[str] = set()
            if INDEX_FILE in archive.namelist():
                try:
                    inactive = _inactive_folders(_decode_json(_read_member(archive, INDEX_FILE), source=INDEX_FILE))
                except ValidationError as exc:
                    failures.append(EntryFailure(INDEX_FILE, str(exc)))

            by_folder: dict[str, list[zipfile.ZipInfo]] = {}
            for info in members:
                parts = PurePosixPath(info.filename).parts
                if len(parts) > 1:
                    by_folder.setdefault(parts[0], []).append(info)

            total = len(by_folder)
            for current, folder in enumerate(sorted(by_folder), start=1):
                if folder in inactive:
                    logger.info("Skipping inactive folder %s", folder)
                else:
                    try:
                        tab_id, document, entry_failures = await self._import_folder(
                            archive, folder, by_folder[folder]
                        )
                    except (ValidationError, SessionError, StorageError) as exc:
                        logger.warning("Skipping archive folder %s: %s", folder, exc)
                        failures.append(EntryFailure(folder, str(exc)))
                    else:
                        tab_ids.append(tab_id)
                        documents.append(document)
                        failures.extend(entry_failures)
                if on_progress is not None:
                    on_progress(ImportProgress("importing", current, total))

        missing: list[MissingReference] = []
        for tab_id in tab_ids:
            missing.extend(await self._session.check_references(tab_id))
        logger.info(
            "Imported %d document(s) from %s (%d failure(s), %d missing reference(s))",
            len(tab_ids),
            filename,
            len(failures),
            len(missing),
        )
        return ImportReport(
            tab_ids=tuple(tab_ids),
            documents=tuple(documents),
            missing=tuple(missing),
            failures=tuple(failures),
        )

    async def _import_folder(
        self,
        archive: zipfile.ZipFile,
        folder: str,
        members: list[zipfile.ZipInfo],
    ) -> tuple[str, Document, list[EntryFailure]]:
        recipe_name = f"{folder}/{RECIPE_FILE}"
        if recipe_name not in {info.filename for info in members}:
            msg = f"Missing {RECIPE_FILE}."
            raise ValidationError(msg, source=folder)
        document = validate_document_payload(
            _decode_json(_read_member(archive, recipe_name), source=recipe_name),
            source=recipe_name,
        )
        settings = self._session.settings
        if len(self._session.tabs) >= settings.max_tabs:
            msg = f"Cannot open more than {settings.max_tabs} tabs."
            raise SessionError(msg)

        failures: list[EntryFailure] = []
        for info in members:
            relative = info.filename[len(folder) + 1 :]
            kind: BlobKind
            if relative.startswith(IMAGE_PREFIX):
                kind = "image"
            elif relative.startswith(ATTACHMENT_PREFIX):
                kind = "attachment"
            else:
                continue
            limit = settings.max_image_bytes if kind == "image" else settings.max_attachment_bytes
            if info.file_size > limit:
                error = f"File too large. Maximum size is {format_file_size(limit)}."
                failures.append(EntryFailure(info.filename, error))
                continue
            try:
                data = _read_member(archive, info)
            except ValidationError as exc:
                logger.warning("Skipping archive entry %s: %s", info.filename, exc)
                failures.append(EntryFailure(info.filename, str(exc)))
                continue
            name = PurePosixPath(relative).name
            payload = payload_from_bytes(data, name)
            check = validate_payload(payload, kind, settings)
            if not check.valid:
                failures.append(EntryFailure(info.filename, check.error or "Invalid file."))
                continue
            key = PurePosixPath(name).stem if kind == "image" else name
            await self._session.blobs.store(key, payload, kind=kind)

        tab = await self._session.open_document(document, has_changes=True, reuse=False)
        return tab.id, document, failures
