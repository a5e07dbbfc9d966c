"""Tab Session Manager: open documents, dirty tracking, and attachment orchestration."""

from __future__ import annotations

import asyncio
import inspect
import logging
import mimetypes
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from recipedit.blobs import FileBlobStore, PruneReport, data_uri, select_prune_candidates, validate_payload
from recipedit.config import EditorSettings
from recipedit.debounce import Debouncer
from recipedit.document import (
    AttachmentRef,
    Document,
    MediaRef,
    ReferenceKind,
    attachment_path,
    image_url,
    iter_local_references,
    new_document,
    referenced_keys,
    remove_reference,
    rewrite_image_url,
    set_preview_handle,
    update_step,
)
from recipedit.errors import SessionError, StorageError
from recipedit.events import DocumentChanged, EventBus, TabActivated, TabClosed, TabSaved
from recipedit.naming import (
    MissingReference,
    NamingResolver,
    RenameFailure,
    find_missing_references,
    naming_context,
    slugify,
)
from recipedit.storage import (
    DocumentRepository,
    FileKeyValueStore,
    SessionSnapshot,
    SessionSnapshotStore,
    TabSnapshot,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine, Iterable

    from recipedit.blobs import BlobKind, BlobPayload, BlobStore

logger = logging.getLogger(__name__)

UNTITLED = "Untitled"


@dataclass(slots=True)
class Tab:
    """One open document plus editor-only state."""

    id: str
    document: Document
    title: str
    has_changes: bool = False
    is_active: bool = False
    last_saved_at: datetime | None = None

    def to_snapshot(self) -> TabSnapshot:
        """Return the persisted form of this tab."""
        return TabSnapshot(
            id=self.id,
            title=self.title,
            has_changes=self.has_changes,
            is_active=self.is_active,
            document=self.document,
        )


@dataclass(frozen=True, slots=True)
class AttachResult:
    """Outcome of an attach operation. ``error`` is set when nothing changed."""

    reference: str | None = None
    key: str | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        """Whether the payload was stored and referenced."""
        return self.error is None


def _default_tab_id() -> str:
    return f"tab-{uuid.uuid4().hex[:12]}"


def _image_extension(payload: BlobPayload) -> str:
    suffix = PurePosixPath(payload.filename or "").suffix.lower().lstrip(".")
    if suffix:
        return suffix
    guessed = mimetypes.guess_extension(payload.media_type or "") or ".png"
    return guessed.lstrip(".")


class SessionManager:
    """Owns the open tabs and keeps documents, blobs, and saved state consistent.

    Exactly one tab is active whenever tabs exist. Edits go through
    ``update_document``, which marks the tab dirty, publishes
    ``DocumentChanged`` on the event bus, and schedules a debounced naming
    pass when a key-bearing field changed. Mutating operations require a
    running event loop.
    """

    def __init__(
        self,
        *,
        blobs: BlobStore,
        documents: DocumentRepository,
        snapshots: SessionSnapshotStore | None = None,
        settings: EditorSettings | None = None,
        bus: EventBus | None = None,
        resolver: NamingResolver | None = None,
        tab_id_factory: Callable[[], str] = _default_tab_id,
    ) -> None:
        """Initialize with the durable stores; nothing is loaded until ``restore``."""
        self._settings = settings or EditorSettings()
        self._blobs = blobs
        self._documents = documents
        self._snapshots = snapshots
        self._bus = bus or EventBus()
        self._resolver = resolver or NamingResolver(key_max_length=self._settings.key_max_length)
        self._new_tab_id = tab_id_factory
        self._tabs: list[Tab] = []
        self._locks: dict[str, asyncio.Lock] = {}
        self._unresolved: dict[str, tuple[MissingReference, ...]] = {}
        self._rename_failures: dict[str, tuple[RenameFailure, ...]] = {}
        self._background: set[asyncio.Task[None]] = set()
        self._naming: Debouncer[str] = Debouncer(
            self._settings.naming_debounce_seconds,
            self._run_naming_pass,
            name="naming",
        )

    @classmethod
    def from_settings(cls, settings: EditorSettings) -> SessionManager:
        """Build a session backed by the file stores under ``settings.data_root``."""
        kv = FileKeyValueStore(settings.storage_root)
        return cls(
            blobs=FileBlobStore(settings.blobs_root),
            documents=DocumentRepository(kv),
            snapshots=SessionSnapshotStore(kv),
            settings=settings,
        )

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    @property
    def settings(self) -> EditorSettings:
        """Active configuration."""
        return self._settings

    @property
    def bus(self) -> EventBus:
        """Event bus carrying session events."""
        return self._bus

    @property
    def blobs(self) -> BlobStore:
        """Blob Store backing the session."""
        return self._blobs

    @property
    def documents(self) -> DocumentRepository:
        """Repository of saved documents."""
        return self._documents

    @property
    def resolver(self) -> NamingResolver:
        """Naming Resolver used for new and renamed keys."""
        return self._resolver

    @property
    def tabs(self) -> tuple[Tab, ...]:
        """Open tabs in display order."""
        return tuple(self._tabs)

    @property
    def active_tab(self) -> Tab | None:
        """The active tab, if any."""
        return next((tab for tab in self._tabs if tab.is_active), None)

    @property
    def unresolved(self) -> tuple[MissingReference, ...]:
        """References the last naming pass or reference check could not resolve."""
        return tuple(ref for tab in self._tabs for ref in self._unresolved.get(tab.id, ()))

    @property
    def rename_failures(self) -> tuple[RenameFailure, ...]:
        """Renames the last naming pass of each tab could not complete."""
        return tuple(failure for tab in self._tabs for failure in self._rename_failures.get(tab.id, ()))

    def get_tab(self, tab_id: str) -> Tab | None:
        """Return the tab with ``tab_id`` or ``None``."""
        return next((tab for tab in self._tabs if tab.id == tab_id), None)

    def has_unsaved_changes(self) -> bool:
        """Whether any open tab has unsaved changes."""
        return any(tab.has_changes for tab in self._tabs)

    def _require_tab(self, tab_id: str) -> Tab:
        tab = self.get_tab(tab_id)
        if tab is None:
            msg = f"Unknown tab {tab_id!r}."
            raise SessionError(msg)
        return tab

    def _lock(self, tab_id: str) -> asyncio.Lock:
        lock = self._locks.get(tab_id)
        if lock is None:
            lock = self._locks[tab_id] = asyncio.Lock()
        return lock

    # -------------------------------------------------------------------------
    # Tab lifecycle
    # -------------------------------------------------------------------------

    def _activate(self, tab: Tab) -> None:
        for other in self._tabs:
            other.is_active = other is tab
        self._bus.publish(TabActivated(tab.id))
        logger.debug("Activated tab %s", tab.id)

    def create_tab(self, document: Document | None = None) -> Tab:
        """Open a new tab (on an empty document by default) and make it active."""
        document = document if document is not None else new_document()
        tab = Tab(id=self._new_tab_id(), document=document, title=document.title or UNTITLED)
        self._tabs.append(tab)
        self._activate(tab)
        logger.debug("Created tab %s", tab.id)
        return tab

    async def select_tab(self, tab_id: str) -> None:
        """Make ``tab_id`` active, saving the outgoing tab first when it has changes."""
        target = self.get_tab(tab_id)
        if target is None:
            return
        current = self.active_tab
        if current is target:
            return
        if current is not None and current.has_changes:
            try:
                await self.save_tab(current.id)
            except StorageError:
                logger.exception("Saving tab %s before switching failed", current.id)
        if target not in self._tabs:
            return
        self._activate(target)
        await self.persist_snapshot()

    async def open_document(self, document: Document, *, has_changes: bool = False, reuse: bool = True) -> Tab:
        """Open ``document`` in a new tab, or (with ``reuse``) select the tab already holding it."""
        if reuse and document.id:
            existing = next((tab for tab in self._tabs if tab.document.id == document.id), None)
            if existing is not None:
                await self.select_tab(existing.id)
                return existing
        if len(self._tabs) >= self._settings.max_tabs:
            msg = f"Cannot open more than {self._settings.max_tabs} tabs."
            raise SessionError(msg)
        tab = self.create_tab(document)
        tab.has_changes = has_changes
        await self.check_references(tab.id)
        await self.persist_snapshot()
        return tab

    async def close_tab(
        self,
        tab_id: str,
        confirm: Callable[[Tab], bool | Awaitable[bool]] | None = None,
    ) -> bool:
        """Close a tab. A tab with changes is closed only when ``confirm(tab)`` returns ``True``."""
        tab = self.get_tab(tab_id)
        if tab is None:
            return False
        if tab.has_changes:
            if confirm is None:
                return False
            answer = confirm(tab)
            if inspect.isawaitable(answer):
                answer = await answer
            if not answer:
                return False

        index = self._tabs.index(tab)
        was_active = tab.is_active
        self._naming.cancel(tab.id)
        self._tabs.remove(tab)
        self._locks.pop(tab.id, None)
        self._unresolved.pop(tab.id, None)
        self._rename_failures.pop(tab.id, None)
        self._bus.publish(TabClosed(tab.id))
        logger.debug("Closed tab %s", tab.id)

        if tab.has_changes:
            await self._release(self._local_keys(tab.document))

        if not self._tabs:
            self.create_tab()
        elif was_active:
            await self.select_tab(self._tabs[min(index, len(self._tabs) - 1)].id)
        await self.persist_snapshot()
        return True

    # -------------------------------------------------------------------------
    # Editing
    # -------------------------------------------------------------------------

    def update_document(self, tab_id: str, mutation: Callable[[Document], Document]) -> Document:
        """Apply ``mutation`` to a tab's document and schedule the follow-up passes."""
        tab = self._require_tab(tab_id)
        before = tab.document
        after = mutation(before)
        if after == before:
            return before
        tab.document = after
        tab.has_changes = True
        if after.title != before.title:
            tab.title = after.title or UNTITLED

        context_changed = naming_context(before) != naming_context(after)
        self._bus.publish(DocumentChanged(tab_id, context_changed))
        if context_changed:
            self._naming.trigger(tab_id)

        removed = self._local_keys(before) - self._local_keys(after)
        if removed:
            self._spawn(self._release_removed(tab_id, removed))
        return after

    def _spawn(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def attach_image(self, tab_id: str, payload: BlobPayload, *, step_index: int | None = None) -> AttachResult:
        """Store an image and reference it from a step (or the document when ``step_index`` is None)."""
        tab = self._require_tab(tab_id)
        check = validate_payload(payload, "image", self._settings)
        if not check.valid:
            return AttachResult(error=check.error)
        if step_index is not None and not 0 <= step_index < len(tab.document.walkthrough):
            return AttachResult(error=f"Step {step_index} does not exist.")

        async with self._lock(tab_id):
            try:
                reserved = await self._keys_in_use("image", exclude=tab)
            except StorageError as exc:
                logger.warning("Saved documents are unreadable; not storing the image for tab %s: %s", tab_id, exc)
                return AttachResult(error=str(exc))
            key = self._resolver.image_key(tab.document, step_index=step_index, reserved=reserved)
            try:
                await self._blobs.store(key, payload, kind="image")
            except StorageError as exc:
                logger.exception("Storing image %s failed", key)
                return AttachResult(error=str(exc))
            url = image_url(key, _image_extension(payload))
            alt = PurePosixPath(payload.filename).stem
            media = MediaRef(type="image", url=url, alt=alt, preview_handle=data_uri(payload))

            def add(document: Document) -> Document:
                if step_index is None:
                    return replace(document, general_images=(*document.general_images, media))
                return update_step(document, step_index, media=(*document.walkthrough[step_index].media, media))

            self.update_document(tab_id, add)
        logger.debug("Attached image %s to tab %s", key, tab_id)
        return AttachResult(reference=url, key=key)

    async def attach_file(self, tab_id: str, payload: BlobPayload, *, title: str | None = None) -> AttachResult:
        """Store a downloadable file and add it to the document's attachments."""
        tab = self._require_tab(tab_id)
        check = validate_payload(payload, "attachment", self._settings)
        if not check.valid:
            return AttachResult(error=check.error)

        async with self._lock(tab_id):
            try:
                reserved = await self._keys_in_use("attachment", exclude=tab)
            except StorageError as exc:
                logger.warning("Saved documents are unreadable; not storing the attachment for tab %s: %s", tab_id, exc)
                return AttachResult(error=str(exc))
            key = self._resolver.attachment_key(tab.document, payload.filename, reserved=reserved)
            try:
                await self._blobs.store(key, payload, kind="attachment")
            except StorageError as exc:
                logger.exception("Storing attachment %s failed", key)
                return AttachResult(error=str(exc))
            path = attachment_path(key)
            item = AttachmentRef(title=title or payload.filename, file_path=path)
            self.update_document(tab_id, lambda document: replace(document, attachments=(*document.attachments, item)))
        logger.debug("Attached file %s to tab %s", key, tab_id)
        return AttachResult(reference=path, key=key)

    async def replace_media(self, tab_id: str, url: str, payload: BlobPayload) -> AttachResult:
        """Re-supply the payload of an image reference under a freshly resolved key."""
        tab = self._require_tab(tab_id)
        check = validate_payload(payload, "image", self._settings)
        if not check.valid:
            return AttachResult(error=check.error)

        async with self._lock(tab_id):
            ref = next(
                (ref for ref in iter_local_references(tab.document) if ref.kind == "image" and ref.url == url),
                None,
            )
            if ref is None:
                return AttachResult(error=f"No image reference at {url!r}.")
            try:
                reserved = await self._keys_in_use("image", exclude=tab)
            except StorageError as exc:
                logger.warning("Saved documents are unreadable; not storing the image for tab %s: %s", tab_id, exc)
                return AttachResult(error=str(exc))
            key = self._resolver.image_key(tab.document, step_index=ref.step_index, reserved=reserved)
            try:
                await self._blobs.store(key, payload, kind="image")
            except StorageError as exc:
                logger.exception("Storing image %s failed", key)
                return AttachResult(error=str(exc))
            new_url = image_url(key, _image_extension(payload))
            handle = data_uri(payload)
            self.update_document(
                tab_id,
                lambda document: set_preview_handle(rewrite_image_url(document, url, new_url), new_url, handle),
            )
        self._unresolved[tab_id] = tuple(item for item in self._unresolved.get(tab_id, ()) if item.url != url)
        return AttachResult(reference=new_url, key=key)

    def detach(self, tab_id: str, url: str) -> bool:
        """Remove every reference to ``url``; its blob is released when nothing else uses it."""
        tab = self._require_tab(tab_id)
        before = tab.document
        return self.update_document(tab_id, lambda document: remove_reference(document, url)) is not before

    async def load_previews(self, tab_id: str) -> int:
        """Load preview handles for the images of the active tab's document.

        The load is abandoned when the tab stops being active or its document
        changes identity while blobs are being read.
        """
        tab = self._require_tab(tab_id)
        document_id = tab.document.id
        handles: dict[str, str] = {}
        missing: list[MissingReference] = []
        for ref in iter_local_references(tab.document):
            if ref.kind != "image" or ref.url in handles:
                continue
            record = await self._blobs.get(ref.key, kind="image")
            if self.active_tab is not tab or tab.document.id != document_id:
                logger.debug("Discarding stale preview load for tab %s", tab_id)
                return 0
            if record is None:
                missing.append(MissingReference("image", ref.key, ref.url, ref.location, document_id))
                continue
            handles[ref.url] = data_uri(record.payload)

        document = tab.document
        for url, handle in handles.items():
            document = set_preview_handle(document, url, handle)
        tab.document = document
        if missing:
            self._unresolved[tab_id] = tuple(missing)
        return len(handles)

    async def check_references(self, tab_id: str) -> tuple[MissingReference, ...]:
        """Record and return the tab's references that have no Blob Store entry."""
        tab = self._require_tab(tab_id)
        missing = await find_missing_references(tab.document, self._blobs)
        for ref in missing:
            logger.warning("Missing %s %s referenced at %s", ref.kind, ref.key, ref.location)
        self._unresolved[tab_id] = missing
        return missing

    # -------------------------------------------------------------------------
    # Naming pass and blob lifecycle
    # -------------------------------------------------------------------------

    async def _keys_in_use(self, kind: ReferenceKind, *, exclude: Tab | None = None) -> set[str]:
        """Keys referenced by open tabs (other than ``exclude``) or by any saved document."""
        keys: set[str] = set()
        for tab in self._tabs:
            if tab is not exclude:
                keys |= referenced_keys(tab.document, kind)
        for saved in await self._documents.list_documents():
            keys |= referenced_keys(saved, kind)
        return keys

    @staticmethod
    def _local_keys(document: Document) -> set[tuple[ReferenceKind, str]]:
        return {(ref.kind, ref.key) for ref in iter_local_references(document)}

    async def _release(self, keys: Iterable[tuple[ReferenceKind, str]]) -> None:
        """Delete blobs no open tab or saved document references any more."""
        pending = sorted(keys)
        if not pending:
            return
        try:
            in_use = {
                "image": await self._keys_in_use("image"),
                "attachment": await self._keys_in_use("attachment"),
            }
        except StorageError as exc:
            logger.warning("Keeping %d unreferenced blob(s); saved documents are unreadable: %s", len(pending), exc)
            return
        for kind, key in pending:
            if key in in_use[kind]:
                continue
            try:
                await self._blobs.delete(key, kind=kind)
            except StorageError:
                logger.exception("Releasing %s %s failed", kind, key)
            else:
                logger.debug("Released %s %s", kind, key)

    async def _release_removed(self, tab_id: str, keys: set[tuple[ReferenceKind, str]]) -> None:
        # Serialized with attach operations so a key re-resolved meanwhile is not deleted.
        async with self._lock(tab_id):
            await self._release(keys)

    async def _run_naming_pass(self, tab_id: str) -> None:
        tab = self.get_tab(tab_id)
        if tab is None:
            return
        async with self._lock(tab_id):
            try:
                reserved = await self._keys_in_use("image", exclude=tab)
            except StorageError as exc:
                logger.warning("Skipping naming pass for tab %s; saved documents are unreadable: %s", tab_id, exc)
                return
            result = await self._resolver.resync(tab.document, self._blobs, reserved=reserved, retain=reserved)
            if self.get_tab(tab_id) is not tab:
                return
            self._unresolved[tab_id] = result.missing
            self._rename_failures[tab_id] = result.failures
            if not result.changed:
                return
            # Apply to the current document; it may have changed while the pass ran.
            document = tab.document
            for rename in result.renamed:
                document = rewrite_image_url(document, rename.old_url, rename.new_url)
            tab.document = document
            tab.has_changes = True
        logger.info("Renamed %d image(s) in tab %s", len(result.renamed), tab_id)
        self._bus.publish(DocumentChanged(tab_id, False))

    async def resync_now(self, tab_id: str) -> None:
        """Run the pending naming pass for ``tab_id`` immediately."""
        self._naming.cancel(tab_id)
        await self._run_naming_pass(tab_id)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def save_tab(self, tab_id: str) -> bool:
        """Persist a tab's document. Return ``False`` when the tab had nothing to save.

        A document without an id gets one derived from its title. A
        ``StorageError`` propagates and leaves the tab dirty.
        """
        tab = self._require_tab(tab_id)
        if not tab.has_changes:
            return False
        source = tab.document
        document = source if source.id else replace(source, id=slugify(source.title) or "untitled")
        previous = await self._documents.get(document.id)
        await self._documents.save(document)

        if tab.document is source:
            tab.document = document
            tab.has_changes = False
        elif not tab.document.id:
            tab.document = replace(tab.document, id=document.id)
        tab.last_saved_at = datetime.now(timezone.utc)
        logger.info("Saved tab %s as document %s", tab_id, document.id)
        self._bus.publish(TabSaved(tab_id, document.id))

        if previous is not None:
            await self._release(self._local_keys(previous) - self._local_keys(document))
        await self.persist_snapshot()
        return True

    async def save_all(self) -> int:
        """Save every dirty tab. Failures are logged and the tab stays dirty."""
        saved = 0
        for tab in list(self._tabs):
            if not tab.has_changes:
                continue
            try:
                if await self.save_tab(tab.id):
                    saved += 1
            except StorageError:
                logger.exception("Saving tab %s failed", tab.id)
        return saved

    def snapshot(self) -> SessionSnapshot:
        """Return the persisted form of the current session."""
        active = self.active_tab
        return SessionSnapshot(
            tabs=tuple(tab.to_snapshot() for tab in self._tabs),
            active_tab_id=active.id if active is not None else None,
        )

    async def persist_snapshot(self) -> None:
        """Write the session snapshot. Failures are logged."""
        if self._snapshots is None:
            return
        try:
            await self._snapshots.save(self.snapshot())
        except StorageError:
            logger.exception("Writing the session snapshot failed")

    async def restore(self) -> tuple[Tab, ...]:
        """Initialize the Blob Store and rebuild tabs from the persisted snapshot."""
        await self._blobs.initialize()
        snapshot = await self._snapshots.load() if self._snapshots is not None else None
        self._tabs = []
        if snapshot is not None:
            for item in snapshot.tabs:
                self._tabs.append(
                    Tab(
                        id=item.id,
                        document=item.document,
                        title=item.title or item.document.title or UNTITLED,
                        has_changes=item.has_changes,
                    )
                )
        if not self._tabs:
            self.create_tab()
            return self.tabs

        active = next((tab for tab in self._tabs if snapshot is not None and tab.id == snapshot.active_tab_id), None)
        if active is None and snapshot is not None:
            flagged = [tab for tab, item in zip(self._tabs, snapshot.tabs) if item.is_active]
            active = flagged[0] if flagged else None
        self._activate(active or self._tabs[0])
        for tab in self._tabs:
            await self.check_references(tab.id)
        logger.info("Restored %d tab(s)", len(self._tabs))
        return self.tabs

    async def settle(self) -> None:
        """Wait until scheduled naming passes and blob releases have finished."""
        await self._naming.drain()
        while self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    async def prune_blobs(
        self,
        *,
        older_than: datetime,
        kind: BlobKind = "image",
        dry_run: bool = False,
    ) -> PruneReport:
        """Delete blobs created before ``older_than`` that no open tab or saved document references.

        A ``StorageError`` from reading the saved documents propagates and
        nothing is deleted.
        """
        await self.settle()
        in_use = await self._keys_in_use(kind)
        entries = await self._blobs.list_blobs(kind=kind)
        deleted = tuple(
            entry for entry in select_prune_candidates(entries, older_than=older_than) if entry.key not in in_use
        )
        if not dry_run:
            for entry in deleted:
                await self._blobs.delete(entry.key, kind=kind)
            logger.info("Pruned %d unreferenced %s blob(s)", len(deleted), kind)
        return PruneReport(
            deleted=deleted,
            bytes_freed=sum(entry.payload.size for entry in deleted),
            examined=len(entries),
            dry_run=dry_run,
        )

    async def close(self) -> None:
        """Stop pending naming passes and save every dirty tab."""
        self._naming.cancel()
        await self.settle()
        await self.save_all()
        await self.persist_snapshot()

    async def clear_all_data(self) -> None:
        """Delete every saved document and blob, then start over with one fresh tab."""
        self._naming.cancel()
        await self._naming.drain()
        await self._documents.clear()
        await self._blobs.clear()
        if self._snapshots is not None:
            await self._snapshots.clear()
        for tab in self._tabs:
            self._bus.publish(TabClosed(tab.id))
        self._tabs = []
        self._locks.clear()
        self._unresolved.clear()
        self._rename_failures.clear()
        self.create_tab()
        await self.persist_snapshot()
        logger.info("Cleared all local data")
