"""Tests for the Tab Session Manager."""

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from recipedit.blobs import BlobPayload, InMemoryBlobStore
from recipedit.config import EditorSettings
from recipedit.document import Document, MediaRef, Step, update_step
from recipedit.errors import SessionError, StorageError
from recipedit.events import DocumentChanged, TabActivated, TabClosed, TabSaved
from recipedit.session import UNTITLED, SessionManager, Tab
from recipedit.storage import (
    DOCUMENTS_ENTRY,
    DocumentRepository,
    FileKeyValueStore,
    InMemoryKeyValueStore,
    SessionSnapshot,
    SessionSnapshotStore,
    TabSnapshot,
)


def _png(name: str = "shot.png", data: bytes = b"\x89PNG\r\n") -> BlobPayload:
    return BlobPayload(data=data, filename=name, media_type="image/png")


def _recipe(document_id: str = "", title: str = "Batch Job") -> Document:
    return Document(id=document_id, title=title, category="Batch", walkthrough=(Step(label="Retrieve"),))


def _retitle(title: str) -> Callable[[Document], Document]:
    return lambda document: replace(document, title=title)


def _assert_single_active(session: SessionManager) -> None:
    assert sum(tab.is_active for tab in session.tabs) == 1


class FailingDocumentsStore(InMemoryKeyValueStore):
    async def write(self, name: str, value: object) -> None:
        if name == DOCUMENTS_ENTRY:
            msg = "storage quota exceeded"
            raise StorageError(msg)
        await super().write(name, value)


# =============================================================================
# Tab lifecycle
# =============================================================================


def test_create_tab_activates_new_tab(session: SessionManager) -> None:
    first = session.create_tab()
    second = session.create_tab()
    assert session.active_tab is second
    assert first.is_active is False
    assert first.title == "New Recipe"
    _assert_single_active(session)


def test_create_tab_uses_untitled_for_blank_title(session: SessionManager) -> None:
    tab = session.create_tab(Document(title=""))
    assert tab.title == UNTITLED


@pytest.mark.asyncio
async def test_select_tab_unknown_id_is_a_no_op(session: SessionManager) -> None:
    tab = session.create_tab()
    await session.select_tab("missing")
    assert session.active_tab is tab


@pytest.mark.asyncio
async def test_select_tab_saves_dirty_outgoing_tab(session: SessionManager) -> None:
    saved: list[TabSaved] = []
    session.bus.subscribe(TabSaved, saved.append)
    first = session.create_tab()
    second = session.create_tab()
    session.update_document(second.id, _retitle("Copy Records"))

    await session.select_tab(first.id)

    assert session.active_tab is first
    assert second.has_changes is False
    assert saved == [TabSaved(second.id, "copy-records")]
    _assert_single_active(session)


@pytest.mark.asyncio
async def test_select_tab_switches_even_when_save_fails(settings: EditorSettings) -> None:
    kv = FailingDocumentsStore()
    session = SessionManager(blobs=InMemoryBlobStore(), documents=DocumentRepository(kv), settings=settings)
    first = session.create_tab()
    second = session.create_tab()
    session.update_document(second.id, _retitle("Copy Records"))

    await session.select_tab(first.id)

    assert session.active_tab is first
    assert second.has_changes is True


@pytest.mark.asyncio
async def test_close_clean_active_tab_selects_neighbour_scenario_c(session: SessionManager) -> None:
    first = session.create_tab()
    middle = session.create_tab()
    last = session.create_tab()
    await session.select_tab(middle.id)

    assert await session.close_tab(middle.id) is True

    assert session.tabs == (first, last)
    assert session.active_tab is last
    _assert_single_active(session)


@pytest.mark.asyncio
async def test_close_last_tab_opens_fresh_one_scenario_c(session: SessionManager) -> None:
    closed: list[TabClosed] = []
    session.bus.subscribe(TabClosed, closed.append)
    only = session.create_tab()

    assert await session.close_tab(only.id) is True

    assert closed == [TabClosed(only.id)]
    assert len(session.tabs) == 1
    assert session.tabs[0].id != only.id
    _assert_single_active(session)


@pytest.mark.asyncio
async def test_close_inactive_tab_keeps_active_tab(session: SessionManager) -> None:
    first = session.create_tab()
    second = session.create_tab()
    assert await session.close_tab(first.id) is True
    assert session.active_tab is second


@pytest.mark.asyncio
async def test_close_unknown_tab_returns_false(session: SessionManager) -> None:
    session.create_tab()
    assert await session.close_tab("missing") is False


@pytest.mark.asyncio
async def test_dirty_tab_without_confirmation_stays_open(session: SessionManager) -> None:
    tab = session.create_tab()
    session.update_document(tab.id, _retitle("Edited"))
    assert await session.close_tab(tab.id) is False
    assert await session.close_tab(tab.id, confirm=lambda _: False) is False
    assert session.tabs == (tab,)


@pytest.mark.asyncio
async def test_dirty_tab_closes_after_async_confirmation(session: SessionManager) -> None:
    asked: list[str] = []

    async def confirm(tab: Tab) -> bool:
        asked.append(tab.title)
        return True

    session.create_tab()
    tab = session.create_tab()
    session.update_document(tab.id, _retitle("Edited"))

    assert await session.close_tab(tab.id, confirm=confirm) is True
    assert asked == ["Edited"]
    assert session.get_tab(tab.id) is None
    _assert_single_active(session)


@pytest.mark.asyncio
async def test_discarding_unsaved_tab_releases_its_blobs(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = session.create_tab()
    result = await session.attach_image(tab.id, _png())
    assert await blobs.exists(result.key)

    assert await session.close_tab(tab.id, confirm=lambda _: True) is True

    assert await blobs.exists(result.key) is False


@pytest.mark.asyncio
async def test_open_document_reuses_tab_with_same_id(session: SessionManager) -> None:
    tab = await session.open_document(_recipe("batch-job"))
    session.create_tab()
    again = await session.open_document(_recipe("batch-job"))
    assert again is tab
    assert session.active_tab is tab
    assert len(session.tabs) == 2


@pytest.mark.asyncio
async def test_open_document_refuses_beyond_max_tabs(tmp_path: Path) -> None:
    settings = EditorSettings(data_root=tmp_path, max_tabs=2)
    session = SessionManager(
        blobs=InMemoryBlobStore(),
        documents=DocumentRepository(InMemoryKeyValueStore()),
        settings=settings,
    )
    await session.open_document(_recipe("one"))
    await session.open_document(_recipe("two"))
    with pytest.raises(SessionError, match="more than 2 tabs"):
        await session.open_document(_recipe("three"))
    assert len(session.tabs) == 2


# =============================================================================
# Editing
# =============================================================================


@pytest.mark.asyncio
async def test_update_document_marks_tab_dirty_and_publishes(session: SessionManager) -> None:
    events: list[DocumentChanged] = []
    session.bus.subscribe(DocumentChanged, events.append)
    tab = session.create_tab()

    session.update_document(tab.id, _retitle("Edited"))

    assert tab.has_changes is True
    assert tab.title == "Edited"
    assert session.has_unsaved_changes() is True
    assert events == [DocumentChanged(tab.id, False)]


@pytest.mark.asyncio
async def test_update_document_without_change_is_a_no_op(session: SessionManager) -> None:
    events: list[DocumentChanged] = []
    session.bus.subscribe(DocumentChanged, events.append)
    tab = session.create_tab()
    session.update_document(tab.id, lambda document: document)
    assert tab.has_changes is False
    assert events == []


def test_update_document_unknown_tab(session: SessionManager) -> None:
    with pytest.raises(SessionError, match="Unknown tab"):
        session.update_document("missing", _retitle("x"))


@pytest.mark.asyncio
async def test_attach_image_resolves_step_keys_scenarios_a_and_b(
    session: SessionManager, blobs: InMemoryBlobStore
) -> None:
    tab = await session.open_document(_recipe())

    first = await session.attach_image(tab.id, _png(), step_index=0)
    second = await session.attach_image(tab.id, _png("second.png"), step_index=0)

    assert first.ok
    assert first.key == "batch-retrieve-image"
    assert first.reference == "images/batch-retrieve-image.png"
    assert second.key == "batch-retrieve-image-2"
    media = tab.document.walkthrough[0].media
    assert [item.url for item in media] == [first.reference, second.reference]
    assert media[0].preview_handle is not None
    assert media[0].preview_handle.startswith("data:image/png;base64,")
    assert media[1].alt == "second"
    assert await blobs.exists("batch-retrieve-image-2")
    assert tab.has_changes is True


@pytest.mark.asyncio
async def test_attach_image_without_step_uses_general_keys(session: SessionManager) -> None:
    tab = session.create_tab()
    first = await session.attach_image(tab.id, _png())
    second = await session.attach_image(tab.id, _png())
    assert (first.key, second.key) == ("general-image", "general-image-2")
    assert len(tab.document.general_images) == 2


@pytest.mark.asyncio
async def test_attach_image_avoids_keys_of_saved_documents(session: SessionManager) -> None:
    saved = update_step(_recipe("saved"), 0, media=(MediaRef(url="images/batch-retrieve-image.png"),))
    await session.documents.save(saved)
    tab = await session.open_document(_recipe("fresh"))

    result = await session.attach_image(tab.id, _png(), step_index=0)

    assert result.key == "batch-retrieve-image-2"


@pytest.mark.asyncio
async def test_attach_image_rejects_invalid_payload(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = await session.open_document(_recipe())
    text = BlobPayload(data=b"notes", filename="notes.txt", media_type="text/plain")

    result = await session.attach_image(tab.id, text, step_index=0)

    assert result.ok is False
    assert result.error == "Invalid file type. Only images are allowed."
    assert tab.has_changes is False
    assert await blobs.list_blobs() == ()


@pytest.mark.asyncio
async def test_attach_image_rejects_unknown_step(session: SessionManager) -> None:
    tab = await session.open_document(_recipe())
    result = await session.attach_image(tab.id, _png(), step_index=4)
    assert result.error == "Step 4 does not exist."


@pytest.mark.asyncio
async def test_attach_file_adds_attachment(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = session.create_tab()
    payload = BlobPayload(data=b"{}", filename="template.json", media_type="application/json")

    first = await session.attach_file(tab.id, payload, title="Template")
    second = await session.attach_file(tab.id, payload)

    assert first.reference == "downloadExecutables/template.json"
    assert second.key == "template-2.json"
    assert [item.title for item in tab.document.attachments] == ["Template", "template.json"]
    assert await blobs.exists("template-2.json", kind="attachment")


@pytest.mark.asyncio
async def test_attach_file_rejects_disallowed_extension(session: SessionManager) -> None:
    tab = session.create_tab()
    result = await session.attach_file(tab.id, BlobPayload(data=b"MZ", filename="tool.exe"))
    assert result.error == "Invalid file type. Allowed attachment types: .json."
    assert tab.document.attachments == ()


@pytest.mark.asyncio
async def test_detach_releases_unreferenced_blob(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = await session.open_document(_recipe())
    result = await session.attach_image(tab.id, _png(), step_index=0)

    assert session.detach(tab.id, result.reference) is True
    await session.settle()

    assert tab.document.walkthrough[0].media == ()
    assert await blobs.exists(result.key) is False
    assert session.detach(tab.id, result.reference) is False


@pytest.mark.asyncio
async def test_detach_keeps_blob_until_saved_copy_drops_it(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = await session.open_document(_recipe())
    result = await session.attach_image(tab.id, _png(), step_index=0)
    await session.save_tab(tab.id)

    session.detach(tab.id, result.reference)
    await session.settle()
    assert await blobs.exists(result.key) is True

    await session.save_tab(tab.id)
    assert await blobs.exists(result.key) is False


@pytest.mark.asyncio
async def test_replace_media_resupplies_missing_image(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    document = update_step(_recipe(), 0, media=(MediaRef(url="images/lost.png"),))
    tab = await session.open_document(document)
    assert [ref.key for ref in session.unresolved] == ["lost"]

    result = await session.replace_media(tab.id, "images/lost.png", _png())
    await session.settle()

    assert result.key == "batch-retrieve-image"
    assert tab.document.walkthrough[0].media[0].url == "images/batch-retrieve-image.png"
    assert session.unresolved == ()
    assert await blobs.exists("batch-retrieve-image")


@pytest.mark.asyncio
async def test_replace_media_unknown_reference(session: SessionManager) -> None:
    tab = session.create_tab()
    result = await session.replace_media(tab.id, "images/nothing.png", _png())
    assert result.error == "No image reference at 'images/nothing.png'."


# =============================================================================
# Naming pass and previews
# =============================================================================


@pytest.mark.asyncio
async def test_relabel_triggers_debounced_rename(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    events: list[DocumentChanged] = []
    session.bus.subscribe(DocumentChanged, events.append)
    tab = await session.open_document(_recipe())
    await session.attach_image(tab.id, _png(), step_index=0)
    await session.attach_image(tab.id, _png(), step_index=0)

    session.update_document(tab.id, lambda document: update_step(document, 0, label="Verify"))
    assert events[-1] == DocumentChanged(tab.id, True)
    await session.settle()

    urls = [item.url for item in tab.document.walkthrough[0].media]
    assert urls == ["images/batch-verify-image.png", "images/batch-verify-image-2.png"]
    assert await blobs.exists("batch-retrieve-image") is False
    assert await blobs.exists("batch-retrieve-image-2") is False
    assert await blobs.exists("batch-verify-image")
    assert await blobs.exists("batch-verify-image-2")
    assert events[-1] == DocumentChanged(tab.id, False)


@pytest.mark.asyncio
async def test_resync_now_keeps_keys_used_by_saved_copy(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = await session.open_document(_recipe())
    await session.attach_image(tab.id, _png(), step_index=0)
    await session.save_tab(tab.id)

    session.update_document(tab.id, lambda document: update_step(document, 0, label="Verify"))
    await session.resync_now(tab.id)

    assert tab.document.walkthrough[0].media[0].url == "images/batch-verify-image.png"
    assert await blobs.exists("batch-retrieve-image") is True
    assert session.rename_failures == ()

    await session.save_tab(tab.id)
    assert await blobs.exists("batch-retrieve-image") is False


@pytest.mark.asyncio
async def test_naming_pass_reports_missing_images(session: SessionManager) -> None:
    document = update_step(_recipe(), 0, media=(MediaRef(url="images/batch-retrieve-image.png"),))
    tab = await session.open_document(document)
    session.update_document(tab.id, lambda current: update_step(current, 0, label="Verify"))
    await session.resync_now(tab.id)

    assert [ref.key for ref in session.unresolved] == ["batch-retrieve-image"]
    assert tab.document.walkthrough[0].media[0].url == "images/batch-retrieve-image.png"


@pytest.mark.asyncio
async def test_load_previews_attaches_handles(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    await blobs.store("general-image", _png())
    document = Document(
        id="doc",
        title="Doc",
        category="Batch",
        general_images=(MediaRef(url="images/general-image.png"), MediaRef(url="images/gone.png")),
    )
    tab = await session.open_document(document)

    assert await session.load_previews(tab.id) == 1

    handle = tab.document.general_images[0].preview_handle
    assert handle is not None
    assert handle.startswith("data:image/png;base64,")
    assert [ref.key for ref in session.unresolved] == ["gone"]
    assert tab.has_changes is False


@pytest.mark.asyncio
async def test_load_previews_for_inactive_tab_is_discarded(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    await blobs.store("general-image", _png())
    tab = await session.open_document(Document(id="doc", general_images=(MediaRef(url="images/general-image.png"),)))
    session.create_tab()

    assert await session.load_previews(tab.id) == 0
    assert tab.document.general_images[0].preview_handle is None


# =============================================================================
# Persistence
# =============================================================================


@pytest.mark.asyncio
async def test_save_tab_twice_writes_once(session: SessionManager, kv: InMemoryKeyValueStore) -> None:
    tab = session.create_tab()
    session.update_document(tab.id, _retitle("Batch Job"))

    assert await session.save_tab(tab.id) is True
    writes = kv.writes
    assert await session.save_tab(tab.id) is False

    assert kv.writes == writes
    assert tab.document.id == "batch-job"
    assert tab.has_changes is False
    assert tab.last_saved_at is not None
    assert await session.documents.ids() == ("batch-job",)


@pytest.mark.asyncio
async def test_save_tab_without_title_uses_untitled_id(session: SessionManager) -> None:
    tab = session.create_tab()
    session.update_document(tab.id, _retitle(""))
    await session.save_tab(tab.id)
    assert tab.document.id == "untitled"


@pytest.mark.asyncio
async def test_save_failure_leaves_tab_dirty(settings: EditorSettings) -> None:
    session = SessionManager(
        blobs=InMemoryBlobStore(),
        documents=DocumentRepository(FailingDocumentsStore()),
        settings=settings,
    )
    tab = session.create_tab()
    session.update_document(tab.id, _retitle("Batch Job"))

    with pytest.raises(StorageError, match="quota"):
        await session.save_tab(tab.id)
    assert tab.has_changes is True
    assert tab.document.id == ""
    assert tab.document.title == "Batch Job"
    assert await session.save_all() == 0


@pytest.mark.asyncio
async def test_save_all_counts_saved_tabs(session: SessionManager) -> None:
    first = session.create_tab()
    session.create_tab()
    third = session.create_tab()
    session.update_document(first.id, _retitle("One"))
    session.update_document(third.id, _retitle("Three"))
    assert await session.save_all() == 2
    assert session.has_unsaved_changes() is False


@pytest.mark.asyncio
async def test_restore_rebuilds_persisted_tabs(
    session: SessionManager, settings: EditorSettings, kv: InMemoryKeyValueStore, blobs: InMemoryBlobStore
) -> None:
    first = session.create_tab()
    second = session.create_tab()
    session.update_document(second.id, _retitle("Draft"))
    await session.select_tab(first.id)
    await session.persist_snapshot()

    restored = SessionManager(
        blobs=blobs,
        documents=DocumentRepository(kv),
        snapshots=SessionSnapshotStore(kv),
        settings=settings,
    )
    tabs = await restored.restore()

    assert [tab.id for tab in tabs] == [first.id, second.id]
    assert restored.active_tab is not None
    assert restored.active_tab.id == first.id
    assert tabs[1].title == "Draft"
    assert blobs.initialized is True
    _assert_single_active(restored)


@pytest.mark.asyncio
async def test_restore_without_snapshot_opens_fresh_tab(session: SessionManager) -> None:
    tabs = await session.restore()
    assert len(tabs) == 1
    assert tabs[0].is_active is True


@pytest.mark.asyncio
async def test_restore_enforces_single_active_tab(session: SessionManager, kv: InMemoryKeyValueStore) -> None:
    snapshot = SessionSnapshot(
        tabs=(
            TabSnapshot(id="a", title="A", has_changes=False, is_active=False, document=Document(title="A")),
            TabSnapshot(id="b", title="B", has_changes=False, is_active=True, document=Document(title="B")),
            TabSnapshot(id="c", title="C", has_changes=False, is_active=True, document=Document(title="C")),
        ),
        active_tab_id="gone",
    )
    await SessionSnapshotStore(kv).save(snapshot)

    await session.restore()

    assert session.active_tab is not None
    assert session.active_tab.id == "b"
    _assert_single_active(session)


@pytest.mark.asyncio
async def test_restore_records_missing_references(session: SessionManager, kv: InMemoryKeyValueStore) -> None:
    document = Document(title="A", general_images=(MediaRef(url="images/gone.png"),))
    snapshot = SessionSnapshot(
        tabs=(TabSnapshot(id="a", title="A", has_changes=True, is_active=True, document=document),),
        active_tab_id="a",
    )
    await SessionSnapshotStore(kv).save(snapshot)

    await session.restore()

    assert [ref.key for ref in session.unresolved] == ["gone"]
    assert session.tabs[0].has_changes is True


def _file_backed_session(root: Path, settings: EditorSettings, blobs: InMemoryBlobStore) -> SessionManager:
    kv = FileKeyValueStore(root)
    return SessionManager(
        blobs=blobs,
        documents=DocumentRepository(kv),
        snapshots=SessionSnapshotStore(kv),
        settings=settings,
    )


@pytest.mark.asyncio
async def test_restore_with_corrupt_snapshot_file_opens_fresh_tab(
    tmp_path: Path, settings: EditorSettings, blobs: InMemoryBlobStore, caplog: pytest.LogCaptureFixture
) -> None:
    (tmp_path / "session.json").write_text("{not json", encoding="utf-8")
    session = _file_backed_session(tmp_path, settings, blobs)

    tabs = await session.restore()

    assert len(tabs) == 1
    assert tabs[0].is_active is True
    assert "Discarding unreadable session snapshot" in caplog.text


@pytest.mark.asyncio
async def test_attach_with_corrupt_saved_documents_reports_error(
    tmp_path: Path, settings: EditorSettings, blobs: InMemoryBlobStore
) -> None:
    (tmp_path / "documents.json").write_text("{not json", encoding="utf-8")
    session = _file_backed_session(tmp_path, settings, blobs)
    tab = session.create_tab()

    image = await session.attach_image(tab.id, _png())
    attachment = await session.attach_file(tab.id, BlobPayload(b"{}", "template.json"))

    assert image.ok is False
    assert "not valid JSON" in (image.error or "")
    assert attachment.ok is False
    assert tab.document.general_images == ()
    assert tab.document.attachments == ()
    assert await blobs.list_blobs() == ()


@pytest.mark.asyncio
async def test_release_keeps_blobs_while_saved_documents_are_unreadable(
    tmp_path: Path, settings: EditorSettings, blobs: InMemoryBlobStore, caplog: pytest.LogCaptureFixture
) -> None:
    session = _file_backed_session(tmp_path, settings, blobs)
    tab = session.create_tab()
    result = await session.attach_image(tab.id, _png())
    assert result.ok is True
    (tmp_path / "documents.json").write_text("{not json", encoding="utf-8")

    assert session.detach(tab.id, result.reference or "") is True
    await session.settle()

    assert await blobs.exists(result.key or "") is True
    assert "Keeping 1 unreferenced blob(s)" in caplog.text


@pytest.mark.asyncio
async def test_prune_blobs_keeps_referenced_keys(session: SessionManager, blobs: InMemoryBlobStore) -> None:
    tab = session.create_tab()
    kept = await session.attach_image(tab.id, _png())
    await blobs.store("orphan", _png("orphan.png"))
    cutoff = datetime.now(timezone.utc) + timedelta(seconds=1)

    preview = await session.prune_blobs(older_than=cutoff, dry_run=True)
    assert [entry.key for entry in preview.deleted] == ["orphan"]
    assert await blobs.exists("orphan") is True

    report = await session.prune_blobs(older_than=cutoff)

    assert [entry.key for entry in report.deleted] == ["orphan"]
    assert report.examined == 2
    assert await blobs.exists("orphan") is False
    assert await blobs.exists(kept.key or "") is True


@pytest.mark.asyncio
async def test_close_saves_dirty_tabs(session: SessionManager) -> None:
    tab = session.create_tab()
    session.update_document(tab.id, _retitle("Batch Job"))
    await session.close()
    assert tab.has_changes is False
    assert await session.documents.ids() == ("batch-job",)


@pytest.mark.asyncio
async def test_clear_all_data(session: SessionManager, blobs: InMemoryBlobStore, kv: InMemoryKeyValueStore) -> None:
    activated: list[TabActivated] = []
    tab = session.create_tab()
    await session.attach_image(tab.id, _png())
    session.update_document(tab.id, _retitle("Batch Job"))
    await session.save_tab(tab.id)
    session.bus.subscribe(TabActivated, activated.append)

    await session.clear_all_data()

    assert await session.documents.list_documents() == ()
    assert await blobs.list_blobs() == ()
    assert len(session.tabs) == 1
    assert session.tabs[0].id != tab.id
    assert activated == [TabActivated(session.tabs[0].id)]
    snapshot = await SessionSnapshotStore(kv).load()
    assert snapshot is not None
    assert [item.id for item in snapshot.tabs] == [session.tabs[0].id]
