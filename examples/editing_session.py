"""An editing session end to end: tabs, attachments, renames, autosave, and archives."""

import asyncio
import tempfile
from dataclasses import replace

from recipedit import (
    ArchiveReconciler,
    AutosavePipeline,
    BlobPayload,
    Document,
    EditorSettings,
    SessionManager,
    Step,
    configure_logging,
)
from recipedit.document import update_step


async def main() -> None:
    with tempfile.TemporaryDirectory() as tmpdir:
        settings = EditorSettings(data_root=tmpdir, autosave_debounce_seconds=0.2, naming_debounce_seconds=0.1)
        configure_logging(settings)

        # ---- Session ----
        # restore() initializes the Blob Store and reopens the previous tabs (one fresh tab on first run).

        session = SessionManager.from_settings(settings)
        await session.restore()
        pipeline = AutosavePipeline(session, on_preview=lambda text: print(f"[preview] {len(text or '')} chars"))

        recipe = Document(title="Batch Job", category="Batch", walkthrough=(Step(label="Retrieve"),))
        tab = await session.open_document(recipe)
        print(f"Open tabs: {[item.title for item in session.tabs]}, active={tab.title}")

        # ---- Attachments ----
        # Keys are derived from the category and the step label.

        png = BlobPayload(b"\x89PNG fake", "screenshot.png", "image/png")
        first = await session.attach_image(tab.id, png, step_index=0)
        second = await session.attach_image(tab.id, png, step_index=0)
        print(f"Image keys: {first.key}, {second.key}")

        template = BlobPayload(b'{"name": "batch"}', "template.json", "application/json")
        attached = await session.attach_file(tab.id, template, title="Template")
        print(f"Attachment: {attached.reference}")

        rejected = await session.attach_image(tab.id, BlobPayload(b"notes", "notes.txt", "text/plain"))
        print(f"Rejected: {rejected.error}")

        # ---- Renames ----
        # Relabelling a step renames its images once edits settle.

        session.update_document(tab.id, lambda document: update_step(document, 0, label="Verify"))
        await session.settle()
        print(f"After relabel: {[media.url for media in tab.document.walkthrough[0].media]}")

        # ---- Autosave ----

        session.update_document(tab.id, lambda document: replace(document, overview="Runs the nightly batch."))
        await asyncio.sleep(0.5)
        print(f"Dirty after autosave window: {tab.has_changes}, saved ids: {await session.documents.ids()}")

        # ---- Archives ----

        reconciler = ArchiveReconciler(session)
        archive = await reconciler.export_archive(
            on_progress=lambda event: print(f"[export] {event.stage} {event.current}/{event.total}")
        )
        report = await reconciler.import_file("recipes.zip", archive)
        print(f"Imported {len(report.documents)} document(s), missing={len(report.missing)}")

        await pipeline.close()


asyncio.run(main())
