"""Blob Store backends, payload validation, and the payload helpers."""

import asyncio
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from recipedit import BlobPayload, EditorSettings, FileBlobStore, InMemoryBlobStore, payload_from_path, validate_payload
from recipedit.blobs import data_uri


async def main() -> None:
    # ---- InMemoryBlobStore ----
    # Best for development, testing, and short-lived processes.

    memory_store = InMemoryBlobStore()
    await memory_store.initialize()
    record = await memory_store.store("general-image", BlobPayload(b"\x89PNG fake", "shot.png", "image/png"))
    print(f"[InMemory] key={record.key}, size={record.payload.size}")
    print(f"  exists() = {await memory_store.exists('general-image')}")
    print(f"  list_blobs() count = {len(await memory_store.list_blobs())}")
    print(f"  delete() = {await memory_store.delete('general-image')}")
    print(f"  exists() after delete = {await memory_store.exists('general-image')}")

    # ---- FileBlobStore ----
    # Persists one file per blob plus a metadata sidecar under a root directory.

    with tempfile.TemporaryDirectory() as tmpdir:
        file_store = FileBlobStore(Path(tmpdir) / "blobs")
        await file_store.initialize()
        print(f"\n[File] root = {file_store.root}, schema version = {file_store.schema_version}")

        await file_store.store("template.json", BlobPayload(b"{}", "template.json"), kind="attachment")
        stored = await file_store.get("template.json", kind="attachment")
        print(f"  get() = {stored.payload.data if stored else None!r}")

        # Prune every attachment stored before "now + 1 day".
        cutoff = datetime.now(timezone.utc) + timedelta(days=1)
        dry_run = await file_store.prune(older_than=cutoff, kind="attachment", dry_run=True)
        print(f"  prune(dry_run=True) -> delete={len(dry_run.deleted)}, bytes_freed={dry_run.bytes_freed}")
        report = await file_store.prune(older_than=cutoff, kind="attachment")
        print(f"  prune() -> deleted={[entry.key for entry in report.deleted]}")

    # ---- Validation and helpers ----
    # Payloads are checked against the configured limits before they are stored.

    settings = EditorSettings()
    with tempfile.TemporaryDirectory() as tmpdir:
        sample = Path(tmpdir) / "photo.png"
        sample.write_bytes(b"\x89PNG fake image")
        payload = payload_from_path(sample)
        print(f"\n[payload_from_path] media_type={payload.media_type}, size={payload.size}")
        print(f"  valid image = {validate_payload(payload, 'image', settings).valid}")
        print(f"  preview handle = {data_uri(payload)[:32]}...")

    text = BlobPayload(b"notes", "notes.txt", "text/plain")
    print(f"  text as image -> {validate_payload(text, 'image', settings).error}")


asyncio.run(main())
