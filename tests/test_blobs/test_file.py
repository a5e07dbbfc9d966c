"""Tests for FileBlobStore."""

import hashlib
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

import recipedit.blobs._file as file_module
from recipedit.blobs import SCHEMA_VERSION, BlobPayload, BlobStore, FileBlobStore
from recipedit.errors import BlobIntegrityError, StorageError


def _payload(data: bytes = b"\x89PNG", name: str = "shot.png") -> BlobPayload:
    return BlobPayload(data=data, filename=name, media_type="image/png")


async def _store(tmp_path: Path) -> FileBlobStore:
    store = FileBlobStore(tmp_path / "blobs")
    await store.initialize()
    return store


def test_satisfies_protocol(tmp_path: Path) -> None:
    assert isinstance(FileBlobStore(tmp_path), BlobStore)


def test_constructor_does_not_touch_disk(tmp_path: Path) -> None:
    root = tmp_path / "nested" / "dir"
    store = FileBlobStore(root)
    assert store.root == root
    assert not root.exists()
    assert store.schema_version is None


@pytest.mark.asyncio
async def test_initialize_creates_tables_and_schema(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    assert (store.root / "images").is_dir()
    assert (store.root / "attachmentFiles").is_dir()
    assert json.loads((store.root / "schema.json").read_text()) == {"version": SCHEMA_VERSION}
    assert store.schema_version == SCHEMA_VERSION


@pytest.mark.asyncio
async def test_initialize_is_idempotent(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("k", _payload())
    await store.initialize()
    reopened = await _store(tmp_path)
    assert await reopened.exists("k") is True


@pytest.mark.asyncio
async def test_initialize_upgrades_version_one_store(tmp_path: Path) -> None:
    root = tmp_path / "blobs"
    (root / "images").mkdir(parents=True)
    (root / "schema.json").write_text(json.dumps({"version": 1}))

    store = FileBlobStore(root)
    await store.initialize()
    assert (root / "attachmentFiles").is_dir()
    assert store.schema_version == 2


@pytest.mark.asyncio
async def test_initialize_refuses_newer_schema(tmp_path: Path) -> None:
    root = tmp_path / "blobs"
    root.mkdir()
    (root / "schema.json").write_text(json.dumps({"version": SCHEMA_VERSION + 1}))
    with pytest.raises(StorageError, match="schema version"):
        await FileBlobStore(root).initialize()


@pytest.mark.asyncio
async def test_initialize_applies_migrations_in_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    applied: list[int] = []
    monkeypatch.setattr(
        file_module,
        "MIGRATIONS",
        tuple((version, lambda _root, v=version: applied.append(v)) for version in (1, 2)),
    )
    await FileBlobStore(tmp_path / "blobs").initialize()
    assert applied == [1, 2]


@pytest.mark.asyncio
async def test_use_before_initialize_raises(tmp_path: Path) -> None:
    with pytest.raises(StorageError, match="initialize"):
        await FileBlobStore(tmp_path).get("k")


@pytest.mark.asyncio
async def test_store_and_get(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("batch-retrieve-image", _payload(b"hello", "a.png"))
    fetched = await store.get("batch-retrieve-image")
    assert fetched is not None
    assert fetched.payload.data == b"hello"
    assert fetched.payload.filename == "a.png"
    assert fetched.payload.media_type == "image/png"


@pytest.mark.asyncio
async def test_sidecar_records_metadata(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("k", _payload(b"hello"))
    meta = json.loads((store.root / "images" / "k.meta.json").read_text())
    assert meta["key"] == "k"
    assert meta["size"] == 5
    assert meta["sha256"] == hashlib.sha256(b"hello").hexdigest()


@pytest.mark.asyncio
async def test_get_missing_returns_none(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    assert await store.get("nonexistent") is None


@pytest.mark.asyncio
async def test_integrity_check(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("k", _payload(b"original"))
    (store.root / "images" / "k.blob").write_bytes(b"corrupted")
    with pytest.raises(BlobIntegrityError):
        await store.get("k")


@pytest.mark.asyncio
async def test_list_blobs_skips_corrupt_records(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("good", _payload(b"good"))
    await store.store("bad", _payload(b"bad"))
    (store.root / "images" / "bad.blob").write_bytes(b"tampered")
    assert [entry.key for entry in await store.list_blobs()] == ["good"]


@pytest.mark.asyncio
async def test_kinds_are_separate_directories(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("template.json", BlobPayload(data=b"{}", filename="template.json"), kind="attachment")
    assert (store.root / "attachmentFiles" / "template.json.blob").exists()
    assert await store.exists("template.json", kind="attachment") is True
    assert await store.exists("template.json") is False


@pytest.mark.asyncio
async def test_delete(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("k", _payload())
    assert await store.delete("k") is True
    assert await store.delete("k") is False
    assert not (store.root / "images" / "k.meta.json").exists()


@pytest.mark.asyncio
@pytest.mark.parametrize("key", ["../escape", "../../etc/passwd", ""])
async def test_rejects_keys_outside_root(tmp_path: Path, key: str) -> None:
    store = await _store(tmp_path)
    with pytest.raises(StorageError):
        await store.store(key, _payload())


@pytest.mark.asyncio
async def test_clear(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("a", _payload())
    await store.store("t.json", BlobPayload(data=b"{}", filename="t.json"), kind="attachment")
    assert await store.clear() == 2
    assert await store.list_blobs() == ()
    assert await store.list_blobs(kind="attachment") == ()


@pytest.mark.asyncio
async def test_prune_removes_old_records(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.store("old", _payload(b"12345"))
    meta_path = store.root / "images" / "old.meta.json"
    meta = json.loads(meta_path.read_text())
    meta["created_at"] = "2020-01-01T00:00:00+00:00"
    meta_path.write_text(json.dumps(meta))
    await store.store("new", _payload())

    report = await store.prune(older_than=datetime(2021, 1, 1, tzinfo=timezone.utc))
    assert [entry.key for entry in report.deleted] == ["old"]
    assert report.bytes_freed == 5
    assert await store.exists("old") is False
    assert await store.exists("new") is True
