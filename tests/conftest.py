"""Shared fixtures: settings with tiny debounce windows and in-memory stores."""

from pathlib import Path

import pytest

from recipedit.blobs import InMemoryBlobStore
from recipedit.config import EditorSettings
from recipedit.session import SessionManager
from recipedit.storage import DocumentRepository, InMemoryKeyValueStore, SessionSnapshotStore


@pytest.fixture
def settings(tmp_path: Path) -> EditorSettings:
    return EditorSettings(
        data_root=tmp_path / "data",
        preview_debounce_seconds=0.01,
        autosave_debounce_seconds=0.03,
        naming_debounce_seconds=0.02,
    )


@pytest.fixture
def kv() -> InMemoryKeyValueStore:
    return InMemoryKeyValueStore()


@pytest.fixture
def blobs() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def session(settings: EditorSettings, kv: InMemoryKeyValueStore, blobs: InMemoryBlobStore) -> SessionManager:
    return SessionManager(
        blobs=blobs,
        documents=DocumentRepository(kv),
        snapshots=SessionSnapshotStore(kv),
        settings=settings,
    )
