"""Autosave Pipeline: debounced preview refresh and durable saves driven by session events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from recipedit.debounce import Debouncer
from recipedit.document import strip_ephemeral
from recipedit.errors import StorageError
from recipedit.events import DocumentChanged, TabActivated

if TYPE_CHECKING:
    from collections.abc import Callable

    from recipedit.config import EditorSettings
    from recipedit.session import SessionManager

logger = logging.getLogger(__name__)

_PREVIEW_KEY = "preview"


class AutosavePipeline:
    """Two debounced channels hanging off the session's event bus.

    The preview channel recomputes the JSON preview of the active document
    after ``preview_debounce_seconds`` of quiet; the save channel saves the
    changed tab after ``autosave_debounce_seconds``. Bursts of edits coalesce
    into one run per channel and never block the caller.
    """

    def __init__(
        self,
        session: SessionManager,
        *,
        settings: EditorSettings | None = None,
        on_preview: Callable[[str | None], None] | None = None,
    ) -> None:
        """Subscribe to ``session``'s event bus."""
        settings = settings or session.settings
        self._session = session
        self._on_preview = on_preview
        self._latest_preview: str | None = None
        self._preview: Debouncer[str] = Debouncer(
            settings.preview_debounce_seconds, self._refresh_preview, name="preview"
        )
        self._save: Debouncer[str] = Debouncer(settings.autosave_debounce_seconds, self._save_tab, name="autosave")
        self._unsubscribe = [
            session.bus.subscribe(DocumentChanged, self._on_document_changed),
            session.bus.subscribe(TabActivated, self._on_tab_activated),
        ]
        self._closed = False

    @property
    def latest_preview(self) -> str | None:
        """JSON text of the active document as of the last preview refresh."""
        return self._latest_preview

    @property
    def pending_saves(self) -> frozenset[str]:
        """Tabs whose save is scheduled but not started."""
        return self._save.pending

    def _on_document_changed(self, event: DocumentChanged) -> None:
        self._preview.trigger(_PREVIEW_KEY)
        self._save.trigger(event.tab_id)

    def _on_tab_activated(self, event: TabActivated) -> None:
        self._preview.trigger(_PREVIEW_KEY)

    async def _refresh_preview(self, _key: str) -> None:
        active = self._session.active_tab
        self._latest_preview = strip_ephemeral(active.document).to_json() if active is not None else None
        if self._on_preview is not None:
            self._on_preview(self._latest_preview)

    async def _save_tab(self, tab_id: str) -> None:
        tab = self._session.get_tab(tab_id)
        if tab is None or not tab.has_changes:
            return
        try:
            await self._session.save_tab(tab_id)
        except StorageError:
            logger.exception("Autosave of tab %s failed; changes kept in memory", tab_id)

    async def flush(self) -> None:
        """Run both channels now instead of waiting for their windows."""
        await self._preview.flush()
        await self._save.flush()

    async def close(self) -> None:
        """Cancel both channels, then save every dirty tab through the session."""
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._preview.cancel()
        self._save.cancel()
        await self._preview.drain()
        await self._save.drain()
        await self._session.close()
        logger.debug("Autosave pipeline closed")
