"""Session events and the bus that delivers them."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DocumentChanged:
    """A tab's document was mutated. ``context_changed`` is set when key-bearing fields changed."""

    tab_id: str
    context_changed: bool = False


@dataclass(frozen=True, slots=True)
class TabSaved:
    """A tab's document was durably saved."""

    tab_id: str
    document_id: str


@dataclass(frozen=True, slots=True)
class TabActivated:
    """A tab became the active tab."""

    tab_id: str


@dataclass(frozen=True, slots=True)
class TabClosed:
    """A tab was removed from the session."""

    tab_id: str


SessionEvent = DocumentChanged | TabSaved | TabActivated | TabClosed
EventT = TypeVar("EventT", DocumentChanged, TabSaved, TabActivated, TabClosed)


class EventBus:
    """Synchronous publish/subscribe keyed by event type.

    Handlers run in subscription order. A failing handler is logged and does
    not stop delivery to the others.
    """

    def __init__(self) -> None:
        """Initialize with no subscribers."""
        self._handlers: dict[type, list[Callable[[object], None]]] = {}

    def subscribe(self, event_type: type[EventT], handler: Callable[[EventT], None]) -> Callable[[], None]:
        """Register ``handler`` for ``event_type`` and return a callable that unsubscribes it."""
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)  # type: ignore[arg-type]

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)  # type: ignore[arg-type]

        return unsubscribe

    def publish(self, event: SessionEvent) -> None:
        """Deliver ``event`` to every handler subscribed to its type."""
        for handler in list(self._handlers.get(type(event), ())):
            try:
                handler(event)
            except Exception:
                logger.warning("Handler %r failed for %r", handler, event, exc_info=True)

    def subscriber_count(self, event_type: type) -> int:
        """Number of handlers subscribed to ``event_type``."""
        return len(self._handlers.get(event_type, ()))
