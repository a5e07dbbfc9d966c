"""Tests for the session event bus."""

import pytest

from recipedit.events import DocumentChanged, EventBus, TabActivated, TabClosed, TabSaved


def test_publish_delivers_by_type_in_subscription_order() -> None:
    bus = EventBus()
    received: list[str] = []
    bus.subscribe(DocumentChanged, lambda event: received.append(f"first:{event.tab_id}"))
    bus.subscribe(DocumentChanged, lambda event: received.append(f"second:{event.tab_id}"))
    bus.subscribe(TabActivated, lambda event: received.append(f"activated:{event.tab_id}"))

    bus.publish(DocumentChanged("tab-1"))
    assert received == ["first:tab-1", "second:tab-1"]

    bus.publish(TabActivated("tab-2"))
    assert received[-1] == "activated:tab-2"


def test_publish_without_subscribers_is_a_no_op() -> None:
    EventBus().publish(TabClosed("tab-1"))


def test_unsubscribe_is_idempotent() -> None:
    bus = EventBus()
    received: list[TabSaved] = []
    unsubscribe = bus.subscribe(TabSaved, received.append)
    assert bus.subscriber_count(TabSaved) == 1
    unsubscribe()
    unsubscribe()
    assert bus.subscriber_count(TabSaved) == 0
    bus.publish(TabSaved("tab-1", "batch-job"))
    assert received == []


def test_failing_handler_does_not_stop_delivery(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    received: list[TabClosed] = []

    def explode(_: TabClosed) -> None:
        msg = "handler bug"
        raise RuntimeError(msg)

    bus.subscribe(TabClosed, explode)
    bus.subscribe(TabClosed, received.append)
    bus.publish(TabClosed("tab-1"))

    assert received == [TabClosed("tab-1")]
    assert "failed for" in caplog.text


def test_handler_may_unsubscribe_during_delivery() -> None:
    bus = EventBus()
    received: list[str] = []

    def once(event: DocumentChanged) -> None:
        received.append(event.tab_id)
        unsubscribe()

    unsubscribe = bus.subscribe(DocumentChanged, once)
    bus.publish(DocumentChanged("tab-1"))
    bus.publish(DocumentChanged("tab-2"))
    assert received == ["tab-1"]


def test_document_changed_defaults() -> None:
    assert DocumentChanged("tab-1").context_changed is False
