from __future__ import annotations

from feed_sync.events import Event, EventBus, EventType, get_event_bus, reset_event_bus


def test_handlers_receive_events_in_order_and_filter_by_type() -> None:
    bus = EventBus()
    seen: list[str] = []
    bus.subscribe(lambda event: seen.append(f"all:{event.type.value}"))
    bus.subscribe(lambda event: seen.append(f"refresh:{event.source_id}"), EventType.SOURCE_REFRESHED)

    bus.source_refreshed(3)
    bus.batch_sync_start()
    assert seen == ["all:source_refreshed", "refresh:3", "all:batch_sync_start"]


def test_failing_handler_does_not_block_others() -> None:
    bus = EventBus()
    received: list[Event] = []

    def broken(event: Event) -> None:
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.all_sources_refreshed([1, 2])
    assert received[0].source_ids == (1, 2)


def test_unsubscribe_and_reset() -> None:
    bus = EventBus()
    received: list[Event] = []
    unsubscribe = bus.subscribe(received.append)
    unsubscribe()
    bus.article_read(5)
    assert received == []
    assert bus.handler_count == 0

    fresh = reset_event_bus()
    assert get_event_bus() is fresh
