"""In-process publish/subscribe bus used to invalidate cached views."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Callable, Iterable

import structlog


class EventType(str, Enum):
    SOURCE_REFRESHED = "source_refreshed"
    ALL_SOURCES_REFRESHED = "all_sources_refreshed"
    SOURCE_DELETED = "source_deleted"
    SOURCE_UPDATED = "source_updated"
    ARTICLES_CLEARED = "articles_cleared"
    STATS_UPDATED = "stats_updated"
    BATCH_SYNC_START = "batch_sync_start"
    BATCH_SYNC_END = "batch_sync_end"
    ARTICLE_READ = "article_read"


@dataclass(slots=True, frozen=True)
class Event:
    type: EventType
    source_id: int | None = None
    source_ids: tuple[int, ...] | None = None
    article_id: int | None = None
    reason: str | None = None


Handler = Callable[[Event], None]


class EventBus:
    """Synchronous fan-out of events to subscribed handlers.

    Handlers run on the emitting thread in subscription order. A handler that
    raises is logged and skipped; the remaining handlers still receive the event.
    """

    def __init__(self, logger: structlog.BoundLogger | None = None) -> None:
        self._handlers: list[tuple[Handler, EventType | None]] = []
        self._lock = Lock()
        self.logger = logger or structlog.get_logger("feed_sync.events")

    def subscribe(self, handler: Handler, event_type: EventType | None = None) -> Callable[[], None]:
        entry = (handler, event_type)
        with self._lock:
            self._handlers.append(entry)

        def _unsubscribe() -> None:
            with self._lock:
                if entry in self._handlers:
                    self._handlers.remove(entry)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler, wanted in handlers:
            if wanted is not None and wanted is not event.type:
                continue
            try:
                handler(event)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning(
                    "event_handler_failed",
                    event_type=event.type.value,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(exc),
                )

    def clear(self) -> None:
        with self._lock:
            self._handlers.clear()

    @property
    def handler_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    # ------------------------------------------------------------------
    # Convenience emitters
    # ------------------------------------------------------------------
    def source_refreshed(self, source_id: int | None) -> None:
        self.emit(Event(EventType.SOURCE_REFRESHED, source_id=source_id))

    def all_sources_refreshed(self, source_ids: Iterable[int] | None = None) -> None:
        ids = tuple(source_ids) if source_ids is not None else None
        self.emit(Event(EventType.ALL_SOURCES_REFRESHED, source_ids=ids))

    def source_deleted(self, source_id: int) -> None:
        self.emit(Event(EventType.SOURCE_DELETED, source_id=source_id))

    def source_updated(self, source_id: int | None, reason: str | None = None) -> None:
        self.emit(Event(EventType.SOURCE_UPDATED, source_id=source_id, reason=reason))

    def articles_cleared(self, source_id: int | None = None) -> None:
        self.emit(Event(EventType.ARTICLES_CLEARED, source_id=source_id))

    def stats_updated(self, source_id: int | None = None) -> None:
        self.emit(Event(EventType.STATS_UPDATED, source_id=source_id))

    def batch_sync_start(self) -> None:
        self.emit(Event(EventType.BATCH_SYNC_START))

    def batch_sync_end(self) -> None:
        self.emit(Event(EventType.BATCH_SYNC_END))

    def article_read(self, article_id: int) -> None:
        self.emit(Event(EventType.ARTICLE_READ, article_id=article_id))


_default_bus: EventBus | None = None
_default_lock = Lock()


def get_event_bus() -> EventBus:
    """Return the process-wide bus, creating it on first use."""

    global _default_bus
    with _default_lock:
        if _default_bus is None:
            _default_bus = EventBus()
        return _default_bus


def reset_event_bus(bus: EventBus | None = None) -> EventBus:
    """Replace the process-wide bus (tests use this for isolation)."""

    global _default_bus
    with _default_lock:
        _default_bus = bus or EventBus()
        return _default_bus


__all__ = ["Event", "EventBus", "EventType", "Handler", "get_event_bus", "reset_event_bus"]
