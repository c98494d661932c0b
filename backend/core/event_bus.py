# core/event_bus.py — InMemoryEventBus implementation
#
# Concrete synchronous event bus. Single-process pub/sub for decoupling modules.
# One bus is built per application by core.app.create_app() and handed to every
# module's register_subscribers(); there is no process-wide instance.

import logging
import threading
from collections import defaultdict
from typing import Callable, Any

from core.interfaces.event_bus import EventBus, Event

log = logging.getLogger("rsl.event_bus")


class InMemoryEventBus(EventBus):
    """
    Synchronous in-process event bus.

    Handlers are called in registration order. Exceptions in one handler do not
    prevent subsequent handlers from running. Handlers that do slow work (HTTP
    delivery) hand it off to their own worker pool instead of blocking here.
    """

    def __init__(self):
        # event_type -> list of callables
        self._handlers: dict[str, list[Callable[[Event], Any]]] = defaultdict(list)
        # wildcard handlers subscribed to "*" receive every event
        self._wildcard_handlers: list[Callable[[Event], Any]] = []
        self._lock = threading.Lock()

    def publish(self, event: Event) -> None:
        """Dispatch an event to all registered handlers for its type, then wildcards."""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            wildcards = list(self._wildcard_handlers)

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                log.error(
                    f"Event handler {handler!r} raised for event "
                    f"'{event.event_type}': {e}",
                    exc_info=True,
                )

        for handler in wildcards:
            try:
                handler(event)
            except Exception as e:
                log.error(
                    f"Wildcard handler {handler!r} raised for event "
                    f"'{event.event_type}': {e}",
                    exc_info=True,
                )

    def subscribe(self, event_type: str, handler: Callable[[Event], Any]) -> None:
        """
        Register a handler for an event type.

        Use event_type="*" to receive all events (wildcard).
        """
        with self._lock:
            if event_type == "*":
                if handler not in self._wildcard_handlers:
                    self._wildcard_handlers.append(handler)
            elif handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        """Remove a previously registered handler. Unknown handlers are ignored."""
        with self._lock:
            target = self._wildcard_handlers if event_type == "*" else self._handlers[event_type]
            if handler in target:
                target.remove(handler)

    def handler_count(self, event_type: str) -> int:
        with self._lock:
            return len(self._handlers.get(event_type, []))
