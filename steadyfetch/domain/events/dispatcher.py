"""In-process event dispatcher.

Handlers are registered per event type (subclasses match their bases) and run
synchronously in registration order. A failing handler is logged and never
affects the component that raised the event.
"""

import logging
from collections import defaultdict
from typing import Callable, DefaultDict, List, Type

from steadyfetch.domain.events.data_events import DomainEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


class EventDispatcher:
    """Publishes domain events to subscribed handlers."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[Type[DomainEvent], List[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: Type[DomainEvent], handler: EventHandler) -> Callable[[], None]:
        """Registers a handler and returns a callable that unregisters it."""
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers[event_type]:
                self._handlers[event_type].remove(handler)

        return unsubscribe

    def dispatch(self, event: DomainEvent) -> None:
        logger.debug(f"EVENT: {event}")
        for event_type, handlers in list(self._handlers.items()):
            if not isinstance(event, event_type):
                continue
            for handler in list(handlers):
                try:
                    handler(event)
                except Exception as e:
                    logger.error(f"Event handler {handler!r} failed for {type(event).__name__}: {e}", exc_info=True)
