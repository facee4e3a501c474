"""
In-process event bus between the pipeline controller and its listeners.

Publishing never blocks the publisher: handlers run on the bus's own
executor, and a failing handler is logged without affecting other handlers
or the pipeline run that published the event.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, List, Optional

from delivery_pipeline.schemas.events import EventType, NotificationEvent
from delivery_pipeline.utils.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[[NotificationEvent], None]


class EventBus:
    """
    Fire-and-forget publish/subscribe for ``NotificationEvent``.

    Handlers subscribe to all events or to a subset of event types.
    """

    def __init__(self, max_workers: int = 2):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="event-bus")
        self._subscribers: List[tuple] = []
        self._lock = threading.Lock()

    def subscribe(self, handler: EventHandler, event_types: Optional[List[EventType]] = None) -> None:
        with self._lock:
            self._subscribers.append((handler, tuple(event_types) if event_types else None))

    def publish(self, event: NotificationEvent) -> List[Future]:
        """
        Schedule delivery of an event to every matching subscriber.

        Returns the delivery futures; callers are not expected to wait on them.
        """
        with self._lock:
            handlers = [
                handler for handler, types in self._subscribers
                if types is None or event.event_type in types
            ]

        logger.debug("Publishing event", extra={
            'pipeline_run_id': event.pipeline_run_id,
            'event_type': event.event_type.value,
            'subscribers': len(handlers),
        })
        return [self._executor.submit(self._deliver, handler, event) for handler in handlers]

    @staticmethod
    def _deliver(handler: EventHandler, event: NotificationEvent) -> None:
        try:
            handler(event)
        except Exception as e:
            logger.error("Event handler failed", extra={
                'handler': getattr(handler, '__qualname__', repr(handler)),
                'pipeline_run_id': event.pipeline_run_id,
                'event_type': event.event_type.value,
                'error': str(e),
            }, exc_info=True)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
