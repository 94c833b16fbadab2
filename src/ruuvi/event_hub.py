import asyncio
import inspect
import logging
import threading
from typing import Callable, Dict, List, Any, Optional

logger = logging.getLogger(__name__)

TAG_READING_TOPIC = "tag_reading"

class EventHub:
    """
    Topic based publish/subscribe.
    Publishing is safe from any thread: when a loop is configured, handlers run on it.
    """
    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def init(self, loop: Optional[asyncio.AbstractEventLoop]):
        self._loop = loop

    def subscribe(self, topic: str, handler: Callable):
        with self._lock:
            handlers = self._subscribers.setdefault(topic, [])
            if handler not in handlers:
                handlers.append(handler)
        logger.debug(f"Subscribed to {topic}")

    def unsubscribe(self, topic: str, handler: Callable):
        with self._lock:
            handlers = self._subscribers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)
                logger.debug(f"Unsubscribed from {topic}")

    def send_all_on_topic(self, topic: str, message: Any):
        with self._lock:
            # Copy so handlers may unsubscribe while being called
            handlers = list(self._subscribers.get(topic, []))
        for handler in handlers:
            try:
                self._dispatch(handler, topic, message)
            except Exception as e:
                logger.error(f"Error handling message on topic {topic}: {e}")

    def _dispatch(self, handler: Callable, topic: str, message: Any):
        is_async = inspect.iscoroutinefunction(handler)
        loop = self._loop
        if loop is None or loop.is_closed():
            if is_async:
                logger.warning(f"EventHub loop not initialized. Cannot dispatch async handler for {topic}")
            else:
                handler(topic, message)
            return

        try:
            in_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            in_loop = False

        if in_loop:
            if is_async:
                loop.create_task(handler(topic, message))
            else:
                handler(topic, message)
        elif is_async:
            asyncio.run_coroutine_threadsafe(handler(topic, message), loop)
        else:
            loop.call_soon_threadsafe(handler, topic, message)

# Global instance
event_hub = EventHub()

def init_event_hub(loop):
    """Initialize the global event hub with the given loop."""
    event_hub.init(loop)
