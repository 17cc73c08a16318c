import inspect
from typing import Callable, Dict, List

from logging_config import get_logger

logger = get_logger(__name__)

ROOM_JOINED = "collaboration:joined"
ROOM_LEFT = "collaboration:left"


class EventBus:
    """In-process topic pub/sub for views that need to hear about each other's actions,
    e.g. a room list refreshing after an invitation is accepted elsewhere."""

    def __init__(self):
        self._subs: Dict[str, List[Callable[[dict], None]]] = {}

    def subscribe(self, topic: str, cb: Callable[[dict], None]) -> Callable[[], None]:
        self._subs.setdefault(topic, []).append(cb)

        def unsubscribe():
            subs = self._subs.get(topic, [])
            if cb in subs:
                subs.remove(cb)

        return unsubscribe

    async def publish(self, topic: str, data: dict):
        logger.debug(f"Publishing {topic}: {data}")
        for cb in list(self._subs.get(topic, [])):
            try:
                result = cb(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                # One broken view must not stop the others from refreshing
                logger.error(f"Subscriber for {topic} failed: {e}", exc_info=True)


event_bus = EventBus()
