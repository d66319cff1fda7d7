from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable, DefaultDict, List


Handler = Callable[[dict[str, Any]], None]


def conversation_topic(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


class EventBus:
    """Pub/sub em processo. Handlers são síncronos; falhas são logadas e não propagam."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._logger = logging.getLogger(__name__)

    def emit(self, topic: str, payload: dict[str, Any]) -> None:
        handlers = list(self._handlers.get(topic, []))
        if not handlers:
            self._logger.debug("EventBus: no handlers for %s", topic)
            return
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                self._logger.exception("EventBus handler failed for %s", topic)

    def subscribe(self, topic: str, handler: Handler) -> Callable[[], None]:
        self._handlers[topic].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(topic, handler)

        return _unsubscribe

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic)
        if not handlers:
            return
        try:
            handlers.remove(handler)
        except ValueError:
            return
        if not handlers:
            self._handlers.pop(topic, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._handlers.get(topic, []))


event_bus = EventBus()
