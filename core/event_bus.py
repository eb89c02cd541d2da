"""
EventBus - простой механизм pub/sub для событий.

Модули публикуют события ("security.event", ...), подписчики
(например, внешняя админ-панель) получают их, не зная об источнике.
"""

import asyncio
import sys
from collections import defaultdict
from typing import Any, Awaitable, Callable


# Тип для обработчика событий
EventHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


class EventBus:
    """
    Шина событий.

    Ошибка в одном обработчике не мешает остальным и не доходит
    до публикующего кода.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        # Число упавших обработчиков, для диагностики
        self.handler_errors = 0

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """
        Подписаться на событие.

        Пример:
            async def on_security_event(event_type: str, data: dict):
                ...

            event_bus.subscribe("security.event", on_security_event)
        """
        self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type in self._handlers:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

    async def publish(self, event_type: str, data: dict[str, Any]) -> None:
        """Опубликовать событие всем подписчикам параллельно."""
        handlers = list(self._handlers.get(event_type, []))
        if not handlers:
            return

        results = await asyncio.gather(
            *(handler(event_type, data) for handler in handlers),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                self.handler_errors += 1
                print(
                    f"[EventBus] handler for {event_type!r} failed: {result!r}",
                    file=sys.stderr,
                )

    def get_subscribers_count(self, event_type: str) -> int:
        return len(self._handlers.get(event_type, []))

    def clear(self) -> None:
        """Очистить все подписки."""
        self._handlers.clear()
