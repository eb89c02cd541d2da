"""
Абстрактный интерфейс для storage адаптеров.

Storage работает по принципу namespace + key + JSON value.
Никаких моделей, никакой ORM, никакой схемы.

Все изменения состояния безопасности (счётчики блокировок, указатели
refresh-токенов, окна rate limit) идут через `update()`: атомарный
read-modify-write одной записи.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Tuple, Type


# Мутатор получает текущее значение (или None) и возвращает новое.
# None в ответе означает "удалить запись". Исключение из мутатора
# прерывает операцию без изменений.
Mutator = Callable[[Optional[dict[str, Any]]], Optional[dict[str, Any]]]


class StorageAdapter(ABC):
    """Абстрактный адаптер для хранения данных."""

    # Исключения драйвера, означающие недоступность хранилища
    unavailable_errors: Tuple[Type[BaseException], ...] = (OSError, ConnectionError)

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        """
        Получить значение по ключу из namespace.

        Args:
            namespace: пространство имён (например, "auth_sessions")
            key: ключ записи

        Returns:
            JSON-данные или None, если не найдено
        """

    @abstractmethod
    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        """Сохранить значение по ключу в namespace."""

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> bool:
        """
        Удалить значение по ключу из namespace.

        Returns:
            True если запись была удалена, False если не существовала
        """

    @abstractmethod
    async def list_keys(self, namespace: str) -> list[str]:
        """Получить список всех ключей в namespace."""

    @abstractmethod
    async def clear_namespace(self, namespace: str) -> None:
        """Очистить все записи в namespace."""

    @abstractmethod
    async def update(
        self, namespace: str, key: str, mutator: Mutator
    ) -> Optional[dict[str, Any]]:
        """
        Атомарно прочитать, изменить и записать одну запись.

        Два конкурентных update() по одному ключу никогда не теряют
        изменения друг друга: второй видит результат первого.

        Args:
            namespace: пространство имён
            key: ключ записи
            mutator: синхронная функция current -> new

        Returns:
            Записанное значение (None если запись удалена или отсутствует)
        """

    @abstractmethod
    async def close(self) -> None:
        """Закрыть соединение с хранилищем."""
