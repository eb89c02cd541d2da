"""
Storage API - единый интерфейс для работы с хранилищем.

Модули работают ТОЛЬКО через этот API.
Никакого прямого доступа к БД.

Каждое обращение ограничено по времени: зависшее хранилище превращается
в StorageUnavailableError, и вызывающий код отказывает в операции
(fail closed), а не пропускает проверку.
"""

import asyncio
from typing import Any, Optional

from adapters.storage_adapter import Mutator, StorageAdapter


class StorageUnavailableError(RuntimeError):
    """Хранилище не ответило вовремя или вернуло ошибку."""

    def __init__(self, operation: str, namespace: str, cause: Optional[BaseException] = None):
        self.operation = operation
        self.namespace = namespace
        self.cause = cause
        super().__init__(f"storage {operation} on {namespace!r} failed: {cause!r}")


def _check_namespace(namespace: Any) -> None:
    if not isinstance(namespace, str) or not namespace:
        raise ValueError(
            f"namespace must be non-empty string, got {type(namespace).__name__}: {namespace!r}"
        )


def _check_key(key: Any) -> None:
    if not isinstance(key, str) or not key:
        raise ValueError(
            f"key must be non-empty string, got {type(key).__name__}: {key!r}"
        )


class Storage:
    """
    Storage API для модулей.

    Простой интерфейс: namespace + key + JSON value.
    Без моделей, без ORM, без схемы.
    """

    def __init__(self, adapter: StorageAdapter, timeout: Optional[float] = 5.0):
        """
        Args:
            adapter: адаптер для работы с хранилищем
            timeout: лимит одного обращения в секундах (None — без лимита)
        """
        self._adapter = adapter
        self._timeout = timeout

    @property
    def adapter(self) -> StorageAdapter:
        return self._adapter

    async def _run(self, operation: str, namespace: str, coro) -> Any:
        try:
            if self._timeout is None:
                return await coro
            return await asyncio.wait_for(coro, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise StorageUnavailableError(operation, namespace, e) from e
        except self._adapter.unavailable_errors as e:
            raise StorageUnavailableError(operation, namespace, e) from e

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        """
        Получить значение.

        Returns:
            Значение или None если не найдено

        Raises:
            ValueError: если namespace или key пустые или не строки
            StorageUnavailableError: хранилище недоступно

        Пример:
            session = await storage.get("auth_sessions", session_id)
        """
        _check_namespace(namespace)
        _check_key(key)
        return await self._run("get", namespace, self._adapter.get(namespace, key))

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        """
        Сохранить значение.

        Raises:
            TypeError: если value не является dict
            ValueError: если namespace или key пустые или не строки
        """
        if not isinstance(value, dict):
            raise TypeError(
                f"value must be dict, got {type(value).__name__}"
            )
        _check_namespace(namespace)
        _check_key(key)
        await self._run("set", namespace, self._adapter.set(namespace, key, value))

    async def delete(self, namespace: str, key: str) -> bool:
        """
        Удалить значение.

        Returns:
            True если запись была удалена, False если не существовала
        """
        _check_namespace(namespace)
        _check_key(key)
        return await self._run("delete", namespace, self._adapter.delete(namespace, key))

    async def list_keys(self, namespace: str) -> list[str]:
        """Получить список всех ключей в namespace."""
        _check_namespace(namespace)
        return await self._run("list_keys", namespace, self._adapter.list_keys(namespace))

    async def clear_namespace(self, namespace: str) -> None:
        """Очистить все записи в namespace."""
        _check_namespace(namespace)
        await self._run("clear_namespace", namespace, self._adapter.clear_namespace(namespace))

    async def update(
        self, namespace: str, key: str, mutator: Mutator
    ) -> Optional[dict[str, Any]]:
        """
        Атомарно изменить одну запись.

        mutator — синхронная функция `current -> new`. Она вызывается под
        блокировкой ключа, поэтому не должна делать I/O. Вернуть None —
        удалить запись. Исключение из mutator отменяет изменение и
        пробрасывается вызывающему.

        Пример:
            def bump(current):
                state = dict(current or {})
                state["failures"] = state.get("failures", 0) + 1
                return state

            state = await storage.update("auth_lockouts", user_id, bump)
        """
        _check_namespace(namespace)
        _check_key(key)

        def _checked(current: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
            result = mutator(current)
            if result is not None and not isinstance(result, dict):
                raise TypeError(
                    f"mutator must return dict or None, got {type(result).__name__}"
                )
            return result

        return await self._run("update", namespace, self._adapter.update(namespace, key, _checked))

    async def close(self) -> None:
        """Закрыть соединение."""
        await self._adapter.close()
