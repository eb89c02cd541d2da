"""
In-memory адаптер для Storage API.

Используется в тестах и для локального запуска без БД
(RUNTIME_STORAGE_TYPE=memory). Данные живут до остановки процесса.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

from .storage_adapter import Mutator, StorageAdapter


class MemoryStorageAdapter(StorageAdapter):
    """Key-value хранилище в словаре с блокировкой на каждый ключ."""

    def __init__(self):
        self._data: dict[str, dict[str, dict[str, Any]]] = {}
        # Блокировка живёт, пока её кто-то держит или ждёт
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._lock_users: dict[tuple[str, str], int] = {}
        self.closed = False

    @asynccontextmanager
    async def _locked(self, namespace: str, key: str) -> AsyncIterator[None]:
        lock_key = (namespace, key)
        lock = self._locks.get(lock_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[lock_key] = lock
        self._lock_users[lock_key] = self._lock_users.get(lock_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users = self._lock_users[lock_key] - 1
            if users:
                self._lock_users[lock_key] = users
            else:
                del self._lock_users[lock_key]
                del self._locks[lock_key]

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        value = self._data.get(namespace, {}).get(key)
        # Копия: вызывающий код не должен менять хранилище в обход update()
        return copy.deepcopy(value) if value is not None else None

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        async with self._locked(namespace, key):
            self._data.setdefault(namespace, {})[key] = copy.deepcopy(value)

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._locked(namespace, key):
            ns = self._data.get(namespace, {})
            if key in ns:
                del ns[key]
                return True
            return False

    async def list_keys(self, namespace: str) -> list[str]:
        return list(self._data.get(namespace, {}).keys())

    async def clear_namespace(self, namespace: str) -> None:
        self._data.pop(namespace, None)

    async def update(
        self, namespace: str, key: str, mutator: Mutator
    ) -> Optional[dict[str, Any]]:
        async with self._locked(namespace, key):
            ns = self._data.setdefault(namespace, {})
            current = ns.get(key)
            new_value = mutator(copy.deepcopy(current) if current is not None else None)
            if new_value is None:
                ns.pop(key, None)
                return None
            ns[key] = copy.deepcopy(new_value)
            return copy.deepcopy(new_value)

    async def close(self) -> None:
        self.closed = True
