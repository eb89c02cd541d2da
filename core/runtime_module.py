"""
Базовый класс для встроенных модулей Runtime (RuntimeModule).

RuntimeModule — домены системы (logger, auth, api), которые:
- регистрируются в CoreRuntime через ModuleManager
- используют только Core API (storage, event_bus, service_registry, config)

КОНТРАКТ LIFECYCLE:
- register() вызывается ровно один раз при регистрации модуля
- start() вызывается ровно один раз при runtime.start()
- stop() вызывается при runtime.stop(), даже если start() упал
- Порядок: __init__ → register() → start() → stop()
"""

from abc import ABC, abstractmethod
from typing import Any


class RuntimeModule(ABC):
    """Базовый класс для встроенных модулей Runtime."""

    def __init__(self, runtime: Any):
        """
        Args:
            runtime: экземпляр CoreRuntime
        """
        self.runtime = runtime

    @property
    @abstractmethod
    def name(self) -> str:
        """Уникальное имя модуля (например, "auth")."""

    async def register(self) -> None:
        """
        Регистрация сервисов в service_registry и подписок в event_bus.

        По умолчанию — no-op.
        """

    async def start(self) -> None:
        """
        Инициализация, требующая запущенного runtime.

        Для REQUIRED модулей ошибка в start() останавливает runtime.
        """

    async def stop(self) -> None:
        """
        Cleanup. Должен быть безопасным, даже если start() не вызывался.
        """
