"""
CoreRuntime - главный класс Core Runtime.

Объединяет все компоненты:
- Config
- EventBus
- ServiceRegistry
- Storage
- ModuleManager (logger, auth, api)
"""

from typing import Any, Optional

from core.config import Config
from core.event_bus import EventBus
from core.module_manager import ModuleManager
from core.service_registry import ServiceRegistry
from core.storage import Storage


class CoreRuntime:
    """
    Главный класс Core Runtime.

    Координирует работу компонентов и даёт модулям единую точку доступа.
    """

    def __init__(self, storage_adapter: Any, config: Optional[Config] = None):
        """
        Args:
            storage_adapter: адаптер для работы с хранилищем
            config: конфигурация (по умолчанию Config() с валидацией)
        """
        if config is None:
            config = Config()
            config.validate()
        self.config = config
        self.event_bus = EventBus()
        self.service_registry = ServiceRegistry(default_timeout=config.service_call_timeout)
        self.storage = Storage(storage_adapter, timeout=config.store_timeout)
        self.module_manager = ModuleManager(self)
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """
        Запустить Core Runtime.

        Регистрирует встроенные модули (если не зарегистрированы вручную)
        и запускает их.
        """
        if self._running:
            return

        await self.module_manager.register_builtin_modules(self)
        self.module_manager.check_required_modules_registered()
        try:
            await self.module_manager.start_all()
        except Exception:
            await self.module_manager.stop_all()
            raise
        self._running = True

    async def stop(self) -> None:
        """
        Остановить Core Runtime: модули, затем storage.
        """
        if not self._running:
            return

        await self.module_manager.stop_all()
        await self.storage.close()
        self._running = False

    async def shutdown(self) -> None:
        """Полное завершение: остановка и очистка реестров."""
        await self.stop()
        self.event_bus.clear()
        await self.service_registry.clear()
        self.module_manager.clear()
