"""
Core Runtime - минимальное ядро сервиса аутентификации.
"""

from .config import Config
from .event_bus import EventBus
from .module_manager import ModuleManager
from .runtime import CoreRuntime
from .runtime_module import RuntimeModule
from .service_registry import ServiceRegistry
from .storage import Storage, StorageUnavailableError
from .storage_factory import create_storage_adapter
from .logger_helper import info, warning, error

__all__ = [
    "Config",
    "CoreRuntime",
    "EventBus",
    "ModuleManager",
    "RuntimeModule",
    "ServiceRegistry",
    "Storage",
    "StorageUnavailableError",
    "create_storage_adapter",
    "info",
    "warning",
    "error",
]
