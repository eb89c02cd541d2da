"""
Фабрика storage адаптеров по config.storage_type.

memory — для тестов и одиночного процесса: lockout счётчики и сессии
не переживают рестарт. Для нескольких процессов нужен postgresql.
"""

from typing import Awaitable, Callable, Dict

from adapters.storage_adapter import StorageAdapter
from core.config import Config


async def _memory(config: Config) -> StorageAdapter:
    from adapters.memory_adapter import MemoryStorageAdapter
    return MemoryStorageAdapter()


async def _sqlite(config: Config) -> StorageAdapter:
    from adapters.sqlite_adapter import SQLiteAdapter
    adapter = SQLiteAdapter(config.db_path)
    await adapter.initialize_schema()
    return adapter


async def _postgresql(config: Config) -> StorageAdapter:
    from adapters.postgresql_adapter import PostgreSQLAdapter
    adapter = PostgreSQLAdapter(
        host=config.pg_host,
        port=config.pg_port,
        database=config.pg_database,
        user=config.pg_user,
        password=config.pg_password,
        dsn=config.pg_dsn,
    )
    await adapter.initialize_schema()
    return adapter


_BUILDERS: Dict[str, Callable[[Config], Awaitable[StorageAdapter]]] = {
    "memory": _memory,
    "sqlite": _sqlite,
    "postgresql": _postgresql,
}


async def create_storage_adapter(config: Config) -> StorageAdapter:
    """
    Создать storage адаптер с готовой схемой.

    Raises:
        ValueError: неизвестный тип storage или невалидная конфигурация
    """
    config.validate()
    builder = _BUILDERS.get(config.storage_type)
    if builder is None:
        raise ValueError(
            f"Неизвестный тип storage: {config.storage_type}. "
            f"Доступные типы: {', '.join(sorted(_BUILDERS))}"
        )
    return await builder(config)
