"""
PostgreSQL адаптер для Storage API.

Использует asyncpg для асинхронной работы с PostgreSQL.
Та же схема: namespace | key | value (JSONB).
"""

import json
from typing import Any, Optional
from urllib.parse import quote_plus

import asyncpg

from .storage_adapter import Mutator, StorageAdapter


async def _init_connection(conn: asyncpg.Connection) -> None:
    # dict <-> jsonb без ручного json.dumps в каждом запросе
    await conn.set_type_codec(
        "jsonb",
        encoder=lambda v: json.dumps(v, ensure_ascii=False),
        decoder=json.loads,
        schema="pg_catalog",
    )


class PostgreSQLAdapter(StorageAdapter):
    """PostgreSQL адаптер для key-value хранилища с namespace.

    Инициализация схемы не выполняется автоматически — отдельный метод
    `initialize_schema()` должен быть вызван явно.
    """

    unavailable_errors = (OSError, asyncpg.PostgresError, asyncpg.InterfaceError)

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5432,
        database: str = "gapauth",
        user: str = "postgres",
        password: str = "",
        dsn: Optional[str] = None,
    ):
        """
        Args:
            host: хост PostgreSQL
            port: порт PostgreSQL
            database: имя базы данных
            user: пользователь
            password: пароль
            dsn: строка подключения (если указана, остальные параметры игнорируются)
        """
        if dsn:
            self._dsn = dsn
        else:
            safe_password = quote_plus(password) if password else ""
            self._dsn = f"postgresql://{user}:{safe_password}@{host}:{port}/{database}"

        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        """Создать или вернуть пул соединений."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self._dsn, init=_init_connection)
        return self._pool

    async def initialize_schema(self) -> None:
        """Создаёт таблицу storage если её нет."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS storage (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value JSONB NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
            """)

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval(
                "SELECT value FROM storage WHERE namespace = $1 AND key = $2",
                namespace, key,
            )

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO storage (namespace, key, value)
                VALUES ($1, $2, $3)
                ON CONFLICT (namespace, key) DO UPDATE SET value = EXCLUDED.value
            """, namespace, key, value)

    async def delete(self, namespace: str, key: str) -> bool:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            result = await conn.execute(
                "DELETE FROM storage WHERE namespace = $1 AND key = $2",
                namespace, key,
            )
            # result содержит строку вида "DELETE N"
            return result != "DELETE 0"

    async def list_keys(self, namespace: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT key FROM storage WHERE namespace = $1", namespace
            )
            return [row["key"] for row in rows]

    async def clear_namespace(self, namespace: str) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute("DELETE FROM storage WHERE namespace = $1", namespace)

    async def update(
        self, namespace: str, key: str, mutator: Mutator
    ) -> Optional[dict[str, Any]]:
        """
        Атомарный read-modify-write через SELECT ... FOR UPDATE.

        Для отсутствующей записи строка-заглушка вставляется заранее
        (ON CONFLICT DO NOTHING), чтобы блокировка строки работала и для
        первой записи ключа.
        """
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("""
                    INSERT INTO storage (namespace, key, value)
                    VALUES ($1, $2, 'null'::jsonb)
                    ON CONFLICT (namespace, key) DO NOTHING
                """, namespace, key)
                current = await conn.fetchval(
                    "SELECT value FROM storage WHERE namespace = $1 AND key = $2 FOR UPDATE",
                    namespace, key,
                )
                new_value = mutator(current if isinstance(current, dict) else None)
                if new_value is None:
                    await conn.execute(
                        "DELETE FROM storage WHERE namespace = $1 AND key = $2",
                        namespace, key,
                    )
                else:
                    await conn.execute(
                        "UPDATE storage SET value = $3 WHERE namespace = $1 AND key = $2",
                        namespace, key, new_value,
                    )
                return new_value

    async def close(self) -> None:
        """Закрыть пул соединений."""
        if self._pool:
            await self._pool.close()
            self._pool = None
