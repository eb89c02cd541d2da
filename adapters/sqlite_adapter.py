"""
SQLite адаптер для Storage API.

Простейшая реализация без ORM.
Одна таблица: namespace | key | value (JSON as TEXT).
"""

import asyncio
import json
import sqlite3
import sys
import threading
from pathlib import Path
from typing import Any, Optional

from .storage_adapter import Mutator, StorageAdapter


class SQLiteAdapter(StorageAdapter):
    """SQLite адаптер для key-value хранилища с namespace.

    Все блокирующие операции выполняются в threadpool через `asyncio.to_thread`.
    Одно соединение делится между потоками, поэтому доступ к нему
    сериализован `threading.Lock`. Инициализация схемы не выполняется
    автоматически — `initialize_schema()` должен быть вызван явно.
    """

    unavailable_errors = (OSError, sqlite3.Error)

    def __init__(self, db_path: str = "data.db"):
        """
        Инициализация адаптера (без создания схемы).

        Args:
            db_path: путь к файлу базы данных (или ':memory:' для in-memory БД)
        """
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def _get_connection(self) -> sqlite3.Connection:
        """Создать или вернуть существующее соединение.

        isolation_level=None: транзакции управляются явно (BEGIN IMMEDIATE),
        одиночные запросы работают в autocommit.
        """
        if self._conn is None:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
        return self._conn

    def _create_schema_sync(self) -> None:
        with self._lock:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS storage (
                    namespace TEXT NOT NULL,
                    key TEXT NOT NULL,
                    value TEXT NOT NULL,
                    PRIMARY KEY (namespace, key)
                )
            """)

    async def initialize_schema(self) -> None:
        """Явная инициализация схемы хранилища.

        Для файловой БД создаёт директорию и таблицу. Для ':memory:' просто
        создаёт таблицу в in-memory БД.
        """
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        await asyncio.to_thread(self._create_schema_sync)

    @staticmethod
    def _decode(ns: str, k: str, raw: Any) -> Optional[dict[str, Any]]:
        if raw is None or not isinstance(raw, (str, bytes, bytearray)):
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            # Битая запись не должна ронять чтение всего namespace
            print(
                f"[SQLiteAdapter] Ошибка парсинга JSON для {ns}.{k}: {e}",
                file=sys.stderr,
            )
            return None

    def _select_sync(self, conn: sqlite3.Connection, ns: str, k: str):
        cursor = conn.execute(
            "SELECT value FROM storage WHERE namespace = ? AND key = ?",
            (ns, k),
        )
        row = cursor.fetchone()
        return self._decode(ns, k, row[0]) if row else None

    async def get(self, namespace: str, key: str) -> Optional[dict[str, Any]]:
        """Получить значение из storage (выполняется в threadpool)."""

        def _get_sync(ns: str, k: str):
            with self._lock:
                return self._select_sync(self._get_connection(), ns, k)

        return await asyncio.to_thread(_get_sync, namespace, key)

    async def set(self, namespace: str, key: str, value: dict[str, Any]) -> None:
        """Сохранить значение в storage (выполняется в threadpool)."""

        def _set_sync(ns: str, k: str, v: dict[str, Any]):
            json_value = json.dumps(v, ensure_ascii=False)
            with self._lock:
                self._get_connection().execute(
                    "INSERT OR REPLACE INTO storage (namespace, key, value) VALUES (?, ?, ?)",
                    (ns, k, json_value),
                )

        await asyncio.to_thread(_set_sync, namespace, key, value)

    async def delete(self, namespace: str, key: str) -> bool:
        """Удалить значение из storage (выполняется в threadpool)."""

        def _delete_sync(ns: str, k: str):
            with self._lock:
                cursor = self._get_connection().execute(
                    "DELETE FROM storage WHERE namespace = ? AND key = ?",
                    (ns, k),
                )
                return cursor.rowcount > 0

        return await asyncio.to_thread(_delete_sync, namespace, key)

    async def list_keys(self, namespace: str) -> list[str]:
        """Получить список ключей в namespace (выполняется в threadpool)."""

        def _list_keys_sync(ns: str):
            with self._lock:
                cursor = self._get_connection().execute(
                    "SELECT key FROM storage WHERE namespace = ?", (ns,)
                )
                return [row[0] for row in cursor.fetchall()]

        return await asyncio.to_thread(_list_keys_sync, namespace)

    async def clear_namespace(self, namespace: str) -> None:
        """Очистить все записи в namespace (выполняется в threadpool)."""

        def _clear_sync(ns: str):
            with self._lock:
                self._get_connection().execute(
                    "DELETE FROM storage WHERE namespace = ?", (ns,)
                )

        await asyncio.to_thread(_clear_sync, namespace)

    async def update(
        self, namespace: str, key: str, mutator: Mutator
    ) -> Optional[dict[str, Any]]:
        """
        Атомарный read-modify-write.

        Чтение, вызов мутатора и запись выполняются одним вызовом в
        threadpool внутри BEGIN IMMEDIATE: другие процессы, открывшие ту же
        БД, ждут освобождения write-блокировки.
        """

        def _update_sync(ns: str, k: str):
            with self._lock:
                conn = self._get_connection()
                conn.execute("BEGIN IMMEDIATE")
                try:
                    current = self._select_sync(conn, ns, k)
                    new_value = mutator(current)
                    if new_value is None:
                        conn.execute(
                            "DELETE FROM storage WHERE namespace = ? AND key = ?",
                            (ns, k),
                        )
                    else:
                        conn.execute(
                            "INSERT OR REPLACE INTO storage (namespace, key, value) VALUES (?, ?, ?)",
                            (ns, k, json.dumps(new_value, ensure_ascii=False)),
                        )
                    conn.execute("COMMIT")
                    return new_value
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise

        return await asyncio.to_thread(_update_sync, namespace, key)

    async def close(self) -> None:
        """Закрыть соединение с БД (выполняется в threadpool)."""

        def _close_sync():
            with self._lock:
                if self._conn:
                    try:
                        self._conn.close()
                    finally:
                        self._conn = None

        await asyncio.to_thread(_close_sync)
