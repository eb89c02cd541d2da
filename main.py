"""
Точка входа сервиса аутентификации.

Собирает конфигурацию из окружения, storage адаптер и CoreRuntime,
запускает модули (logger, auth, api) и ждёт SIGINT/SIGTERM.
"""

import asyncio
import signal
import sys

from core.config import Config
from core.runtime import CoreRuntime
from core.storage_factory import create_storage_adapter


async def main() -> int:
    """Главная функция запуска сервиса."""
    try:
        config = Config.from_env()
    except ValueError as e:
        print(f"[Runtime] Некорректная конфигурация: {e}", file=sys.stderr)
        return 2

    storage_adapter = await create_storage_adapter(config)
    runtime = CoreRuntime(storage_adapter, config)

    # Обработка сигналов для graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler():
        print("\n[Runtime] Получен сигнал остановки...", file=sys.stderr)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        print("[Runtime] Запуск...", file=sys.stderr)
        await runtime.start()
        print(f"[Runtime] Модули: {runtime.module_manager.list_modules()}", file=sys.stderr)

        await shutdown_event.wait()

    finally:
        print("[Runtime] Остановка...", file=sys.stderr)
        try:
            await asyncio.wait_for(runtime.shutdown(), timeout=config.shutdown_timeout)
            print("[Runtime] Остановлен", file=sys.stderr)
        except asyncio.TimeoutError:
            print("[Runtime] Таймаут при остановке", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
