"""
Logger Helper - wrapper для логирования в core компонентах и модулях.

Пишет через сервис `logger.log` (LoggerModule регистрируется первым
в BUILTIN_MODULES). До инициализации runtime, а также если сервис
недоступен, сообщение уходит в stderr.

Логирование никогда не бросает исключений в вызывающий код.

ВАЖНО: пароли, токены и полные идентификаторы сессий в лог не попадают.
Для идентификаторов используйте `short_id()`.
"""

import sys
from typing import Any, Optional

# Ключи контекста, значения которых никогда не логируются
_SECRET_KEYS = frozenset({
    "password", "old_password", "new_password", "token",
    "access_token", "refresh_token", "secret", "challenge_token",
})


def short_id(value: Optional[str], length: int = 8) -> Optional[str]:
    """Усечённый идентификатор для логов: 'a1b2c3d4...'."""
    if not value:
        return value
    return value[:length] + "..." if len(value) > length else value


def _scrub(context: dict[str, Any]) -> dict[str, Any]:
    return {
        k: ("***" if k in _SECRET_KEYS else v)
        for k, v in context.items()
    }


async def log(runtime: Optional[Any], level: str, message: str, **context: Any) -> None:
    """
    Записать лог сообщение через LoggerModule.

    Args:
        runtime: экземпляр CoreRuntime (если None - используется stderr)
        level: уровень логирования (debug, info, warning, error)
        message: сообщение
        **context: дополнительный контекст
    """
    level = (level or "info").lower()
    if level not in ("debug", "info", "warning", "error"):
        level = "info"

    context = _scrub(context)

    if runtime is not None:
        try:
            await runtime.service_registry.call(
                "logger.log",
                level=level,
                message=message,
                **context
            )
            return
        except Exception:
            # logger.log ещё не зарегистрирован или уже снят
            pass

    log_message = f"[{level.upper()}] {message}"
    if context:
        log_message += f" {context}"
    print(log_message, file=sys.stderr)


async def debug(runtime: Optional[Any], message: str, **context: Any) -> None:
    await log(runtime, "debug", message, **context)


async def info(runtime: Optional[Any], message: str, **context: Any) -> None:
    await log(runtime, "info", message, **context)


async def warning(runtime: Optional[Any], message: str, **context: Any) -> None:
    await log(runtime, "warning", message, **context)


async def error(runtime: Optional[Any], message: str, **context: Any) -> None:
    await log(runtime, "error", message, **context)
