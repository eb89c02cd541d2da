"""
LoggerModule — встроенный модуль логирования.

Обязательный инфраструктурный модуль, регистрируется первым.

Предоставляет сервис `logger.log`. Уровень фильтрации — стандартные
уровни `logging` (LOG_LEVEL), формат — text или json
(config.log_format / RUNTIME_LOG_FORMAT). Пишет в stdout.
"""

import json
import logging
import os
import sys
import time
from typing import Any

from core.runtime_module import RuntimeModule


_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LoggerModule(RuntimeModule):
    """
    Модуль логирования.

    Не меняет глобальное состояние logging (не трогает root logger).
    """

    @property
    def name(self) -> str:
        return "logger"

    async def register(self) -> None:
        log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
        self._log_level = getattr(logging, log_level_str, logging.INFO)

        cfg = getattr(self.runtime, "config", None)
        cfg_fmt = getattr(cfg, "log_format", None) if cfg is not None else None
        env_fmt = os.getenv("RUNTIME_LOG_FORMAT") or os.getenv("LOG_FORMAT")
        self._log_format = (cfg_fmt or env_fmt or "text").lower()
        if self._log_format not in ("text", "json"):
            self._log_format = "text"

        await self.runtime.service_registry.register("logger.log", self._log_service)

    async def start(self) -> None:
        await self._log_service(level="info", message="Logger module started", module="logger")

    async def stop(self) -> None:
        await self._log_service(level="info", message="Logger module stopped", module="logger")
        await self.runtime.service_registry.unregister("logger.log")

    def format_line(self, level: str, message: str, context: dict[str, Any]) -> str:
        """Собрать строку лога в текущем формате."""
        module = context.pop("module", None) or context.pop("component", None)

        if self._log_format == "json":
            event: dict[str, Any] = {
                "ts": round(time.time(), 3),
                "level": level.upper(),
                "message": message,
            }
            if module:
                event["module"] = module
            safe_ctx: dict[str, Any] = {}
            for k, v in context.items():
                if isinstance(v, (str, int, float, bool, type(None), dict, list)):
                    safe_ctx[k] = v
                else:
                    safe_ctx[k] = str(v)
            if safe_ctx:
                event["context"] = safe_ctx
            return json.dumps(event, ensure_ascii=False, default=str)

        # [LEVEL] [module] message (k=v ...)
        parts = [f"[{level.upper()}]"]
        if module:
            parts.append(f"[{module}]")
        parts.append(message)
        simple = {
            k: v for k, v in context.items()
            if isinstance(v, (str, int, float, bool, type(None)))
        }
        if simple:
            parts.append("(" + " ".join(f"{k}={v}" for k, v in simple.items()) + ")")
        return " ".join(parts)

    async def _log_service(self, level: str, message: str, **context: Any) -> None:
        lvl = (level or "").lower()
        if lvl not in _LEVELS:
            lvl = "info"
        if _LEVELS[lvl] < self._log_level:
            return
        print(self.format_line(lvl, message, dict(context)), file=sys.stdout, flush=True)
