"""
API Module — HTTP boundary (FastAPI + uvicorn).

Опциональный модуль: регистрируется ModuleManager автоматически, если
пакет доступен. Бизнес-логики не содержит, только вызывает сервисы auth.*.
"""

from .module import ApiModule

__all__ = ["ApiModule"]
