"""
ModuleManager — менеджер встроенных модулей Runtime.

Управляет жизненным циклом RuntimeModule:
- обнаружение и регистрация модулей
- запуск/остановка модулей
- гарантия уникальности имён

КОНТРАКТ REQUIRED vs OPTIONAL:
- REQUIRED модули обязательны для работы runtime
- Runtime не стартует, если REQUIRED модуль не зарегистрирован или не запустился
- OPTIONAL модули могут отсутствовать или фейлиться без остановки runtime
"""

import importlib
import importlib.util
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.logger_helper import error as log_error
from core.runtime_module import RuntimeModule


@dataclass
class ModuleSpec:
    """Спецификация модуля с флагом обязательности."""
    name: str
    required: bool = True


# ВАЖНО: logger должен быть первым, он нужен для логирования остальных модулей
BUILTIN_MODULES = [
    ModuleSpec("logger", required=True),  # LoggerModule
    ModuleSpec("auth", required=True),    # AuthModule (сервисы auth.*)
    ModuleSpec("api", required=False),    # ApiModule (HTTP boundary)
]

REQUIRED_MODULES = [spec.name for spec in BUILTIN_MODULES if spec.required]
OPTIONAL_MODULES = [spec.name for spec in BUILTIN_MODULES if not spec.required]


class ModuleManager:
    """
    Менеджер встроенных модулей Runtime.

    Повторная регистрация того же экземпляра игнорируется, другой экземпляр
    с тем же именем — ошибка.
    """

    def __init__(self, runtime: Optional[Any] = None):
        self._modules: Dict[str, RuntimeModule] = {}
        self._runtime = runtime

    async def register(self, module: RuntimeModule) -> None:
        """
        Регистрирует модуль и вызывает его register().

        Raises:
            ValueError: если модуль с таким именем уже зарегистрирован (другой экземпляр)
        """
        module_name = module.name

        if module_name in self._modules:
            if self._modules[module_name] is module:
                return
            raise ValueError(
                f"Module '{module_name}' is already registered. "
                f"Use unregister() first or use a different name."
            )

        self._modules[module_name] = module
        await module.register()

    def unregister(self, module_name: str) -> None:
        self._modules.pop(module_name, None)

    def get_module(self, module_name: str) -> Optional[RuntimeModule]:
        return self._modules.get(module_name)

    def list_modules(self) -> List[str]:
        return list(self._modules.keys())

    def check_required_modules_registered(self) -> None:
        """
        Raises:
            RuntimeError: если какой-то REQUIRED модуль не зарегистрирован
        """
        missing = [name for name in REQUIRED_MODULES if name not in self._modules]
        if missing:
            raise RuntimeError(
                f"Required modules not registered: {missing}. "
                f"Registered modules: {self.list_modules()}"
            )

    async def _report(self, message: str, module_name: str) -> None:
        try:
            await log_error(
                self._runtime,
                message,
                component="module_manager",
                module=module_name,
            )
        except Exception:
            print(f"[ModuleManager] {message}", file=sys.stderr)

    async def start_all(self) -> None:
        """
        Запускает все зарегистрированные модули в порядке регистрации.

        Raises:
            RuntimeError: если REQUIRED модуль упал в start()
        """
        failed_required = []

        for module in self._modules.values():
            try:
                await module.start()
            except Exception as e:
                if module.name in REQUIRED_MODULES:
                    failed_required.append((module.name, str(e)))
                else:
                    await self._report(
                        f"Ошибка при запуске optional модуля '{module.name}': {e}",
                        module.name,
                    )

        if failed_required:
            failed_names = [name for name, _ in failed_required]
            errors = "\n".join(f"  - {name}: {err}" for name, err in failed_required)
            raise RuntimeError(
                f"Failed to start required modules: {failed_names}\n"
                f"Errors:\n{errors}"
            )

    async def stop_all(self) -> None:
        """
        Останавливает модули в обратном порядке.

        Вызывается даже при частичном старте; ошибка одного модуля не мешает
        остановке остальных.
        """
        for module in reversed(list(self._modules.values())):
            try:
                await module.stop()
            except Exception as e:
                await self._report(
                    f"Ошибка при остановке модуля '{module.name}': {e}",
                    module.name,
                )

    def clear(self) -> None:
        self._modules.clear()

    async def register_builtin_modules(self, runtime: Any) -> None:
        """
        Регистрирует все встроенные модули из BUILTIN_MODULES.

        Уже зарегистрированные модули пропускаются, поэтому тесты могут
        подставить свои экземпляры до вызова start().

        Raises:
            RuntimeError: если REQUIRED модуль не найден или не зарегистрировался
        """
        failed_required = []

        for module_spec in BUILTIN_MODULES:
            if module_spec.name in self._modules:
                continue
            try:
                await self._register_module_by_name(runtime, module_spec.name, module_spec.required)
            except Exception as e:
                if module_spec.required:
                    failed_required.append((module_spec.name, str(e)))
                else:
                    await self._report(
                        f"Ошибка при регистрации optional модуля '{module_spec.name}': {e}",
                        module_spec.name,
                    )

        if failed_required:
            failed_names = [name for name, _ in failed_required]
            errors = "\n".join(f"  - {name}: {err}" for name, err in failed_required)
            raise RuntimeError(
                f"Failed to register required modules: {failed_names}\n"
                f"Errors:\n{errors}"
            )

    async def _discover_module(self, module_name: str) -> Optional[type]:
        """
        Находит класс RuntimeModule по имени ("auth" -> modules.auth.AuthModule).

        Raises:
            RuntimeError: если модуль найден, но класс не является RuntimeModule
        """
        module_path = f"modules.{module_name}"
        if importlib.util.find_spec(module_path) is None:
            return None

        try:
            module = importlib.import_module(module_path)
        except ImportError as e:
            raise RuntimeError(f"Failed to import module '{module_path}': {e}") from e

        camel_case_name = "".join(part.capitalize() for part in module_name.split("_"))
        module_class_name = f"{camel_case_name}Module"
        module_class = getattr(module, module_class_name, None)
        if module_class is None:
            return None
        if not issubclass(module_class, RuntimeModule):
            raise RuntimeError(
                f"Module class '{module_class_name}' in '{module_path}' "
                f"is not a subclass of RuntimeModule"
            )
        return module_class

    async def _register_module_by_name(self, runtime: Any, module_name: str, required: bool = True) -> None:
        module_class = await self._discover_module(module_name)

        if module_class is None:
            if required:
                raise RuntimeError(
                    f"Required module '{module_name}' not found. "
                    f"Expected module at 'modules.{module_name}'"
                )
            return

        await self.register(module_class(runtime))
