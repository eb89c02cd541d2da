import json
from types import SimpleNamespace

import pytest

from core import logger_helper
from core.config import Config
from modules.logger.module import LoggerModule


class FakeRegistry:
    def __init__(self):
        self._services = {}

    async def register(self, name, func):
        self._services[name] = func

    async def unregister(self, name):
        self._services.pop(name, None)

    async def has_service(self, name):
        return name in self._services

    async def call(self, name, *args, **kwargs):
        func = self._services.get(name)
        if func is None:
            raise ValueError("service not found")
        return await func(*args, **kwargs)


@pytest.mark.asyncio
async def test_register_registers_service():
    reg = FakeRegistry()
    runtime = SimpleNamespace(service_registry=reg)
    mod = LoggerModule(runtime)

    await mod.register()

    assert "logger.log" in reg._services


@pytest.mark.asyncio
async def test_log_service_filters_and_prints(monkeypatch, capsys):
    reg = FakeRegistry()
    runtime = SimpleNamespace(service_registry=reg)
    mod = LoggerModule(runtime)

    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    await mod.register()

    # info level should be filtered out
    await reg._services["logger.log"](level="info", message="should be ignored", module="auth")
    captured = capsys.readouterr()
    assert captured.out == ""

    await reg._services["logger.log"](level="error", message="boom", module="auth", count=3)
    captured = capsys.readouterr()
    assert "[ERROR] [auth] boom" in captured.out
    assert "count=3" in captured.out


@pytest.mark.asyncio
async def test_json_format(monkeypatch, capsys):
    reg = FakeRegistry()
    runtime = SimpleNamespace(service_registry=reg, config=Config(log_format="json"))
    mod = LoggerModule(runtime)

    monkeypatch.delenv("LOG_LEVEL", raising=False)
    await mod.register()
    await reg._services["logger.log"](level="warning", message="locked", module="auth", tier=1)

    line = capsys.readouterr().out.strip()
    event = json.loads(line)
    assert event["level"] == "WARNING"
    assert event["module"] == "auth"
    assert event["context"] == {"tier": 1}


@pytest.mark.asyncio
async def test_helper_scrubs_secrets(monkeypatch, capsys):
    reg = FakeRegistry()
    runtime = SimpleNamespace(service_registry=reg)
    mod = LoggerModule(runtime)
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    await mod.register()

    await logger_helper.info(runtime, "login", module="auth", password="hunter2", refresh_token="abc.def.ghi")

    out = capsys.readouterr().out
    assert "hunter2" not in out
    assert "abc.def.ghi" not in out
    assert "password=***" in out


@pytest.mark.asyncio
async def test_helper_falls_back_to_stderr(capsys):
    """Тест: без logger.log сообщение уходит в stderr, исключений нет."""
    await logger_helper.warning(SimpleNamespace(service_registry=FakeRegistry()), "early message")
    assert "[WARNING] early message" in capsys.readouterr().err


def test_short_id():
    assert logger_helper.short_id("abcdefghijkl") == "abcdefgh..."
    assert logger_helper.short_id("abc") == "abc"
    assert logger_helper.short_id(None) is None


@pytest.mark.asyncio
async def test_start_logs_message(capfd, monkeypatch):
    reg = FakeRegistry()
    runtime = SimpleNamespace(service_registry=reg)
    mod = LoggerModule(runtime)

    monkeypatch.delenv("LOG_LEVEL", raising=False)
    await mod.register()
    await mod.start()

    captured = capfd.readouterr()
    assert "Logger module started" in captured.out
