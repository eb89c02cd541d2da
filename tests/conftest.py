import sys
import pathlib
import pytest

# Ensure repository root is on sys.path so packages (adapters, core, modules) import correctly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from adapters.memory_adapter import MemoryStorageAdapter
from core.config import Config


@pytest.fixture
def memory_adapter():
    return MemoryStorageAdapter()


@pytest.fixture
def test_config():
    """Конфигурация для тестов: in-memory storage, дешёвый bcrypt, без HTTP сервера."""
    config = Config(
        storage_type="memory",
        bcrypt_rounds=4,
        session_cleanup_interval=0,
        http_enabled=False,
        jwt_secret="test-secret-key-that-is-long-enough-0123456789",
    )
    config.validate()
    return config
