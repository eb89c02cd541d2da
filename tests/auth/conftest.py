import pytest
import pytest_asyncio

from adapters.memory_adapter import MemoryStorageAdapter
from core.runtime import CoreRuntime
from modules.auth.audit import flush_security_events
from modules.auth.passwords import hash_password
from modules.auth.users import create_user
from modules.auth.utils import make_fingerprint


STRONG_PASSWORD = "Corr3ct-Horse-Battery"

UA_CHROME_WINDOWS = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
UA_FIREFOX_LINUX = "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0"


@pytest.fixture
def fp_home():
    return make_fingerprint("192.168.1.10", UA_CHROME_WINDOWS)


@pytest.fixture
def fp_attacker():
    return make_fingerprint("203.0.113.77", UA_FIREFOX_LINUX)


@pytest_asyncio.fixture
async def runtime(test_config):
    """CoreRuntime на in-memory storage без запуска модулей."""
    rt = CoreRuntime(MemoryStorageAdapter(), test_config)
    yield rt
    await flush_security_events(rt)


@pytest_asyncio.fixture
async def started_runtime(test_config):
    """CoreRuntime с зарегистрированными logger/auth/api модулями."""
    rt = CoreRuntime(MemoryStorageAdapter(), test_config)
    await rt.start()
    yield rt
    await rt.shutdown()


async def make_user(runtime, email="alice@example.com", password=STRONG_PASSWORD, role="user"):
    """Пользователь с bcrypt-хешем текущей политики."""
    password_hash = hash_password(password, rounds=runtime.config.bcrypt_rounds)
    return await create_user(runtime, email, password_hash, role=role)


@pytest.fixture
def user_factory(runtime):
    async def factory(email="alice@example.com", password=STRONG_PASSWORD, role="user"):
        return await make_user(runtime, email, password, role)
    return factory


@pytest_asyncio.fixture
async def user(runtime):
    return await make_user(runtime)


@pytest.fixture
def strong_password():
    return STRONG_PASSWORD
