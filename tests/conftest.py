import asyncio
import inspect
import os
import sys
from pathlib import Path

# Environment must be in place before anything builds Settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("COOKIE_SECURE", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionguard.clock import FrozenClock  # noqa: E402
from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.session import SessionService  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"
PASSWORD = "CorrectHorse-Battery-9"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_SECRET,
        test_mode=True,
        use_memory_store=True,
        external_allowed_redirect_uris=["https://app.example.com/callback"],
    )


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store():
    return MemoryStore(encryption_key=TEST_SECRET)


@pytest.fixture
def service(memory_store, settings, clock):
    return SessionService.build(memory_store, settings, clock)


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def user(memory_store, service):
    created = memory_store.create_user("alice@example.com", email_confirmed=True)
    service.credentials.set_password(created.id, PASSWORD)
    return memory_store.get_user(created.id)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
