import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("SESSION_CLEANUP_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from musicez.config import JWTConfig, SessionConfig  # noqa: E402
from musicez.service.runtime import reset_runtime_for_tests  # noqa: E402
from musicez.service.security import SecurityEventLog, SecurityMonitor  # noqa: E402
from musicez.service.sessions import SessionRegistry  # noqa: E402
from musicez.storage.memory import MemoryTTLStore  # noqa: E402
from musicez.storage.models import Identity  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def store(clock):
    return MemoryTTLStore(now=clock)


@pytest.fixture
def jwt_config():
    return JWTConfig(secret=TEST_SECRET)


@pytest.fixture
def session_config():
    return SessionConfig(max_sessions_per_user=3)


@pytest.fixture
def events(store):
    return SecurityEventLog(store)


@pytest.fixture
def registry(store, jwt_config, session_config, events, clock):
    return SessionRegistry(store, jwt_config, session_config, events=events, now=clock)


@pytest.fixture
def monitor(registry, events, clock):
    return SecurityMonitor(registry, events, now=clock)


@pytest.fixture
def identity():
    return Identity(id="user-1", email="listener@example.com", name="Listener")


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
