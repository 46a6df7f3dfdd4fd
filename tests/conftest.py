import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before sessionguard.config is imported
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("JANITOR_ENABLED", "false")
# Empty URL selects the in-process cache
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sessionguard.config import Settings, reset_settings_cache  # noqa: E402
from sessionguard.service.runtime import Runtime  # noqa: E402
from sessionguard.storage.errors import CacheUnavailable, StorageUnavailable  # noqa: E402
from sessionguard.storage.local_cache import LocalCache  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402

TEST_PASSWORD = "TestPassword123!"


class FakeClock:
    """Settable UTC clock shared by every component of a test runtime."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FlakyStore:
    """Wraps a store; every call raises StorageUnavailable while ``down``."""

    def __init__(self, inner):
        self.inner = inner
        self.down = False

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            if self.down:
                raise StorageUnavailable(f"{name}: connection refused")
            return attr(*args, **kwargs)

        return call


class FlakyCache(LocalCache):
    """Local cache whose operations raise CacheUnavailable while ``down``."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.down = False

    async def _call(self, op, *args, **kwargs):
        if self.down:
            raise CacheUnavailable(f"cache {op} failed: connection refused")
        return await super()._call(op, *args, **kwargs)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url="",
        janitor_enabled=False,
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def local_cache(clock):
    # Cache expiry follows the same fake clock as the services
    return LocalCache(clock=lambda: clock().timestamp())


@pytest.fixture
def runtime(settings, memory_store, local_cache, clock):
    return Runtime(settings, store=memory_store, cache=local_cache, clock=clock)


@pytest.fixture
def flaky_store(memory_store):
    return FlakyStore(memory_store)


@pytest.fixture
def flaky_cache(clock):
    return FlakyCache(clock=lambda: clock().timestamp())


@pytest.fixture
def flaky_runtime(settings, flaky_store, flaky_cache, clock):
    return Runtime(settings, store=flaky_store, cache=flaky_cache, clock=clock)


@pytest.fixture
def test_identity(runtime):
    return runtime.identities.register("test@example.com", TEST_PASSWORD)


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
