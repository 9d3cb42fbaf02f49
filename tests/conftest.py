import asyncio
import inspect
from datetime import datetime, timedelta, timezone

import pytest

from bastion.config import HashingPolicy, SessionPolicy, Settings
from bastion.service.runtime import Runtime
from bastion.storage.memory import MemoryStore

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class FrozenClock:
    """Deterministic stand-in for ``utcnow`` that only moves when told to."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds=0, **kwargs):
        self.now += timedelta(seconds=seconds, **kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def fast_hashing():
    # Low argon2 cost keeps the suite fast; production defaults are unchanged
    return HashingPolicy(time_cost=1, memory_cost=1024, parallelism=1, workers=2)


@pytest.fixture
def settings(tmp_path, fast_hashing):
    return Settings(
        state_dir=str(tmp_path),
        jwt_secret=TEST_SECRET,
        maintenance_enabled=False,
        log_json=False,
        hashing=fast_hashing,
        session=SessionPolicy(cookie_secure=False),
    )


@pytest.fixture
def store():
    return MemoryStore()


class YieldingStore(MemoryStore):
    """MemoryStore that hands control back to the loop before every read and update."""

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def update(self, key, mutator):
        await asyncio.sleep(0)
        return await super().update(key, mutator)


@pytest.fixture
def yielding_store():
    return YieldingStore()


@pytest.fixture
def runtime(settings, store, clock):
    rt = Runtime(settings, store=store, clock=clock)
    yield rt
    rt.credentials.close()


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
