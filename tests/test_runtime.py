"""Tests for component wiring and store lifecycle."""

import pytest
from fastapi.testclient import TestClient

from bastion.app import create_app
from bastion.config import StoreBackend
from bastion.service.runtime import Runtime, build_store
from bastion.storage.common import TimeoutStore
from bastion.storage.errors import StoreUnavailable
from bastion.storage.memory import MemoryStore
from bastion.storage.redis_store import RedisStore


class _BrokenStore(MemoryStore):
    async def init(self):
        raise StoreUnavailable("backend down", operation="init")


class TestBuildStore:
    def test_memory_backend(self, settings):
        store = build_store(settings)
        assert isinstance(store, TimeoutStore)
        assert isinstance(store.inner, MemoryStore)

    def test_persistent_memory_backend(self, settings, tmp_path):
        store = build_store(settings.model_copy(update={"persist_memory_store": True}))
        assert store.inner._state_path == tmp_path / "store.json"

    def test_redis_backend(self, settings):
        store = build_store(settings.model_copy(update={"store_backend": StoreBackend.REDIS}))
        assert isinstance(store.inner, RedisStore)


class TestLifecycle:
    async def test_init_and_shutdown(self, settings, clock):
        runtime = Runtime(settings, store=MemoryStore(), clock=clock)
        assert not runtime.ready
        await runtime.init()
        assert runtime.ready
        assert await runtime.store.ping()
        await runtime.shutdown()
        assert not runtime.ready

    async def test_failed_store_init_is_fatal(self, settings, clock):
        runtime = Runtime(settings, store=_BrokenStore(), clock=clock)
        with pytest.raises(StoreUnavailable):
            await runtime.init()
        assert not runtime.ready
        await runtime.shutdown()

    async def test_maintenance_started_when_enabled(self, settings, clock):
        enabled = settings.model_copy(update={"maintenance_enabled": True})
        runtime = Runtime(enabled, store=MemoryStore(), clock=clock)
        await runtime.init()
        assert runtime.maintenance.running
        await runtime.shutdown()
        assert not runtime.maintenance.running

    def test_app_refuses_to_start_with_broken_store(self, settings, clock):
        runtime = Runtime(settings, store=_BrokenStore(), clock=clock)
        with pytest.raises(StoreUnavailable):
            with TestClient(create_app(runtime=runtime)):
                pass
        runtime.credentials.close()

    def test_components_share_the_store(self, runtime, store):
        assert runtime.credentials.store is store
        assert runtime.sessions.store is store
        assert runtime.tokens.store is store
        assert runtime.gateway.sessions is runtime.sessions
