"""Storage contract shared by the memory and Redis backends.

Records are JSON-compatible dicts addressed by string keys. Every backend
guarantees read-your-writes per key and an atomic ``update`` that applies a
mutator function to the current record without interleaving other writers of
the same key.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections import defaultdict
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol, Tuple

from bastion.storage.errors import StoreUnavailable

Record = Dict[str, Any]
# Receives a private copy of the current record (or None) and returns the new
# record, or None to delete it. Backends using optimistic concurrency may call
# it more than once, so it must not depend on state from a previous call.
Mutator = Callable[[Optional[Record]], Optional[Record]]


class KeyedStore(Protocol):
    async def init(self) -> None: ...

    async def shutdown(self) -> None: ...

    async def ping(self) -> bool: ...

    async def create(self, key: str, value: Record) -> None: ...

    async def get(self, key: str) -> Optional[Record]: ...

    async def put(self, key: str, value: Record) -> None: ...

    async def update(self, key: str, mutator: Mutator) -> Optional[Record]: ...

    async def delete(self, key: str) -> bool: ...

    async def list_prefix(self, prefix: str) -> List[Tuple[str, Record]]: ...


class KeyedLocks:
    """Reference-counted ``asyncio.Lock`` per key.

    Locks are dropped once no task holds or waits on them so long-lived
    processes do not accumulate one lock per identifier ever seen.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] <= 0:
                self._users.pop(key, None)
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class TimeoutStore:
    """Bound every store call by a request-scoped timeout.

    A slow backend surfaces as ``StoreUnavailable`` instead of hanging the
    caller; the request fails while the process keeps serving others.
    """

    def __init__(self, inner: KeyedStore, timeout_seconds: float) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: str, awaitable):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise StoreUnavailable(
                f"store {operation} timed out after {self.timeout_seconds}s",
                operation=operation,
            ) from exc

    async def init(self) -> None:
        await self._bounded("init", self.inner.init())

    async def shutdown(self) -> None:
        await self._bounded("shutdown", self.inner.shutdown())

    async def ping(self) -> bool:
        try:
            return await self._bounded("ping", self.inner.ping())
        except StoreUnavailable:
            return False

    async def create(self, key: str, value: Record) -> None:
        await self._bounded("create", self.inner.create(key, value))

    async def get(self, key: str) -> Optional[Record]:
        return await self._bounded("get", self.inner.get(key))

    async def put(self, key: str, value: Record) -> None:
        await self._bounded("put", self.inner.put(key, value))

    async def update(self, key: str, mutator: Mutator) -> Optional[Record]:
        return await self._bounded("update", self.inner.update(key, mutator))

    async def delete(self, key: str) -> bool:
        return await self._bounded("delete", self.inner.delete(key))

    async def list_prefix(self, prefix: str) -> List[Tuple[str, Record]]:
        return await self._bounded("list_prefix", self.inner.list_prefix(prefix))


__all__ = ["KeyedLocks", "KeyedStore", "Mutator", "Record", "TimeoutStore"]
