from __future__ import annotations

import contextlib
import json
import re
from typing import AsyncIterator, List, Optional, Tuple

import redis.asyncio as aioredis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from bastion.logging import get_logger
from bastion.storage.common import Mutator, Record
from bastion.storage.errors import ConstraintViolation, StoreUnavailable

logger = get_logger(__name__)

_GLOB_SPECIAL = re.compile(r"([*?\[\]\\])")


class RedisStore:
    """Keyed store on Redis using WATCH/MULTI for atomic per-key updates."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    MAX_UPDATE_RETRIES = 16

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "bastion",
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[aioredis.Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    @contextlib.asynccontextmanager
    async def _guard(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error("redis_store_unavailable", operation=operation, error=str(exc))
            raise StoreUnavailable(f"redis {operation} failed: {exc}", operation=operation) from exc

    async def init(self) -> None:
        async with self._guard("init"):
            await self.client.ping()
        logger.info("redis_store_ready", namespace=self.namespace)

    async def shutdown(self) -> None:
        await self.client.aclose()
        logger.info("redis_store_closed", namespace=self.namespace)

    async def ping(self) -> bool:
        try:
            async with self._guard("ping"):
                return bool(await self.client.ping())
        except StoreUnavailable:
            return False

    async def create(self, key: str, value: Record) -> None:
        async with self._guard("create"):
            created = await self.client.set(self._key(key), json.dumps(value), nx=True)
        if not created:
            raise ConstraintViolation("record already exists", {"key": key})

    async def get(self, key: str) -> Optional[Record]:
        async with self._guard("get"):
            raw = await self.client.get(self._key(key))
        return json.loads(raw) if raw else None

    async def put(self, key: str, value: Record) -> None:
        async with self._guard("put"):
            await self.client.set(self._key(key), json.dumps(value))

    async def update(self, key: str, mutator: Mutator) -> Optional[Record]:
        full_key = self._key(key)
        async with self._guard("update"):
            async with self.client.pipeline(transaction=True) as pipe:
                for _ in range(self.MAX_UPDATE_RETRIES):
                    try:
                        await pipe.watch(full_key)
                        raw = await pipe.get(full_key)
                        current = json.loads(raw) if raw else None
                        updated = mutator(current)
                        if updated is None and current is None:
                            await pipe.reset()
                            return None
                        pipe.multi()
                        if updated is None:
                            pipe.delete(full_key)
                        else:
                            pipe.set(full_key, json.dumps(updated))
                        await pipe.execute()
                        return updated
                    except WatchError:
                        logger.debug("redis_update_retry", key=key)
                        continue
        raise StoreUnavailable(f"update of {key} kept conflicting", operation="update")

    async def delete(self, key: str) -> bool:
        async with self._guard("delete"):
            return bool(await self.client.delete(self._key(key)))

    async def list_prefix(self, prefix: str) -> List[Tuple[str, Record]]:
        pattern = self._key(_GLOB_SPECIAL.sub(r"\\\1", prefix)) + "*"
        strip = len(self.namespace) + 1
        async with self._guard("list_prefix"):
            keys = sorted([k async for k in self.client.scan_iter(match=pattern, count=500)])
            if not keys:
                return []
            values = await self.client.mget(keys)
        return [
            (full_key[strip:], json.loads(raw))
            for full_key, raw in zip(keys, values)
            if raw
        ]
