from __future__ import annotations

import asyncio
import copy
import json
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from bastion.logging import get_logger
from bastion.storage.common import KeyedLocks, Mutator, Record
from bastion.storage.errors import ConstraintViolation, StoreUnavailable


class MemoryStore:
    """In-process keyed store with an optional JSON snapshot on disk.

    Writers of the same key are serialized through a per-key lock; readers
    always receive copies so callers cannot mutate stored state in place.
    """

    def __init__(self, state_path: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self._records: Dict[str, Record] = {}
        self._locks = KeyedLocks()
        self._state_path = Path(state_path) if state_path else None
        self._persist_lock: Optional[asyncio.Lock] = None
        self._ready = False

    async def init(self) -> None:
        if self._state_path is not None:
            try:
                loaded = await asyncio.to_thread(self._load_state)
            except (OSError, ValueError) as exc:
                raise StoreUnavailable(
                    f"failed to load state from {self._state_path}: {exc}", operation="init"
                ) from exc
            self._records = loaded
        self._persist_lock = asyncio.Lock()
        self._ready = True
        self.logger.info(
            "memory_store_ready",
            records=len(self._records),
            persistent=self._state_path is not None,
        )

    async def shutdown(self) -> None:
        if self._ready:
            await self._persist()
        self._ready = False
        self.logger.info("memory_store_closed", records=len(self._records))

    async def ping(self) -> bool:
        return self._ready

    async def create(self, key: str, value: Record) -> None:
        async with self._locks.hold(key):
            if key in self._records:
                raise ConstraintViolation("record already exists", {"key": key})
            self._records[key] = copy.deepcopy(value)
        await self._persist()

    async def get(self, key: str) -> Optional[Record]:
        record = self._records.get(key)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, key: str, value: Record) -> None:
        async with self._locks.hold(key):
            self._records[key] = copy.deepcopy(value)
        await self._persist()

    async def update(self, key: str, mutator: Mutator) -> Optional[Record]:
        async with self._locks.hold(key):
            current = self._records.get(key)
            updated = mutator(copy.deepcopy(current) if current is not None else None)
            if updated is None:
                self._records.pop(key, None)
            else:
                self._records[key] = copy.deepcopy(updated)
        await self._persist()
        return updated

    async def delete(self, key: str) -> bool:
        async with self._locks.hold(key):
            existed = self._records.pop(key, None) is not None
        if existed:
            await self._persist()
        return existed

    async def list_prefix(self, prefix: str) -> List[Tuple[str, Record]]:
        return [
            (key, copy.deepcopy(self._records[key]))
            for key in sorted(self._records)
            if key.startswith(prefix)
        ]

    def _load_state(self) -> Dict[str, Record]:
        assert self._state_path is not None
        try:
            data = json.loads(self._state_path.read_text())
        except FileNotFoundError:
            return {}
        records = data.get("records", {})
        if not isinstance(records, dict):
            raise ValueError("state file is missing the records mapping")
        return records

    async def _persist(self) -> None:
        if self._state_path is None or self._persist_lock is None:
            return
        async with self._persist_lock:
            # Snapshot taken under the lock so later writes never land first
            snapshot = json.dumps({"records": self._records}, indent=2, sort_keys=True)
            try:
                await asyncio.to_thread(self._write_snapshot, snapshot)
            except OSError as exc:
                raise StoreUnavailable(
                    f"failed to persist state: {exc}", operation="persist"
                ) from exc

    def _write_snapshot(self, snapshot: str) -> None:
        assert self._state_path is not None
        self._state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_path.parent), prefix=".state_", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as handle:
                handle.write(snapshot)
            os.replace(tmp_path, self._state_path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
