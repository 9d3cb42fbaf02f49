from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, Optional

from bastion.logging import get_logger

logger = get_logger(__name__)

MAX_BACKOFF_SECONDS = 300


class MaintenanceWorker:
    """Periodic cleanup of lockout records, sessions and revoked-token entries.

    Each job is an async callable returning how many records it removed. A
    failing job is logged and retried on the next cycle; stopping cancels the
    loop between or during cycles.
    """

    def __init__(
        self,
        jobs: Dict[str, Callable[[], Awaitable[int]]],
        *,
        interval: float = 300,
    ) -> None:
        self.jobs = jobs
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            logger.warning("maintenance_worker_already_running")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("maintenance_worker_started", interval=self.interval, jobs=sorted(self.jobs))

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("maintenance_worker_stopped")

    async def run_once(self) -> Dict[str, int]:
        results: Dict[str, int] = {}
        failed = 0
        for name, job in self.jobs.items():
            try:
                results[name] = await job()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failed += 1
                logger.error(
                    "maintenance_job_failed",
                    job=name,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
        if failed == len(self.jobs) and self.jobs:
            raise RuntimeError("every maintenance job failed")
        logger.debug("maintenance_cycle_complete", **results)
        return results

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self.run_once()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "maintenance_loop_error",
                    error=str(exc),
                    consecutive_errors=consecutive_errors,
                )
                if consecutive_errors > 3:
                    backoff = min(MAX_BACKOFF_SECONDS, self.interval * (2 ** (consecutive_errors - 3)))
                    logger.warning(
                        "maintenance_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.interval)
