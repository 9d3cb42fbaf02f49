"""Tests for the periodic maintenance worker."""

import asyncio

import pytest

from bastion.service.maintenance import MaintenanceWorker


def _job(result, calls):
    async def job():
        calls.append(result)
        return result

    return job


async def _broken():
    raise RuntimeError("store exploded")


class TestRunOnce:
    async def test_collects_job_results(self):
        calls = []
        worker = MaintenanceWorker({"lockout": _job(2, calls), "sessions": _job(3, calls)})
        assert await worker.run_once() == {"lockout": 2, "sessions": 3}

    async def test_one_failing_job_does_not_stop_the_rest(self):
        calls = []
        worker = MaintenanceWorker({"tokens": _broken, "sessions": _job(1, calls)})
        assert await worker.run_once() == {"sessions": 1}
        assert calls == [1]

    async def test_all_jobs_failing_raises(self):
        worker = MaintenanceWorker({"tokens": _broken})
        with pytest.raises(RuntimeError):
            await worker.run_once()


class TestLifecycle:
    async def test_start_runs_periodically_and_stop_cancels(self):
        calls = []
        worker = MaintenanceWorker({"sessions": _job(0, calls)}, interval=0.01)
        await worker.start()
        assert worker.running
        await asyncio.sleep(0.05)
        await worker.stop()

        assert not worker.running
        assert len(calls) >= 2
        seen = len(calls)
        await asyncio.sleep(0.03)
        assert len(calls) == seen

    async def test_double_start_keeps_one_loop(self):
        worker = MaintenanceWorker({"sessions": _job(0, [])}, interval=10)
        await worker.start()
        task = worker._task
        await worker.start()
        assert worker._task is task
        await worker.stop()

    async def test_stop_without_start(self):
        worker = MaintenanceWorker({})
        await worker.stop()
        assert not worker.running
