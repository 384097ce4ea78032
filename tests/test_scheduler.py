from __future__ import annotations

import asyncio

from dashproxy.scheduler import RefreshScheduler


def test_scheduler_keeps_running_after_job_failure():
    calls = []

    async def job() -> None:
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("upstream exploded")

    async def scenario():
        scheduler = RefreshScheduler("test", job, interval_seconds=0.01, run_immediately=True)
        scheduler.start()
        for _ in range(200):
            if len(calls) >= 3:
                break
            await asyncio.sleep(0.01)
        running = scheduler.running
        await scheduler.stop()
        return running, scheduler.running

    running_before, running_after = asyncio.run(scenario())

    assert len(calls) >= 3
    assert running_before is True
    assert running_after is False


def test_stop_before_start_is_a_no_op():
    async def job() -> None:
        return None

    async def scenario():
        scheduler = RefreshScheduler("idle", job, interval_seconds=60)
        await scheduler.stop()
        return scheduler.runs

    assert asyncio.run(scenario()) == 0
