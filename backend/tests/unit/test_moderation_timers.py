import asyncio

import pytest

from pixguard.moderation.domain.side_effects import AsyncioTaskSink
from pixguard.moderation.workers.timers import ManualTimer, SchedulerTimer


@pytest.mark.asyncio
async def test_manual_timer_fires_in_due_order():
    timer = ManualTimer()
    fired: list[str] = []

    async def tick():
        fired.append(f"tick@{timer.now:g}")

    async def once():
        fired.append(f"once@{timer.now:g}")

    timer.call_every(5, tick, name="tick")
    timer.call_later(7, once, name="once")

    assert await timer.advance(10) == 3
    assert fired == ["tick@5", "once@7", "tick@10"]
    assert timer.active() == ["tick"]


@pytest.mark.asyncio
async def test_manual_timer_cancel_and_immediate():
    timer = ManualTimer()
    fired: list[float] = []

    async def tick():
        fired.append(timer.now)

    handle = timer.call_every(5, tick, name="tick", immediate=True)
    await timer.advance(0)
    handle.cancel()
    handle.cancel()
    await timer.advance(30)
    assert fired == [0.0]
    assert timer.active() == []


def test_manual_timer_rejects_non_positive_interval():
    async def noop():
        return None

    with pytest.raises(ValueError):
        ManualTimer().call_every(0, noop, name="bad")


@pytest.mark.asyncio
async def test_scheduler_timer_registers_and_cancels_jobs():
    timer = SchedulerTimer()

    async def noop():
        return None

    try:
        poll = timer.call_every(5, noop, name="poll")
        timer.call_every(5, noop, name="poll")
        timer.call_later(60, noop, name="resume")
        job_ids = sorted(job.id for job in timer._scheduler.get_jobs())
        assert job_ids == ["poll", "resume"]
        poll.cancel()
        poll.cancel()
        assert [job.id for job in timer._scheduler.get_jobs()] == ["resume"]
    finally:
        timer.shutdown()


@pytest.mark.asyncio
async def test_scheduler_timer_runs_immediate_job():
    timer = SchedulerTimer()
    ran = asyncio.Event()

    async def poll():
        ran.set()

    try:
        timer.call_every(60, poll, name="poll", immediate=True)
        await asyncio.wait_for(ran.wait(), timeout=2)
    finally:
        timer.shutdown()


@pytest.mark.asyncio
async def test_task_sink_logs_failures_and_drains():
    sink = AsyncioTaskSink()
    done: list[str] = []

    async def ok():
        done.append("ok")

    async def broken():
        raise RuntimeError("webhook down")

    sink.spawn(ok(), name="notify:1")
    sink.spawn(broken(), name="notify:2")
    await sink.drain(timeout=1)

    assert done == ["ok"]
    assert sink.pending == 0
