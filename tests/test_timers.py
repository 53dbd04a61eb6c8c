import asyncio
import time

import pytest

from anytls.timers import PipeDeadline, new_deadline_watcher, start_routine


@pytest.mark.asyncio
async def test_past_deadline_expires_immediately():
    d = PipeDeadline()
    d.set(time.monotonic() - 1)
    assert d.expired()


@pytest.mark.asyncio
async def test_future_deadline_expires_later():
    d = PipeDeadline()
    d.set(time.monotonic() + 0.05)
    assert not d.expired()
    await asyncio.wait_for(d.wait().wait(), 1)
    assert d.expired()


@pytest.mark.asyncio
async def test_clearing_deadline_resets():
    d = PipeDeadline()
    d.set(time.monotonic() - 1)
    d.set(None)
    assert not d.expired()


@pytest.mark.asyncio
async def test_watcher_fires():
    fired = []
    new_deadline_watcher(0.01, lambda: fired.append(1))
    await asyncio.sleep(0.05)
    assert fired == [1]


@pytest.mark.asyncio
async def test_watcher_done_prevents_timeout():
    fired = []
    done = new_deadline_watcher(0.02, lambda: fired.append(1))
    done()
    done()
    await asyncio.sleep(0.05)
    assert fired == []


@pytest.mark.asyncio
async def test_routine_runs_until_stopped():
    calls = []
    stop = asyncio.Event()

    def tick():
        calls.append(1)
        if len(calls) == 3:
            stop.set()

    task = start_routine(0.005, tick, stop)
    await asyncio.wait([task], timeout=1)
    assert task.done()
    assert not task.cancelled()
    assert task.exception() is None
    assert len(calls) == 3