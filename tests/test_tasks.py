import asyncio

import pytest

from storagedrive._tasks import FanOut
from storagedrive.error import CancelledException, RecursiveOperationException, ServerException


@pytest.mark.asyncio
async def test_submit_waits_for_a_free_slot():
    active = 0
    peak = 0

    async def call():
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0)
        active -= 1
        return "done"

    async with FanOut("delete", "b", limit=2) as fan:
        for i in range(10):
            await fan.submit(f"obj-{i}", call)
            assert fan.in_flight <= 2

    assert peak == 2
    assert fan.in_flight == 0
    assert fan.submitted == 10
    assert fan.completed == 10
    assert fan.results == ["done"] * 10


@pytest.mark.asyncio
async def test_child_failures_are_raised_together():
    async def ok():
        return None

    async def broken():
        raise ServerException("delete failed", 500)

    with pytest.raises(RecursiveOperationException) as info:
        async with FanOut("delete", "b", limit=4) as fan:
            await fan.submit("a.txt", ok)
            await fan.submit("bad.txt", broken)
            await fan.submit("c.txt", ok)

    assert info.value.completed == 2
    assert [path for path, _ in info.value.failures] == ["bad.txt"]
    assert isinstance(info.value.__cause__, ServerException)


@pytest.mark.asyncio
async def test_stop_signal_skips_unstarted_calls():
    stop = asyncio.Event()
    calls = []

    async def call():
        calls.append(1)

    with pytest.raises(CancelledException):
        async with FanOut("copy", "b", stop=stop) as fan:
            await fan.submit("a.txt", call)
            await fan.submit("b.txt", call)
            stop.set()

    assert calls == []


@pytest.mark.asyncio
async def test_submit_after_stop_raises():
    stop = asyncio.Event()
    stop.set()
    fan = FanOut("copy", "b", stop=stop)

    with pytest.raises(CancelledException):
        await fan.submit("a.txt", lambda: asyncio.sleep(0))
    assert fan.submitted == 0


@pytest.mark.asyncio
async def test_submitted_calls_finish_when_enumeration_fails():
    finished = []

    async def call():
        await asyncio.sleep(0)
        finished.append(1)

    with pytest.raises(RuntimeError):
        async with FanOut("delete", "b", limit=4) as fan:
            await fan.submit("a.txt", call)
            await fan.submit("b.txt", call)
            raise RuntimeError("listing broke")

    assert finished == [1, 1]


@pytest.mark.asyncio
async def test_progress_reaches_total():
    progress = []

    async def call():
        await asyncio.sleep(0)

    async with FanOut("delete", "b", limit=1, progress=lambda done, total: progress.append((done, total))) as fan:
        for i in range(3):
            await fan.submit(f"obj-{i}", call)

    assert len(progress) == 3
    assert progress[-1] == (3, 3)
