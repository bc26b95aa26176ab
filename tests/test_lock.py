import asyncio

import pytest

from bitcoind_regtest.lock import MutatingLock, serialized


@pytest.mark.asyncio
async def test_one_section_at_a_time_in_arrival_order():
    lock = MutatingLock()
    active = 0
    peak = 0
    order = []

    async def section(i):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        order.append(i)
        active -= 1
        return i

    results = await asyncio.gather(*(lock.run(lambda i=i: section(i)) for i in range(5)))
    assert results == [0, 1, 2, 3, 4]
    assert order == [0, 1, 2, 3, 4]
    assert peak == 1


@pytest.mark.asyncio
async def test_failure_reaches_only_its_caller():
    lock = MutatingLock()

    async def boom():
        raise ValueError("boom")

    async def fine():
        return "ok"

    results = await asyncio.gather(lock.run(boom), lock.run(fine), return_exceptions=True)
    assert isinstance(results[0], ValueError)
    assert results[1] == "ok"
    assert not lock.locked()


@pytest.mark.asyncio
async def test_context_manager_releases_on_error():
    lock = MutatingLock()
    with pytest.raises(RuntimeError):
        async with lock:
            assert lock.locked()
            raise RuntimeError
    assert not lock.locked()


class Counter:
    def __init__(self):
        self.running = 0
        self.peak = 0

    @serialized
    async def work(self, delay):
        self.running += 1
        self.peak = max(self.peak, self.running)
        await asyncio.sleep(delay)
        self.running -= 1
        return delay


@pytest.mark.asyncio
async def test_serialized_is_per_instance():
    a, b = Counter(), Counter()
    await asyncio.gather(a.work(0.01), a.work(0.01), b.work(0.01), b.work(0.01))
    assert a.peak == 1
    assert b.peak == 1


@pytest.mark.asyncio
async def test_serialized_later_call_waits_for_earlier():
    c = Counter()
    first = asyncio.create_task(c.work(0.05))
    await asyncio.sleep(0)
    second = asyncio.create_task(c.work(0))
    await asyncio.sleep(0.01)
    assert not second.done()
    assert await first == 0.05
    assert await second == 0
