"""Priority request queue and the drain scheduler."""

from __future__ import annotations

import asyncio

import pytest

from ai_dispatch.errors import DispatcherClosedError, QueueFullError
from ai_dispatch.models import Backend
from ai_dispatch.scheduler import QueueScheduler, RequestQueue


def _job(log, name):
    async def run():
        log.append(name)
        return name
    return run


class TestRequestQueue:
    @pytest.mark.asyncio
    async def test_priority_then_fifo(self):
        queue = RequestQueue(max_size=10)
        for name, prio in [("a", 0), ("b", 5), ("c", 0), ("d", 5), ("e", 1)]:
            queue.submit(Backend.OPENAI, prio, _job([], name), label=name)
        assert [item.label for item in queue.ordered()] == ["b", "d", "e", "a", "c"]
        assert queue.pop().label == "b"
        assert len(queue) == 4

    @pytest.mark.asyncio
    async def test_push_front_restores_position(self):
        queue = RequestQueue()
        queue.submit(Backend.OPENAI, 0, _job([], "a"), label="a")
        queue.submit(Backend.OPENAI, 0, _job([], "b"), label="b")
        item = queue.pop()
        queue.push_front(item)
        assert queue.peek().label == "a"

    @pytest.mark.asyncio
    async def test_full_queue_fails_fast(self):
        queue = RequestQueue(max_size=2)
        queue.submit(Backend.OPENAI, 0, _job([], "a"))
        queue.submit(Backend.OPENAI, 0, _job([], "b"))
        with pytest.raises(QueueFullError) as exc_info:
            queue.submit(Backend.OPENAI, 9, _job([], "c"))
        assert exc_info.value.status_code == 429
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_dispose_rejects_everything(self):
        queue = RequestQueue()
        items = [queue.submit(Backend.OPENAI, 0, _job([], str(i))) for i in range(3)]
        assert queue.dispose() == 3
        assert queue.closed
        for item in items:
            with pytest.raises(DispatcherClosedError):
                await item.future
        with pytest.raises(DispatcherClosedError):
            queue.submit(Backend.OPENAI, 0, _job([], "late"))

    @pytest.mark.asyncio
    async def test_stats(self):
        queue = RequestQueue(max_size=5)
        queue.submit(Backend.OPENAI, 0, _job([], "a"))
        queue.submit(Backend.GEMINI, 0, _job([], "b"))
        stats = queue.get_stats()
        assert stats["size"] == 2
        assert stats["total_enqueued"] == 2
        assert stats["by_backend"] == {"openai": 1, "gemini": 1}


class _Gate:
    """Admission hook with a per-backend allowance."""

    def __init__(self, **allowance):
        self.allowance = {Backend(k): v for k, v in allowance.items()}

    def __call__(self, backend):
        if self.allowance.get(backend, 0) <= 0:
            return False
        self.allowance[backend] -= 1
        return True


class TestQueueScheduler:
    @pytest.mark.asyncio
    async def test_tick_drains_in_priority_order(self):
        log = []
        queue = RequestQueue()
        items = [
            queue.submit(Backend.OPENAI, prio, _job(log, name))
            for name, prio in [("low", 0), ("high", 9), ("mid", 5)]
        ]
        scheduler = QueueScheduler(queue, _Gate(openai=3))
        assert await scheduler.tick() == 3
        await asyncio.gather(*(i.future for i in items))
        assert log == ["high", "mid", "low"]
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_skip_blocked_lets_other_backends_through(self):
        log = []
        queue = RequestQueue()
        queue.submit(Backend.OPENAI, 9, _job(log, "openai-1"))
        gemini = queue.submit(Backend.GEMINI, 0, _job(log, "gemini-1"))
        queue.submit(Backend.OPENAI, 0, _job(log, "openai-2"))
        scheduler = QueueScheduler(queue, _Gate(gemini=5), policy="skip_blocked")
        assert await scheduler.tick() == 1
        await gemini.future
        assert log == ["gemini-1"]
        assert [i.backend for i in queue.ordered()] == [Backend.OPENAI, Backend.OPENAI]

    @pytest.mark.asyncio
    async def test_blocked_backend_keeps_its_order(self):
        log = []
        queue = RequestQueue()
        queue.submit(Backend.OPENAI, 9, _job(log, "first"))
        queue.submit(Backend.OPENAI, 0, _job(log, "second"))
        calls = []

        def admit(backend):
            calls.append(backend)
            return False

        scheduler = QueueScheduler(queue, admit)
        await scheduler.tick()
        # one admission attempt per backend per tick
        assert calls == [Backend.OPENAI]

    @pytest.mark.asyncio
    async def test_strict_stops_at_first_blocked(self):
        log = []
        queue = RequestQueue()
        queue.submit(Backend.OPENAI, 9, _job(log, "openai"))
        queue.submit(Backend.GEMINI, 0, _job(log, "gemini"))
        scheduler = QueueScheduler(queue, _Gate(gemini=5), policy="strict")
        assert await scheduler.tick() == 0
        assert len(queue) == 2

    @pytest.mark.asyncio
    async def test_failure_reaches_waiter(self):
        queue = RequestQueue()

        async def boom():
            raise RuntimeError("backend down")

        item = queue.submit(Backend.OPENAI, 0, boom)
        await QueueScheduler(queue, _Gate(openai=1)).tick()
        with pytest.raises(RuntimeError, match="backend down"):
            await item.future

    @pytest.mark.asyncio
    async def test_abandoned_items_are_dropped(self):
        log = []
        queue = RequestQueue()
        item = queue.submit(Backend.OPENAI, 0, _job(log, "gone"))
        item.future.cancel()
        assert await QueueScheduler(queue, _Gate(openai=1)).tick() == 0
        assert len(queue) == 0
        assert log == []

    @pytest.mark.asyncio
    async def test_item_abandoned_after_launch_does_not_run(self):
        log = []
        released = []
        queue = RequestQueue()
        item = queue.submit(Backend.OPENAI, 0, _job(log, "late"))
        scheduler = QueueScheduler(queue, _Gate(openai=1), release=released.append)
        assert await scheduler.tick() == 1
        # waiter gives up before the launched task gets to run
        item.future.cancel()
        for _ in range(3):
            await asyncio.sleep(0)
        assert log == []
        assert released == [Backend.OPENAI]

    @pytest.mark.asyncio
    async def test_ticks_do_not_overlap(self):
        queue = RequestQueue()
        scheduler = QueueScheduler(queue, _Gate())
        async with scheduler._tick_lock:
            assert await scheduler.tick() == 0

    @pytest.mark.asyncio
    async def test_background_loop(self):
        log = []
        queue = RequestQueue()
        scheduler = QueueScheduler(queue, _Gate(openai=1), tick_seconds=0.01)
        await scheduler.start()
        assert scheduler.running
        item = queue.submit(Backend.OPENAI, 0, _job(log, "x"))
        assert await asyncio.wait_for(item.future, 1.0) == "x"
        await scheduler.stop()
        assert not scheduler.running

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            QueueScheduler(RequestQueue(), _Gate(), policy="random")
