"""Tests for per-chat FIFO request serialization."""

import asyncio

import pytest

from rachel.agent.queue import ChatRequestQueue
from tests.conftest import wait_until


class TestOrdering:
    async def test_same_chat_runs_in_submission_order(self):
        queue = ChatRequestQueue()
        log: list[str] = []

        def job(name: str, delay: float):
            async def run():
                log.append(f"start {name}")
                await asyncio.sleep(delay)
                log.append(f"end {name}")
                return name

            return run

        results = await asyncio.gather(
            queue.enqueue("c", job("A", 0.03)),
            queue.enqueue("c", job("B", 0.0)),
            queue.enqueue("c", job("C", 0.01)),
        )

        assert results == ["A", "B", "C"]
        assert log == ["start A", "end A", "start B", "end B", "start C", "end C"]

    async def test_different_chats_run_concurrently(self):
        queue = ChatRequestQueue()
        release = asyncio.Event()
        started: list[str] = []

        def blocked(name: str):
            async def run():
                started.append(name)
                await release.wait()
                return name

            return run

        first = asyncio.create_task(queue.enqueue("x", blocked("x")))
        second = asyncio.create_task(queue.enqueue("y", blocked("y")))
        await wait_until(lambda: len(started) == 2)
        assert sorted(queue.active_chats()) == ["x", "y"]

        release.set()
        assert await first == "x"
        assert await second == "y"

    async def test_task_not_started_before_its_turn(self):
        queue = ChatRequestQueue()
        release = asyncio.Event()
        calls: list[str] = []

        async def slow():
            calls.append("slow")
            await release.wait()

        async def fast():
            calls.append("fast")

        first = asyncio.create_task(queue.enqueue("c", slow))
        second = asyncio.create_task(queue.enqueue("c", fast))
        await wait_until(lambda: calls == ["slow"])
        await asyncio.sleep(0.01)
        assert calls == ["slow"]

        release.set()
        await asyncio.gather(first, second)
        assert calls == ["slow", "fast"]


class TestFailures:
    async def test_task_raising_cancelled_does_not_drop_followers(self):
        queue = ChatRequestQueue()

        async def cancels_itself():
            raise asyncio.CancelledError()

        async def fine():
            return "ok"

        cancelled = asyncio.create_task(queue.enqueue("c", cancels_itself))
        following = asyncio.create_task(queue.enqueue("c", fine))

        with pytest.raises(asyncio.CancelledError):
            await cancelled
        assert await following == "ok"
        await wait_until(lambda: not queue.is_busy("c"))

    async def test_failure_reaches_its_caller_only(self):
        queue = ChatRequestQueue()

        async def boom():
            raise ValueError("bad job")

        async def fine():
            return "ok"

        failing = asyncio.create_task(queue.enqueue("c", boom))
        following = asyncio.create_task(queue.enqueue("c", fine))

        with pytest.raises(ValueError, match="bad job"):
            await failing
        assert await following == "ok"

    async def test_queue_usable_after_failure(self):
        queue = ChatRequestQueue()

        async def boom():
            raise RuntimeError("x")

        with pytest.raises(RuntimeError):
            await queue.enqueue("c", boom)

        async def fine():
            return 1

        assert await queue.enqueue("c", fine) == 1


class TestIntrospection:
    async def test_pending_and_busy(self):
        queue = ChatRequestQueue()
        release = asyncio.Event()
        running = asyncio.Event()

        async def hold():
            running.set()
            await release.wait()

        async def noop():
            return None

        assert queue.pending("c") == 0
        assert not queue.is_busy("c")

        first = asyncio.create_task(queue.enqueue("c", hold))
        await running.wait()
        second = asyncio.create_task(queue.enqueue("c", noop))
        third = asyncio.create_task(queue.enqueue("c", noop))
        await wait_until(lambda: queue.pending("c") == 2)
        assert queue.is_busy("c")

        release.set()
        await asyncio.gather(first, second, third)
        await wait_until(lambda: not queue.is_busy("c"))
        assert queue.pending("c") == 0
        assert queue.active_chats() == []


class TestClose:
    async def test_close_cancels_waiting_jobs(self):
        queue = ChatRequestQueue()
        running = asyncio.Event()

        async def hold():
            running.set()
            await asyncio.sleep(10)

        async def never():
            raise AssertionError("should not run")

        first = asyncio.create_task(queue.enqueue("c", hold))
        await running.wait()
        second = asyncio.create_task(queue.enqueue("c", never))
        await wait_until(lambda: queue.pending("c") == 1)

        await queue.close()

        with pytest.raises(asyncio.CancelledError):
            await first
        with pytest.raises(asyncio.CancelledError):
            await second
        assert queue.active_chats() == []

    async def test_enqueue_after_close_rejected(self):
        queue = ChatRequestQueue()
        await queue.close()

        async def job():
            return 1

        with pytest.raises(RuntimeError, match="closed"):
            await queue.enqueue("c", job)
