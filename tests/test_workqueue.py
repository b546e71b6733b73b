"""Tests for the work queue."""

import asyncio

import pytest

from poolcontroller.workqueue import WorkQueue


class TestWorkQueue:
    """Tests for WorkQueue."""

    @pytest.mark.asyncio
    async def test_deduplicates_waiting_keys(self) -> None:
        """Test that a key waiting in the queue is not queued twice."""
        queue = WorkQueue()

        queue.add("a")
        queue.add("a")
        queue.add("b")

        assert len(queue) == 2
        assert await queue.get() == "a"
        assert await queue.get() == "b"
        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_key_exclusive_while_processing(self) -> None:
        """Test that a key added during processing is handed out after done."""
        queue = WorkQueue()
        queue.add("a")
        key = await queue.get()

        queue.add("a")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_done_without_re_add(self) -> None:
        """Test that done does not requeue a clean key."""
        queue = WorkQueue()
        queue.add("a")
        queue.done(await queue.get())

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_add_after(self) -> None:
        """Test that a delayed key shows up after its delay."""
        queue = WorkQueue()

        queue.add_after("a", 0.01)

        assert len(queue) == 0
        assert await asyncio.wait_for(queue.get(), timeout=1) == "a"

    @pytest.mark.asyncio
    async def test_rate_limited_backoff(self) -> None:
        """Test exponential growth capped at the maximum, reset by forget."""
        queue = WorkQueue(base_delay_seconds=1.0, max_delay_seconds=5.0)

        delays = [queue.add_rate_limited("a") for _ in range(5)]

        assert delays == [1.0, 2.0, 4.0, 5.0, 5.0]
        assert queue.num_requeues("a") == 5

        queue.forget("a")
        assert queue.num_requeues("a") == 0
        assert queue.when("a") == 1.0
        queue.shut_down()

    @pytest.mark.asyncio
    async def test_shut_down_releases_all_getters(self) -> None:
        """Test that every waiting worker sees None after shutdown."""
        queue = WorkQueue()
        getters = [asyncio.create_task(queue.get()) for _ in range(3)]
        await asyncio.sleep(0)

        queue.shut_down()
        results = await asyncio.wait_for(asyncio.gather(*getters), timeout=1)

        assert results == [None, None, None]
        assert queue.shutting_down

    @pytest.mark.asyncio
    async def test_add_ignored_after_shutdown(self) -> None:
        """Test that keys are not accepted once shutting down."""
        queue = WorkQueue()
        queue.shut_down()

        queue.add("a")
        queue.add_after("b", 0.01)

        assert len(queue) == 0
        assert await queue.get() is None

    @pytest.mark.asyncio
    async def test_shut_down_cancels_timers(self) -> None:
        """Test that pending delayed adds never fire after shutdown."""
        queue = WorkQueue()
        queue.add_after("a", 0.01)

        queue.shut_down()
        await asyncio.sleep(0.05)

        assert len(queue) == 0
