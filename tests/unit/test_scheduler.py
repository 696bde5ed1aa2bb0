"""Unit tests for the scheduler primitives and backoff policy."""

import asyncio
import random

import pytest

from duplex_client.config import BackoffConfig
from duplex_client.scheduler import AsyncioScheduler, BackgroundTasks, BackoffPolicy, TimerSet
from tests.helpers.fake_scheduler import FakeScheduler, settle


class TestBackoffPolicy:
    """Test suite for BackoffPolicy."""

    def test_delays_double_without_jitter(self) -> None:
        """Test delays follow base * 2^(n-1)."""
        policy = BackoffPolicy(base_delay_s=0.5, jitter_s=0.0)
        assert [policy.delay(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 4.0]

    def test_delays_are_capped(self) -> None:
        """Test no single delay exceeds the cap."""
        policy = BackoffPolicy(base_delay_s=0.5, max_delay_s=8.0, jitter_s=0.0)
        assert policy.delay(5) == 8.0
        assert policy.delay(10) == 8.0

    def test_jitter_stays_within_bounds(self) -> None:
        """Test jitter is symmetric and never pushes past the cap or below zero."""
        policy = BackoffPolicy()
        rng = random.Random(42)

        for attempt in range(1, 8):
            nominal = min(0.5 * 2 ** (attempt - 1), 8.0)
            for _ in range(50):
                delay = policy.delay(attempt, rng)
                assert max(0.0, nominal - 0.25) <= delay <= min(nominal + 0.25, 8.0)

    def test_rejects_attempt_zero(self) -> None:
        """Test attempts are 1-based."""
        with pytest.raises(ValueError, match="attempt must be >= 1"):
            BackoffPolicy().delay(0)

    def test_from_config(self) -> None:
        """Test policy mirrors its config."""
        policy = BackoffPolicy.from_config(
            BackoffConfig(base_delay_s=1.0, factor=3.0, max_delay_s=20.0, jitter_s=0.0, max_attempts=4)
        )
        assert policy.max_attempts == 4
        assert policy.delay(3) == 9.0


class TestTimerSet:
    """Test suite for TimerSet."""

    async def test_fired_timers_are_forgotten(self) -> None:
        """Test a timer drops out of the set once fired."""
        scheduler = FakeScheduler()
        timers = TimerSet(scheduler)
        fired: list[str] = []

        timers.schedule(1.0, fired.append, "a")
        timers.schedule(2.0, fired.append, "b")
        assert len(timers) == 2

        await scheduler.advance(1.5)

        assert fired == ["a"]
        assert len(timers) == 1

    async def test_cancel_all_cancels_and_closes(self) -> None:
        """Test cancel_all stops pending timers and refuses new ones."""
        scheduler = FakeScheduler()
        timers = TimerSet(scheduler)
        fired: list[str] = []

        timers.schedule(1.0, fired.append, "a")
        timers.cancel_all()

        assert timers.schedule(1.0, fired.append, "b") is None

        await scheduler.advance(5.0)
        assert fired == []
        assert len(timers) == 0


class TestSchedulerSleep:
    """Test suite for Scheduler.sleep."""

    async def test_sleep_resumes_after_advance(self) -> None:
        """Test sleep completes only when scheduler time passes."""
        scheduler = FakeScheduler()
        task = asyncio.create_task(scheduler.sleep(2.0))

        await scheduler.advance(1.0)
        assert not task.done()

        await scheduler.advance(1.0)
        assert task.done()

    async def test_cancelled_sleep_cancels_timer(self) -> None:
        """Test cancelling a sleeper cancels its timer."""
        scheduler = FakeScheduler()
        task = asyncio.create_task(scheduler.sleep(2.0))
        await settle()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        assert scheduler.pending == []

    async def test_asyncio_scheduler_runs_callbacks(self) -> None:
        """Test the real scheduler runs callbacks on the loop."""
        scheduler = AsyncioScheduler()
        fired = asyncio.Event()

        scheduler.call_later(0.0, fired.set)
        await asyncio.wait_for(fired.wait(), timeout=1.0)

        assert scheduler.time_ms() > 0


class TestBackgroundTasks:
    """Test suite for BackgroundTasks."""

    async def test_tasks_are_released_when_done(self) -> None:
        """Test finished tasks drop out of the set."""
        tasks = BackgroundTasks()

        async def work() -> None:
            await asyncio.sleep(0)

        tasks.spawn(work())
        assert len(tasks) == 1

        await settle()
        assert len(tasks) == 0

    async def test_cancel_all(self) -> None:
        """Test cancel_all cancels outstanding tasks."""
        tasks = BackgroundTasks()
        blocker = asyncio.Event()

        task = tasks.spawn(blocker.wait())
        await tasks.cancel_all()

        assert task.cancelled()
        assert len(tasks) == 0

    async def test_drain_waits_without_cancelling(self) -> None:
        """Test drain lets outstanding tasks run to completion."""
        tasks = BackgroundTasks()
        finished: list[bool] = []

        async def release() -> None:
            await asyncio.sleep(0.01)
            finished.append(True)

        task = tasks.spawn(release())
        await tasks.drain()

        assert finished == [True]
        assert not task.cancelled()
        assert len(tasks) == 0
