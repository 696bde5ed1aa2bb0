"""Delayed-task primitive, clock and backoff policy.

Every timer in the package (credential refresh, reconnect backoff, message
retry, delivery confirmation, typing reset) goes through a :class:`Scheduler`
so that retry and expiry behaviour can be exercised without real time passing.
"""

import asyncio
import logging
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, Protocol

from duplex_client.config import BackoffConfig

logger = logging.getLogger(__name__)


class Cancellable(Protocol):
    """Handle returned by :meth:`Scheduler.call_later`."""

    def cancel(self) -> None: ...

    def cancelled(self) -> bool: ...


def _resolve(future: "asyncio.Future[None]") -> None:
    if not future.done():
        future.set_result(None)


class Scheduler(ABC):
    """Source of time and delayed callbacks."""

    @abstractmethod
    def now(self) -> float:
        """Monotonic seconds, used for ordering and durations."""

    @abstractmethod
    def time(self) -> float:
        """Wall-clock epoch seconds, used for expiries and message timestamps."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> Cancellable:
        """Run ``callback(*args)`` on the event loop after ``delay`` seconds."""

    def time_ms(self) -> int:
        """Wall-clock epoch milliseconds."""
        return int(self.time() * 1000)

    async def sleep(self, delay: float) -> None:
        """Suspend the caller for ``delay`` seconds of scheduler time."""
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        handle = self.call_later(delay, _resolve, future)
        try:
            await future
        finally:
            handle.cancel()


class AsyncioScheduler(Scheduler):
    """Scheduler backed by the running asyncio loop and the system clock."""

    def now(self) -> float:
        return time.monotonic()

    def time(self) -> float:
        return time.time()

    def call_later(self, delay: float, callback: Callable[..., None], *args: Any) -> Cancellable:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay), callback, *args)


class TimerSet:
    """Tracks scheduled callbacks so they can be cancelled together.

    A fired callback is forgotten automatically. After :meth:`cancel_all`
    the set refuses new timers, which makes post-teardown scheduling a no-op.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._handles: dict[int, Cancellable] = {}
        self._next_id = 0
        self._closed = False

    def schedule(
        self, delay: float, callback: Callable[..., None], *args: Any
    ) -> Cancellable | None:
        """Schedule ``callback`` unless the set has been closed."""
        if self._closed:
            return None

        timer_id = self._next_id
        self._next_id += 1

        def fire() -> None:
            self._handles.pop(timer_id, None)
            callback(*args)

        handle = self._scheduler.call_later(delay, fire)
        self._handles[timer_id] = handle
        return handle

    def cancel_all(self) -> None:
        """Cancel every outstanding timer and refuse new ones."""
        self._closed = True
        for handle in self._handles.values():
            handle.cancel()
        self._handles.clear()

    def __len__(self) -> int:
        return len(self._handles)


class BackgroundTasks:
    """Holds references to fire-and-forget tasks until they finish."""

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: str | None = None) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task failed",
                extra={"task": task.get_name(), "error": str(exc)},
            )

    async def cancel_all(self) -> None:
        """Cancel outstanding tasks and wait for them to unwind."""
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.difference_update(tasks)

    async def drain(self) -> None:
        """Wait for outstanding tasks to finish without cancelling them."""
        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def __len__(self) -> int:
        return len(self._tasks)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with symmetric jitter and a per-delay cap.

    ``delay(n)`` is ``base * factor ** (n - 1)`` plus uniform jitter in
    ``[-jitter, +jitter]``, clamped to ``[0, max_delay]``.
    """

    base_delay_s: float = 0.5
    factor: float = 2.0
    max_delay_s: float = 8.0
    jitter_s: float = 0.25
    max_attempts: int = 5

    @classmethod
    def from_config(cls, config: BackoffConfig) -> "BackoffPolicy":
        return cls(
            base_delay_s=config.base_delay_s,
            factor=config.factor,
            max_delay_s=config.max_delay_s,
            jitter_s=config.jitter_s,
            max_attempts=config.max_attempts,
        )

    def delay(self, attempt: int, rng: random.Random | None = None) -> float:
        """Delay to wait after the ``attempt``-th failure (1-based)."""
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")

        raw = self.base_delay_s * self.factor ** (attempt - 1)
        capped = min(raw, self.max_delay_s)
        if self.jitter_s:
            capped += (rng or random).uniform(-self.jitter_s, self.jitter_s)
        return max(0.0, min(capped, self.max_delay_s))
