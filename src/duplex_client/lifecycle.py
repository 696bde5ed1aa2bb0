"""Priority-ordered cleanup registry.

Each session owns one registry. Components register their teardown here and
``run_all`` releases them exactly once, on session end or process teardown.
"""

import asyncio
import inspect
import itertools
import logging
import signal
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_PRIORITY = 100

CleanupFn = Callable[[], Awaitable[None] | None]


@dataclass(frozen=True)
class _Cleanup:
    name: str
    fn: CleanupFn
    priority: int
    order: int


class LifecycleRegistry:
    """Runs registered cleanups once, lowest priority number first."""

    def __init__(self) -> None:
        self._cleanups: dict[str, _Cleanup] = {}
        self._order = itertools.count()
        self._run_task: asyncio.Task[None] | None = None
        self._signal_tasks: set[asyncio.Task[None]] = set()

    @property
    def in_progress(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    @property
    def count(self) -> int:
        return len(self._cleanups)

    @property
    def names(self) -> list[str]:
        """Registered names in execution order."""
        return [c.name for c in self._ordered()]

    def _ordered(self) -> list[_Cleanup]:
        return sorted(self._cleanups.values(), key=lambda c: (c.priority, c.order))

    def register(self, name: str, fn: CleanupFn, priority: int = DEFAULT_PRIORITY) -> bool:
        """Register a cleanup, replacing any existing one with the same name.

        Args:
            name: Unique cleanup name
            fn: Sync or async callable taking no arguments
            priority: Lower numbers run first

        Returns:
            False if refused because a run is in progress
        """
        if self.in_progress:
            logger.warning("Refusing cleanup registration during run", extra={"cleanup": name})
            return False

        if name in self._cleanups:
            logger.debug("Replacing cleanup", extra={"cleanup": name})
        self._cleanups[name] = _Cleanup(name, fn, priority, next(self._order))
        return True

    def unregister(self, name: str) -> bool:
        return self._cleanups.pop(name, None) is not None

    async def run_all(self) -> None:
        """Run every cleanup once, then clear the registry.

        Failures are logged and do not stop the remaining cleanups. A call
        made while a run is in flight waits for that run instead of starting
        another.
        """
        task = self._run_task
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(self._run(), name="lifecycle-cleanup")
            self._run_task = task
        await asyncio.shield(task)

    async def _run(self) -> None:
        cleanups = self._ordered()
        logger.info("Running cleanups", extra={"count": len(cleanups)})

        failed = 0
        try:
            for cleanup in cleanups:
                try:
                    result = cleanup.fn()
                    if inspect.isawaitable(result):
                        await result
                    logger.debug("Cleanup completed", extra={"cleanup": cleanup.name})
                except Exception as e:
                    failed += 1
                    logger.error(
                        "Cleanup failed",
                        extra={"cleanup": cleanup.name, "error": str(e)},
                        exc_info=True,
                    )
        finally:
            self._cleanups.clear()

        logger.info("Cleanups finished", extra={"count": len(cleanups), "failed": failed})

    def install_signal_handlers(
        self,
        loop: asyncio.AbstractEventLoop | None = None,
        on_complete: Callable[[], None] | None = None,
    ) -> Callable[[], None]:
        """Run all cleanups on SIGINT/SIGTERM.

        Args:
            loop: Event loop to install on (defaults to the running loop)
            on_complete: Called after the signal-triggered run finishes

        Returns:
            Callable that removes the handlers again
        """
        loop = loop or asyncio.get_running_loop()
        signals = (signal.SIGINT, signal.SIGTERM)

        def handle_signal(sig: signal.Signals) -> None:
            logger.info("Received signal, running cleanups", extra={"signal": sig.name})
            task = loop.create_task(self._run_from_signal(on_complete))
            self._signal_tasks.add(task)
            task.add_done_callback(self._signal_tasks.discard)

        installed: list[signal.Signals] = []
        for sig in signals:
            try:
                loop.add_signal_handler(sig, handle_signal, sig)
                installed.append(sig)
            except NotImplementedError:
                logger.warning("Signal handlers not supported on this platform")
                break

        def remove() -> None:
            for sig in installed:
                loop.remove_signal_handler(sig)
            installed.clear()

        return remove

    async def _run_from_signal(self, on_complete: Callable[[], None] | None) -> None:
        await self.run_all()
        if on_complete is not None:
            on_complete()
