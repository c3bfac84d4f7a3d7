import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Cancellable ticker. Runs `func` every `interval_sec` until stopped.
    Ticks never overlap: the next wait starts after the previous tick returns.
    Tests call `run_once()` directly instead of waiting on the clock.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Awaitable[object]],
        interval_sec: float,
        initial_delay_sec: Optional[float] = None,
    ):
        self.name = name
        self._func = func
        self.interval_sec = interval_sec
        self.initial_delay_sec = interval_sec if initial_delay_sec is None else initial_delay_sec
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self.tick_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name=f"ticker:{self.name}")
        logger.debug("Ticker %s started interval=%.1fs", self.name, self.interval_sec)

    async def stop(self):
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Ticker %s stopped", self.name)

    async def run_once(self):
        self.tick_count += 1
        try:
            await self._func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A failing tick must not kill the loop
            logger.error("Ticker %s tick failed: %s", self.name, e, exc_info=True)

    async def _run(self):
        delay = self.initial_delay_sec
        while True:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
                return
            except asyncio.TimeoutError:
                pass
            await self.run_once()
            delay = self.interval_sec
