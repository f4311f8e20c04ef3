from typing import Callable, Optional
import asyncio
import inspect
import logging
import time

logger = logging.getLogger(__name__)


class CountdownTimer:
    """Per-question countdown running as an asyncio task.

    ``on_tick(remaining_ms)`` fires every ``tick_interval`` seconds and
    ``on_end()`` once when the countdown reaches zero. Both may be coroutine
    functions. ``stop()`` is safe to call from inside either callback.
    """

    def __init__(self, duration_s: float, on_tick: Optional[Callable] = None,
                 on_end: Optional[Callable] = None, tick_interval: float = 1.0):
        self.duration_s = duration_s
        self.on_tick = on_tick
        self.on_end = on_end
        self.tick_interval = tick_interval
        self._task: Optional[asyncio.Task] = None
        self._started_at: Optional[float] = None
        self._elapsed = 0.0

    @property
    def is_running(self) -> bool:
        return self._task is not None

    @property
    def elapsed(self) -> float:
        if self._started_at is not None:
            return self._elapsed + (time.monotonic() - self._started_at)
        return self._elapsed

    @property
    def remaining(self) -> float:
        return max(0.0, self.duration_s - self.elapsed)

    def start(self):
        if self._task is not None:
            return
        self._started_at = time.monotonic()
        self._task = asyncio.create_task(self._run())

    def stop(self):
        if self._started_at is not None:
            self._elapsed += time.monotonic() - self._started_at
            self._started_at = None
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def reset(self):
        self.stop()
        self._elapsed = 0.0

    async def _run(self):
        me = asyncio.current_task()
        try:
            while self.remaining > 0:
                await asyncio.sleep(min(self.tick_interval, self.remaining))
                if self._task is not me:
                    return
                if self.remaining > 0:
                    await self._call(self.on_tick, int(self.remaining * 1000))
                    if self._task is not me:
                        return
            # Detach before on_end so the callback may restart this timer.
            self.stop()
            await self._call(self.on_end)
        except asyncio.CancelledError:
            pass

    @staticmethod
    async def _call(callback: Optional[Callable], *args):
        if callback is None:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
