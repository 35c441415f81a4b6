import asyncio
import time
from typing import Awaitable, Callable, Protocol


class Pacer(Protocol):
    async def wait(self) -> None: ...


class IntervalPacer:
    """Keeps at least ``interval`` seconds between consecutive starts.

    The first call never waits. ``sleep`` and ``clock`` are injectable so the
    pause can be observed in tests without real timers.
    """

    def __init__(
        self,
        interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.interval = interval
        self._sleep = sleep
        self._clock = clock
        self._last: float | None = None

    async def wait(self) -> None:
        if self._last is not None:
            remaining = self.interval - (self._clock() - self._last)
            if remaining > 0:
                await self._sleep(remaining)
        self._last = self._clock()
