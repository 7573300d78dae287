import asyncio, random, time
from typing import Awaitable, Callable, Optional

class PolitenessPacer:
    """Enforces a randomized minimum gap between consecutive requests to one host."""
    def __init__(
        self,
        min_delay: float = 0.5,
        max_delay: float = 1.5,
        *,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.min_delay = max(0.0, min_delay)
        self.max_delay = max(self.min_delay, max_delay)
        self.last: Optional[float] = None
        self.lock = asyncio.Lock()
        self._sleep = sleep or asyncio.sleep

    def next_gap(self) -> float:
        if self.max_delay == self.min_delay:
            return self.min_delay
        return random.uniform(self.min_delay, self.max_delay)

    async def acquire(self):
        async with self.lock:
            if self.last is not None:
                wait = self.next_gap() - (time.monotonic() - self.last)
                if wait > 0:
                    await self._sleep(wait)
            self.last = time.monotonic()
