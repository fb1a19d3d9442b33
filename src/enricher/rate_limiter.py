import asyncio


class RateLimiter:
    """Minimum-interval pacer for async HTTP clients."""

    def __init__(self, max_rps: float) -> None:
        self._min_interval = 1.0 / max_rps
        self._last_request = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            loop = asyncio.get_event_loop()
            now = loop.time()
            wait = self._min_interval - (now - self._last_request)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = asyncio.get_event_loop().time()


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential delay for a 0-based attempt: base * 2^attempt, capped."""
    return min(base * (2 ** attempt), cap)


class CooldownState:
    """Escalating retry cooldown for consecutive rate-limit hits.

    Owned by a single worker and threaded through its iterations, so backoff
    pressure from one upstream burst never leaks into another process.
    """

    def __init__(self, base_sec: float, max_sec: float) -> None:
        self._base_sec = base_sec
        self._max_sec = max_sec
        self.consecutive_hits = 0

    def next_delay(self) -> float:
        """Register a rate-limit hit and return the cooldown to apply."""
        delay = backoff_delay(self.consecutive_hits, self._base_sec, self._max_sec)
        self.consecutive_hits += 1
        return delay

    def reset(self) -> None:
        self.consecutive_hits = 0
