import asyncio


class HealthGauge:
    """
    This is a makeshift health check system.

    The gauge is a counter that is incremented whenever an exception escapes regular flow-control (a webhook that
    could not be processed, a background task that failed) and decremented by a periodic tick. When a burst of
    exceptions pushes the counter past the threshold, is_healthy returns false and readiness probes fail until the
    counter drains.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    async def womp(self, d=1) -> int:
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
