import asyncio


class HealthGauge:
    """
    Error-burst gauge backing the readiness probe.

    Handlers call `womp` when something fails outside normal authentication
    flow-control (a store outage, an unexpected exception); a refused token
    does not count. The health task calls `tick` on an interval to decay the
    value by `decay` down to zero. While the value is above `health_threshold`
    the instance reports itself as not ready.
    """

    def __init__(
        self, value: int = 0, health_threshold: int = 100, decay: int = 1
    ) -> None:
        if decay <= 0:
            raise ValueError("decay must be positive")
        self._value = max(0, value)
        self._health_threshold = health_threshold
        self._decay = decay
        self._lock = asyncio.Lock()

    @property
    def value(self) -> int:
        return self._value

    async def womp(self, d: int = 1) -> int:
        """Record `d` unexpected errors and return the new value."""
        async with self._lock:
            self._value += int(d)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            self._value = max(0, self._value - self._decay)

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
