import pytest

from openweather.cache import TTLCache
from openweather.ratelimit import RateLimiter
from openweather.storage import MemoryStorage


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(storage, clock):
    return TTLCache(storage, ttl=60, clock=clock)


@pytest.fixture
def limiter(clock):
    return RateLimiter(max_calls=50, window=60, clock=clock)
