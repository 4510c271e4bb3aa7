"""Cache-first async acquisition layer for the OpenWeatherMap API.

This package keeps a stateless, rate-limited weather API responsive and
cheap to call from a client that issues many overlapping requests
(several cities, auto-refresh timers, manual refreshes, search-as-you-type).

Key features:
    - Durable TTL cache (60 s) that survives restarts and never raises
    - Process-wide fixed-window call budget (50 calls per 60 s)
    - One in-flight network call per fingerprint, shared by concurrent callers
    - Out-of-order responses never overwrite newer cached data
    - Visibility-aware refresh scheduler with manual trigger
    - Optional DataFrame conversion via openweather.dataframe module

Caching strategy:
    - A **fresh** entry (younger than the TTL) answers a request without
      touching the budget or the network.
    - A **stale** entry is kept for "last updated" display but never
      served in place of a fetch.
    - Failed fetches leave the cache untouched.

Example:
    Fetch weather for a city::

        import asyncio
        from openweather import OpenWeatherClient

        async def main():
            async with OpenWeatherClient(api_key="...") as client:
                result = await client.get_current("Paris")
                print(result.data["main"]["temp"], result.came_from_cache)

        asyncio.run(main())

    Auto-refresh the cities on screen::

        from openweather import RefreshScheduler, VisibilitySignal

        visibility = VisibilitySignal()
        scheduler = RefreshScheduler(visibility)
        scheduler.arm(lambda: client.refresh(displayed_cities), 60)

See Also:
    - OpenWeatherMap API docs: https://openweathermap.org/api
"""

from .cache import TTLCache, fingerprint
from .client import OpenWeatherClient
from .config import Settings
from .exceptions import (
    CacheCorruptionError,
    OpenWeatherAPIError,
    OpenWeatherCacheError,
    OpenWeatherConnectionError,
    OpenWeatherError,
    OpenWeatherRateLimitError,
    OpenWeatherValidationError,
    StorageQuotaExceeded,
)
from .models import CacheEntry, CacheStats, CityMatch, FetchResult
from .ratelimit import RateLimiter
from .scheduler import RefreshScheduler, VisibilitySignal
from .storage import FileStorage, MemoryStorage
from .types import (
    API_BASE_URL,
    CACHE_PREFIX,
    DEFAULT_TTL_SECONDS,
    GEO_BASE_URL,
    MAX_CALLS_PER_WINDOW,
    RATE_WINDOW_SECONDS,
    RequestKind,
)

__all__ = [
    "OpenWeatherClient",
    "RequestKind",
    "TTLCache",
    "fingerprint",
    "RateLimiter",
    "RefreshScheduler",
    "VisibilitySignal",
    "FileStorage",
    "MemoryStorage",
    "Settings",
    "CacheEntry",
    "CacheStats",
    "CityMatch",
    "FetchResult",
    "OpenWeatherError",
    "OpenWeatherAPIError",
    "OpenWeatherConnectionError",
    "OpenWeatherRateLimitError",
    "OpenWeatherValidationError",
    "OpenWeatherCacheError",
    "CacheCorruptionError",
    "StorageQuotaExceeded",
    "API_BASE_URL",
    "GEO_BASE_URL",
    "CACHE_PREFIX",
    "DEFAULT_TTL_SECONDS",
    "MAX_CALLS_PER_WINDOW",
    "RATE_WINDOW_SECONDS",
]
