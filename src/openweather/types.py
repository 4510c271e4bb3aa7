"""Types and constants for the OpenWeather acquisition layer.

This module defines the request kinds understood by the fetch
orchestrator and the configuration constants shared by the cache,
the rate limiter and the client.

Example:
    Using RequestKind::

        from openweather import OpenWeatherClient, RequestKind

        async with OpenWeatherClient(api_key="...") as client:
            result = await client.acquire(RequestKind.CURRENT, "Paris")
            forecast = await client.acquire(RequestKind.FORECAST, "Paris")
"""

from enum import Enum


class RequestKind(str, Enum):
    """Kind of logical weather request.

    The kind selects the upstream endpoint and is the first component
    of the cache fingerprint.

    Attributes:
        CURRENT: Current conditions for a city name.
        FORECAST: 5-day / 3-hour forecast for a city name.
        SEARCH: City search by free-text prefix (geocoding).
        COORDINATES: Current conditions for a (lat, lon) pair.

    Example:
        >>> from openweather.types import RequestKind
        >>> RequestKind.CURRENT.value
        'current'
        >>> RequestKind("coords")
        <RequestKind.COORDINATES: 'coords'>
    """

    CURRENT = "current"
    FORECAST = "forecast"
    SEARCH = "search"
    COORDINATES = "coords"


API_BASE_URL = "https://api.openweathermap.org/data/2.5"
"""str: Base URL for the current weather and forecast endpoints."""

GEO_BASE_URL = "https://api.openweathermap.org/geo/1.0"
"""str: Base URL for the geocoding (city search) endpoint."""

DEFAULT_UNITS = "metric"
"""str: Units requested from the API. Conversion is left to consumers."""

DEFAULT_TTL_SECONDS = 60
"""int: Cache time-to-live in seconds.

An entry younger than this is served without consulting the rate
limiter or the network.
"""

MAX_CALLS_PER_WINDOW = 50
"""int: Maximum outbound calls admitted per rate-limit window."""

RATE_WINDOW_SECONDS = 60
"""int: Length of the fixed rate-limit window in seconds."""

SEARCH_RESULT_LIMIT = 5
"""int: Number of geocoding matches requested per search."""

MIN_SEARCH_QUERY_LENGTH = 2
"""int: Queries shorter than this never reach the cache or the network."""

CACHE_PREFIX = "weather_cache_"
"""str: Namespace prefix for cache entries inside shared storage."""

DEFAULT_TIMEOUT = 30.0
"""float: HTTP request timeout in seconds."""
