"""Async client for the OpenWeatherMap API.

This module provides OpenWeatherClient, the fetch orchestrator. For every
logical request it decides whether to serve from cache, refuse because
the call budget is spent, or call the network.

Request flow (acquire):
    1. Build the fingerprint from (kind, subject).
    2. Unless forced, a fresh cache entry is returned at once. No
       budget is spent and no network call is made.
    3. If the same fingerprint is already being fetched, wait for that
       call instead of issuing another one.
    4. Ask the rate limiter for a call. A refusal raises
       OpenWeatherRateLimitError; a stale entry is not used instead.
    5. Call the API. On success store the payload, unless a newer
       response for the fingerprint was already stored.
    6. On failure raise OpenWeatherAPIError or OpenWeatherConnectionError
       and leave the cache alone.

No request is ever retried automatically; the caller (or the refresh
scheduler's next tick) decides when to try again.

Example:
    Fetch current weather and forecast::

        import asyncio
        from openweather import OpenWeatherClient

        async def main():
            async with OpenWeatherClient(api_key="...") as client:
                current = await client.get_current("Paris")
                print(current.data["main"]["temp"], current.came_from_cache)

                forecast = await client.get_forecast("Paris")
                print(len(forecast.data["list"]))

        asyncio.run(main())
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

import httpx
from pydantic import ValidationError

from .cache import Subject, TTLCache, _coord_pair, fingerprint
from .config import Settings
from .exceptions import (
    OpenWeatherAPIError,
    OpenWeatherConnectionError,
    OpenWeatherRateLimitError,
    OpenWeatherValidationError,
)
from .models import CacheStats, CityMatch, ErrorResponse, FetchResult
from .ratelimit import RateLimiter
from .storage import FileStorage
from .types import (
    API_BASE_URL,
    DEFAULT_TIMEOUT,
    DEFAULT_TTL_SECONDS,
    DEFAULT_UNITS,
    GEO_BASE_URL,
    MIN_SEARCH_QUERY_LENGTH,
    SEARCH_RESULT_LIMIT,
    RequestKind,
)

logger = logging.getLogger(__name__)

DEFAULT_ERROR_REASON = "Failed to fetch weather data"
NETWORK_ERROR_MESSAGE = "Network error. Please check your connection."
MALFORMED_RESPONSE_MESSAGE = "Malformed response from weather API"

RefreshOutcome = Union[FetchResult, BaseException]


class OpenWeatherClient:
    """Async, cache-first client for OpenWeatherMap.

    The cache and the rate limiter are plain objects passed in (or built
    once here) and shared by reference, so several clients or a
    scheduler can share one budget.

    Args:
        api_key: OpenWeatherMap key, sent as ``appid``.
        base_url: Base URL for /weather and /forecast.
        geo_url: Base URL for /direct geocoding.
        cache: TTLCache to use. Defaults to a file-backed cache in
            ``cache_dir``.
        rate_limiter: Shared RateLimiter. Defaults to a new one with
            50 calls per 60 seconds.
        cache_dir: Directory for the default cache. Defaults to
            ~/.cache/openweather.
        ttl: Freshness window in seconds for the default cache.
        timeout: HTTP request timeout in seconds. Defaults to 30.0.
        coalesce: Share one network call between concurrent requests
            for the same fingerprint. Defaults to True.
        clock: Callable returning epoch seconds, used by the default
            cache and limiter and for result ages.
        transport: Optional httpx transport (e.g., httpx.MockTransport).

    Attributes:
        _client: Lazy-initialized httpx.AsyncClient.
        _in_flight: Fingerprint to the task currently fetching it.
        _issued: Last sequence number issued per fingerprint.
        _accepted: Sequence number of the last stored response.

    Example:
        Sharing a budget with a custom cache::

            limiter = RateLimiter(max_calls=50, window=60)
            cache = TTLCache(FileStorage(Path("./cache")))
            async with OpenWeatherClient(
                api_key="...", cache=cache, rate_limiter=limiter
            ) as client:
                result = await client.acquire(RequestKind.CURRENT, "Tokyo")
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        base_url: str = API_BASE_URL,
        geo_url: str = GEO_BASE_URL,
        cache: Optional[TTLCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        cache_dir: Optional[Path] = None,
        ttl: float = DEFAULT_TTL_SECONDS,
        timeout: float = DEFAULT_TIMEOUT,
        coalesce: bool = True,
        clock: Callable[[], float] = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._geo_url = geo_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport
        self._coalesce = coalesce
        self._clock = clock
        self._client: Optional[httpx.AsyncClient] = None

        if cache is None:
            if cache_dir is None:
                cache_dir = Path.home() / ".cache" / "openweather"
            cache = TTLCache(FileStorage(cache_dir), ttl=ttl, clock=clock)
        self._cache = cache
        self._rate_limiter = rate_limiter or RateLimiter(clock=clock)

        self._in_flight: dict[str, "asyncio.Task[FetchResult]"] = {}
        self._issued: dict[str, int] = {}
        self._accepted: dict[str, int] = {}
        self._outstanding: dict[str, int] = {}

    @classmethod
    def from_settings(
        cls, settings: Optional[Settings] = None, **kwargs: Any
    ) -> "OpenWeatherClient":
        """Build a client from Settings (environment by default).

        Keyword arguments override the corresponding settings.

        Example:
            >>> client = OpenWeatherClient.from_settings(coalesce=False)
        """
        if settings is None:
            settings = Settings.from_env()
        clock = kwargs.get("clock", time.time)
        options: dict[str, Any] = {
            "api_key": settings.api_key,
            "base_url": settings.api_url,
            "geo_url": settings.geo_url,
            "cache_dir": settings.cache_dir,
            "ttl": settings.cache_ttl,
            "timeout": settings.timeout,
        }
        if "rate_limiter" not in kwargs:
            options["rate_limiter"] = RateLimiter(
                settings.max_calls, settings.rate_window, clock=clock
            )
        options.update(kwargs)
        return cls(**options)

    async def __aenter__(self) -> "OpenWeatherClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Create the httpx.AsyncClient on first use."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client. Safe to call multiple times.

        In-flight requests are not cancelled.
        """
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def cache(self) -> TTLCache:
        return self._cache

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    def _coerce_kind(self, kind: Union[RequestKind, str]) -> RequestKind:
        try:
            return RequestKind(kind)
        except ValueError as e:
            raise OpenWeatherValidationError(f"Unknown request kind: {kind!r}") from e

    def _validate_coordinates(self, latitude: float, longitude: float) -> None:
        """Validate geographic coordinates.

        Raises:
            OpenWeatherValidationError: If latitude not in [-90, 90] or
                longitude not in [-180, 180].
        """
        if not -90.0 <= latitude <= 90.0:
            raise OpenWeatherValidationError(
                f"Latitude must be in range [-90.0, 90.0], got {latitude}"
            )
        if not -180.0 <= longitude <= 180.0:
            raise OpenWeatherValidationError(
                f"Longitude must be in range [-180.0, 180.0], got {longitude}"
            )

    def _build_request(
        self, kind: RequestKind, subject: Subject
    ) -> tuple[str, dict[str, Any]]:
        """Endpoint URL and normalized query parameters for a request."""
        if kind == RequestKind.SEARCH:
            url = f"{self._geo_url}/direct"
            params: dict[str, Any] = {
                "q": str(subject).strip(),
                "limit": SEARCH_RESULT_LIMIT,
            }
        elif kind == RequestKind.COORDINATES:
            lat, lon = _coord_pair(subject)
            url = f"{self._base_url}/weather"
            params = {"lat": lat, "lon": lon, "units": DEFAULT_UNITS}
        else:
            endpoint = "weather" if kind == RequestKind.CURRENT else "forecast"
            url = f"{self._base_url}/{endpoint}"
            params = {"q": str(subject).strip(), "units": DEFAULT_UNITS}

        if self._api_key:
            params["appid"] = self._api_key
        return url, params

    def _error_reason(self, response: httpx.Response) -> str:
        try:
            error = ErrorResponse.model_validate(response.json())
        except ValueError:
            return DEFAULT_ERROR_REASON
        return error.message or DEFAULT_ERROR_REASON

    async def _fetch(self, url: str, params: dict[str, Any]) -> Any:
        """Fetch JSON from the API.

        Args:
            url: API URL to fetch from.
            params: Query parameters.

        Returns:
            Parsed JSON response.

        Raises:
            OpenWeatherConnectionError: If no response was received.
            OpenWeatherAPIError: If the API returned a non-success status
                or an unparseable body.
        """
        client = await self._ensure_client()

        try:
            response = await client.get(url, params=params)
        except httpx.RequestError as e:
            logger.warning(f"Request to {url} failed: {e!r}")
            raise OpenWeatherConnectionError(NETWORK_ERROR_MESSAGE) from e

        if response.is_error:
            reason = self._error_reason(response)
            logger.warning(f"API error {response.status_code} from {url}: {reason}")
            raise OpenWeatherAPIError(reason, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as e:
            raise OpenWeatherAPIError(
                MALFORMED_RESPONSE_MESSAGE,
                status_code=response.status_code,
            ) from e

    async def _fetch_and_store(
        self, kind: RequestKind, subject: Subject, key: str
    ) -> FetchResult:
        seq = self._issued.get(key, 0) + 1
        self._issued[key] = seq
        self._outstanding[key] = self._outstanding.get(key, 0) + 1

        try:
            url, params = self._build_request(kind, subject)
            logger.debug(f"Fetching {key} from API (request #{seq})")
            data = await self._fetch(url, params)

            if seq < self._accepted.get(key, 0):
                logger.debug(f"Discarding out-of-order response #{seq} for {key}")
            else:
                self._accepted[key] = seq
                self._cache.put(key, data)
        finally:
            self._release_sequence(key)

        return FetchResult(data=data, came_from_cache=False, age_seconds=0)

    def _release_sequence(self, key: str) -> None:
        """Drop the ordering state of a key once no request for it is pending."""
        self._outstanding[key] -= 1
        if self._outstanding[key] == 0:
            del self._outstanding[key]
            self._issued.pop(key, None)
            self._accepted.pop(key, None)

    def _forget_in_flight(self, key: str, task: "asyncio.Task[FetchResult]") -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled():
            # Mark the exception retrieved; waiters already received it.
            task.exception()

    async def acquire(
        self,
        kind: Union[RequestKind, str],
        subject: Subject,
        force_refresh: bool = False,
    ) -> FetchResult:
        """Resolve a logical request from cache or network.

        Args:
            kind: Request kind (current, forecast, search, coords).
            subject: City name, search query, or (lat, lon) pair.
            force_refresh: Skip the freshness check and always go to the
                network, subject to the rate limiter.

        Returns:
            FetchResult with the payload, its source and its age.

        Raises:
            OpenWeatherValidationError: If kind or subject is invalid.
            OpenWeatherRateLimitError: If the call budget is exhausted.
            OpenWeatherAPIError: If the API returned an error.
            OpenWeatherConnectionError: If the API could not be reached.

        Example:
            >>> result = await client.acquire("current", "London")
            >>> result.came_from_cache, result.age_seconds
            (True, 30)
        """
        kind = self._coerce_kind(kind)
        key = fingerprint(kind, subject)
        if kind == RequestKind.COORDINATES:
            self._validate_coordinates(*_coord_pair(subject))

        if not force_refresh:
            entry = self._cache.get(key)
            if entry is not None:
                return FetchResult(
                    data=entry.payload,
                    came_from_cache=True,
                    age_seconds=entry.age(self._clock()),
                )

        if self._coalesce and key in self._in_flight:
            logger.debug(f"Joining in-flight request for {key}")
            return await asyncio.shield(self._in_flight[key])

        if not self._rate_limiter.admit():
            raise OpenWeatherRateLimitError(self._rate_limiter.retry_after())

        if not self._coalesce:
            return await self._fetch_and_store(kind, subject, key)

        task = asyncio.ensure_future(self._fetch_and_store(kind, subject, key))
        self._in_flight[key] = task
        task.add_done_callback(lambda t: self._forget_in_flight(key, t))
        return await asyncio.shield(task)

    async def get_current(self, city: str, force_refresh: bool = False) -> FetchResult:
        """Current weather for a city name."""
        return await self.acquire(RequestKind.CURRENT, city, force_refresh)

    async def get_forecast(self, city: str, force_refresh: bool = False) -> FetchResult:
        """5-day / 3-hour forecast for a city name."""
        return await self.acquire(RequestKind.FORECAST, city, force_refresh)

    async def get_by_coordinates(
        self, latitude: float, longitude: float, force_refresh: bool = False
    ) -> FetchResult:
        """Current weather for a coordinate pair."""
        return await self.acquire(
            RequestKind.COORDINATES, (latitude, longitude), force_refresh
        )

    async def search_cities(self, query: str) -> list[CityMatch]:
        """Search cities by name prefix, for search-as-you-type.

        Queries shorter than two characters return an empty list without
        touching the cache, the budget or the network.

        Args:
            query: Free-text city name prefix.

        Returns:
            Up to five matches, formatted for display.

        Raises:
            OpenWeatherRateLimitError: If the call budget is exhausted.
            OpenWeatherAPIError: If the API returned an error.
            OpenWeatherConnectionError: If the API could not be reached.

        Example:
            >>> matches = await client.search_cities("Portl")
            >>> [m.display for m in matches]
            ['Portland, Oregon, US', 'Portland, Maine, US', ...]
        """
        if not query or len(query.strip()) < MIN_SEARCH_QUERY_LENGTH:
            return []
        result = await self.acquire(RequestKind.SEARCH, query)
        items = result.data or []
        if not isinstance(items, list):
            raise OpenWeatherAPIError(MALFORMED_RESPONSE_MESSAGE)

        matches = []
        for item in items:
            if not isinstance(item, dict):
                logger.warning(f"Skipping malformed search result: {item!r}")
                continue
            try:
                matches.append(CityMatch.from_geocoding(item))
            except ValidationError:
                logger.warning(f"Skipping malformed search result: {item!r}")
        return matches

    async def refresh(
        self,
        subjects: Union[Iterable[Subject], Callable[[], Iterable[Subject]]],
        kinds: Iterable[Union[RequestKind, str]] = (
            RequestKind.CURRENT,
            RequestKind.FORECAST,
        ),
        force_refresh: bool = True,
    ) -> dict[tuple[RequestKind, Subject], RefreshOutcome]:
        """Re-acquire every (kind, subject) combination concurrently.

        Meant as the scheduler callback for the cities currently on
        screen. Individual failures are returned, not raised.

        Args:
            subjects: Subjects to refresh, or a callable enumerating them
                at refresh time.
            kinds: Request kinds to fetch for each subject.
            force_refresh: Passed to acquire(). Defaults to True.

        Returns:
            Mapping of (kind, subject) to a FetchResult or the exception
            that request raised.
        """
        if callable(subjects):
            subjects = subjects()
        kinds = [self._coerce_kind(k) for k in kinds]
        pairs = [(kind, subject) for subject in subjects for kind in kinds]

        outcomes = await asyncio.gather(
            *(self.acquire(kind, subject, force_refresh) for kind, subject in pairs),
            return_exceptions=True,
        )

        results: dict[tuple[RequestKind, Subject], RefreshOutcome] = {}
        for pair, outcome in zip(pairs, outcomes):
            if isinstance(outcome, Exception):
                logger.warning(f"Refresh of {pair[0].value} {pair[1]!r} failed: {outcome}")
            results[pair] = outcome
        return results

    def cache_age_seconds(
        self, kind: Union[RequestKind, str], subject: Subject
    ) -> Optional[int]:
        """Age of the cached payload for a request, fresh or stale.

        Returns:
            Whole seconds since the payload was stored, or None.
        """
        return self._cache.age_seconds(fingerprint(self._coerce_kind(kind), subject))

    def invalidate(self, kind: Union[RequestKind, str], subject: Subject) -> None:
        self._cache.invalidate(fingerprint(self._coerce_kind(kind), subject))

    def clear_all(self) -> int:
        """Remove every cached payload.

        Returns:
            Number of entries removed.
        """
        return self._cache.invalidate_all()

    def sweep_expired(self) -> int:
        return self._cache.sweep_expired()

    def stats(self) -> CacheStats:
        return self._cache.stats()
