"""Pydantic models for the OpenWeather acquisition layer.

Key model groups:
    1. **Cache**: CacheEntry (what is persisted) and CacheStats
    2. **Results**: FetchResult, returned by every acquire() call
    3. **Search**: CityMatch, a formatted geocoding hit
    4. **Error handling**: ErrorResponse, the API's error body

Note:
    Payloads are kept as raw upstream JSON. The layer works in the API's
    own units (metric) and leaves conversion to its consumers.

Example:
    Reading a result::

        result = await client.get_current("Paris")
        if result.came_from_cache:
            print(f"Served from cache, {result.age_seconds}s old")
        print(result.data["main"]["temp"])
"""

from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class CacheEntry(BaseModel):
    """A single cached upstream response.

    Entries are immutable: a refresh replaces the whole entry.

    Attributes:
        key: Request fingerprint (e.g., "current_Paris").
        payload: Raw JSON-serializable upstream response.
        written_at: Epoch seconds at which the entry was written.

    Example:
        >>> entry = CacheEntry(key="current_Paris", payload={}, written_at=0.0)
        >>> entry.age(30.9)
        30
    """

    model_config = ConfigDict(frozen=True)

    key: str
    payload: Any
    written_at: float = Field(allow_inf_nan=False)

    def age(self, now: float) -> int:
        """Whole seconds elapsed since the entry was written."""
        return max(0, int(now - self.written_at))

    def is_fresh(self, now: float, ttl: float) -> bool:
        """Whether the entry is younger than ``ttl`` seconds."""
        return now - self.written_at < ttl


class FetchResult(BaseModel):
    """Uniform result of a logical request.

    Returned the same way whether served from cache or network so that
    callers never branch on the source.

    Attributes:
        data: Raw upstream payload.
        came_from_cache: True if no network call was made.
        age_seconds: Age of the data in whole seconds (0 when fresh
            from the network).
    """

    data: Any
    came_from_cache: bool = False
    age_seconds: int = 0


class CacheStats(BaseModel):
    """Summary of the cache namespace.

    Attributes:
        total: Number of stored entries.
        fresh: Entries younger than the TTL.
        stale: Entries at or past the TTL.
        oldest_age: Age of the oldest entry in seconds (0 if empty).
        newest_age: Age of the newest entry in seconds (0 if empty).
    """

    total: int = 0
    fresh: int = 0
    stale: int = 0
    oldest_age: int = 0
    newest_age: int = 0


class CityMatch(BaseModel):
    """A city returned by the geocoding search.

    Attributes:
        name: City name.
        country: ISO country code.
        state: State or region, if the API reports one.
        lat: Latitude in decimal degrees.
        lon: Longitude in decimal degrees.
        display: Label for pickers, e.g. "Portland, Oregon, US".
    """

    model_config = ConfigDict(extra="ignore")

    name: str
    country: str = ""
    state: Optional[str] = None
    lat: float
    lon: float
    display: str = ""

    @classmethod
    def from_geocoding(cls, raw: dict[str, Any]) -> "CityMatch":
        """Build a match from one item of the /geo/1.0/direct response.

        Raises:
            ValidationError: If the item lacks a name or coordinates.
        """
        name = raw.get("name")
        state = raw.get("state")
        country = raw.get("country") or ""
        display = f"{name}, {state}, {country}" if state else f"{name}, {country}"
        return cls.model_validate(
            {
                "name": name,
                "country": country,
                "state": state,
                "lat": raw.get("lat"),
                "lon": raw.get("lon"),
                "display": display,
            }
        )


class ErrorResponse(BaseModel):
    """Error body returned by the API on a non-success response.

    Attributes:
        cod: Status code echoed by the API (string or int).
        message: Error description, surfaced verbatim.
    """

    model_config = ConfigDict(extra="ignore")

    cod: Optional[Union[int, str]] = None
    message: Optional[str] = None
