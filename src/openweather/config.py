"""Environment-based settings for the OpenWeather client.

All environment variables are read in one place. Constructor keywords
of OpenWeatherClient still take precedence; Settings only supplies
defaults through OpenWeatherClient.from_settings().

Environment variables:
    - ``OPENWEATHER_API_KEY``: API key sent as the ``appid`` parameter.
    - ``OPENWEATHER_API_URL``: Base URL for weather and forecast.
    - ``OPENWEATHER_GEO_URL``: Base URL for geocoding.
    - ``OPENWEATHER_CACHE_DIR``: Directory for the durable cache.
    - ``OPENWEATHER_CACHE_TTL``: Cache freshness window in seconds.
    - ``OPENWEATHER_MAX_CALLS``: Calls admitted per rate-limit window.
    - ``OPENWEATHER_RATE_WINDOW``: Rate-limit window in seconds.
    - ``OPENWEATHER_TIMEOUT``: HTTP timeout in seconds.

Example:
    >>> settings = Settings.from_env()
    >>> async with OpenWeatherClient.from_settings(settings) as client:
    ...     result = await client.get_current("Paris")
"""

import os
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .types import (
    API_BASE_URL,
    DEFAULT_TIMEOUT,
    DEFAULT_TTL_SECONDS,
    GEO_BASE_URL,
    MAX_CALLS_PER_WINDOW,
    RATE_WINDOW_SECONDS,
)


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "openweather"


class Settings(BaseModel):
    """Client settings.

    Attributes:
        api_key: OpenWeatherMap API key, or None.
        api_url: Base URL for /weather and /forecast.
        geo_url: Base URL for /direct geocoding.
        cache_dir: Directory for the file-backed cache.
        cache_ttl: Freshness window in seconds.
        max_calls: Calls admitted per window.
        rate_window: Window length in seconds.
        timeout: HTTP timeout in seconds.
    """

    api_key: Optional[str] = None
    api_url: str = API_BASE_URL
    geo_url: str = GEO_BASE_URL
    cache_dir: Path = Field(default_factory=_default_cache_dir)
    cache_ttl: float = Field(default=DEFAULT_TTL_SECONDS, gt=0)
    max_calls: int = Field(default=MAX_CALLS_PER_WINDOW, gt=0)
    rate_window: float = Field(default=RATE_WINDOW_SECONDS, gt=0)
    timeout: float = Field(default=DEFAULT_TIMEOUT, gt=0)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """Load settings from environment variables.

        Unset variables fall back to the package defaults. Values are
        validated by pydantic, so a malformed number raises
        pydantic.ValidationError.

        Args:
            environ: Mapping to read instead of os.environ.
        """
        env = os.environ if environ is None else environ
        mapping = {
            "api_key": "OPENWEATHER_API_KEY",
            "api_url": "OPENWEATHER_API_URL",
            "geo_url": "OPENWEATHER_GEO_URL",
            "cache_dir": "OPENWEATHER_CACHE_DIR",
            "cache_ttl": "OPENWEATHER_CACHE_TTL",
            "max_calls": "OPENWEATHER_MAX_CALLS",
            "rate_window": "OPENWEATHER_RATE_WINDOW",
            "timeout": "OPENWEATHER_TIMEOUT",
        }
        values = {field: env[var] for field, var in mapping.items() if env.get(var)}
        if "cache_dir" in values:
            values["cache_dir"] = Path(values["cache_dir"]).expanduser()
        return cls(**values)
