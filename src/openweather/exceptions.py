"""Exceptions for the OpenWeather acquisition layer.

All exceptions inherit from OpenWeatherError. Only three of them cross
the client boundary during a fetch: OpenWeatherRateLimitError,
OpenWeatherAPIError and OpenWeatherConnectionError. Input problems are
reported with OpenWeatherValidationError before any work is done.
Cache faults (OpenWeatherCacheError and its subclasses) are raised by
storage backends and absorbed inside the cache.

Example:
    Telling "please wait" apart from "failed"::

        from openweather import (
            OpenWeatherAPIError,
            OpenWeatherConnectionError,
            OpenWeatherRateLimitError,
        )

        try:
            result = await client.get_current("Paris")
        except OpenWeatherRateLimitError as e:
            print(f"Please wait {e.retry_after:.0f}s")
        except OpenWeatherAPIError as e:
            print(f"API said: {e.reason}")
        except OpenWeatherConnectionError:
            print("Offline?")
"""

from typing import Optional


class OpenWeatherError(Exception):
    """Base exception for all OpenWeather errors.

    Example:
        >>> try:
        ...     await client.get_current("Paris")
        ... except OpenWeatherError as e:
        ...     print(f"Weather fetch failed: {e}")
    """

    pass


class OpenWeatherAPIError(OpenWeatherError):
    """Exception raised when the API answers with a non-success response.

    The message returned by the API is kept verbatim in ``reason``.

    Args:
        reason: The error message returned by the API.
        status_code: HTTP status code of the response, if known.

    Attributes:
        reason: Human-readable error message from the API.
        status_code: HTTP status code, or None.

    Example:
        >>> raise OpenWeatherAPIError("city not found", status_code=404)
        OpenWeatherAPIError: API error: city not found
    """

    def __init__(self, reason: str, status_code: Optional[int] = None) -> None:
        self.reason = reason
        self.status_code = status_code
        super().__init__(f"API error: {reason}")


class OpenWeatherConnectionError(OpenWeatherError):
    """Exception raised when no response reached the client.

    Covers offline networks, DNS failures and timeouts. Wraps the
    underlying httpx exception.
    """

    pass


class OpenWeatherRateLimitError(OpenWeatherError):
    """Exception raised when the call budget for the window is exhausted.

    Recoverable by waiting. Never retried automatically.

    Args:
        retry_after: Seconds until the current window ends.

    Attributes:
        retry_after: Seconds until a call may be admitted again.

    Example:
        >>> err = OpenWeatherRateLimitError(12.5)
        >>> err.retry_after
        12.5
    """

    def __init__(self, retry_after: float = 0.0) -> None:
        self.retry_after = retry_after
        super().__init__("Rate limit exceeded. Please wait a moment.")


class OpenWeatherValidationError(OpenWeatherError):
    """Exception raised when a request subject is invalid.

    This occurs for empty city names or queries, malformed coordinate
    pairs, or coordinates out of range.
    """

    pass


class OpenWeatherCacheError(OpenWeatherError):
    """Base exception for cache and storage faults.

    Never propagates out of TTLCache.
    """

    pass


class CacheCorruptionError(OpenWeatherCacheError):
    """A stored cache entry could not be parsed."""

    pass


class StorageQuotaExceeded(OpenWeatherCacheError):
    """A storage backend refused a write because it is full.

    Raised by storage backends; TTLCache reacts with one eviction sweep
    and a single retry.
    """

    pass
