"""TTL cache for weather API responses.

Entries are stored as JSON strings in a durable key-value storage
backend (see openweather.storage), so the cache survives process
restarts when backed by FileStorage.

Freshness rules:
    - An entry is **fresh** while ``now - written_at < ttl``. Fresh
      entries are returned by get() and satisfy requests without any
      network call.
    - A **stale** entry stays in storage. get() reports it as absent,
      but peek() and age_seconds() still see it, so callers can show
      "last updated" information.
    - Entries are only removed by invalidate(), invalidate_all() or
      sweep_expired().

Fault handling:
    The cache never raises. Corrupt entries are deleted and reported as
    missing. A write that hits the storage quota triggers one sweep of
    expired entries and one retry, after which it is dropped.

Example:
    >>> from openweather.cache import TTLCache, fingerprint
    >>> from openweather.storage import MemoryStorage
    >>> from openweather.types import RequestKind
    >>> cache = TTLCache(MemoryStorage())
    >>> key = fingerprint(RequestKind.CURRENT, "Paris")
    >>> cache.put(key, {"main": {"temp": 18.2}})
    True
    >>> cache.get(key).payload["main"]["temp"]
    18.2
"""

import logging
import time
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError
from pydantic_core import PydanticSerializationError

from .exceptions import (
    CacheCorruptionError,
    OpenWeatherValidationError,
    StorageQuotaExceeded,
)
from .models import CacheEntry, CacheStats
from .storage import KeyValueStorage
from .types import CACHE_PREFIX, DEFAULT_TTL_SECONDS, RequestKind

logger = logging.getLogger(__name__)

Subject = Union[str, tuple[float, float]]


def _coord_pair(subject: Any) -> tuple[float, float]:
    """Coerce a coordinates subject into a (lat, lon) float pair.

    Raises:
        OpenWeatherValidationError: If the subject is not a pair of numbers.
    """
    try:
        lat, lon = subject
        return float(lat), float(lon)
    except (TypeError, ValueError) as e:
        raise OpenWeatherValidationError(
            f"Coordinates must be a (lat, lon) pair, got {subject!r}"
        ) from e


def fingerprint(kind: Union[RequestKind, str], subject: Subject) -> str:
    """Build the cache key for a logical request.

    Args:
        kind: Request kind.
        subject: City name, search query, or (lat, lon) pair.

    Returns:
        Deterministic key such as "current_Paris" or "coords_48.85_2.35".

    Raises:
        OpenWeatherValidationError: If the subject does not fit the kind.

    Example:
        >>> fingerprint(RequestKind.FORECAST, "  Paris ")
        'forecast_Paris'
        >>> fingerprint(RequestKind.COORDINATES, (48.85, 2.35))
        'coords_48.85_2.35'
    """
    kind = RequestKind(kind)
    if kind == RequestKind.COORDINATES:
        lat, lon = _coord_pair(subject)
        return f"{kind.value}_{lat}_{lon}"
    if not isinstance(subject, str) or not subject.strip():
        raise OpenWeatherValidationError(
            f"{kind.value} requests need a non-empty text subject, got {subject!r}"
        )
    return f"{kind.value}_{subject.strip()}"


class TTLCache:
    """Durable cache with time-based freshness.

    Args:
        storage: Key-value backend holding serialized entries.
        ttl: Freshness window in seconds. Defaults to 60.
        clock: Callable returning the current epoch time in seconds.
            Defaults to time.time; tests inject a fake clock.
        prefix: Namespace prefix for keys inside storage. Other keys in
            the same storage are ignored.

    Example:
        >>> cache = TTLCache(FileStorage(Path("~/.cache/openweather").expanduser()))
        >>> cache.put("current_Paris", payload)
        >>> cache.age_seconds("current_Paris")
        0
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        prefix: str = CACHE_PREFIX,
    ) -> None:
        self.storage = storage
        self.ttl = ttl
        self._clock = clock
        self._prefix = prefix

    def _storage_key(self, key: str) -> str:
        return self._prefix + key

    def _load(self, key: str) -> Optional[CacheEntry]:
        """Read and parse an entry.

        Returns:
            The entry, or None if nothing is stored under the key.

        Raises:
            CacheCorruptionError: If the stored value cannot be parsed.
        """
        raw = self.storage.get_item(self._storage_key(key))
        if raw is None:
            return None
        try:
            return CacheEntry.model_validate_json(raw)
        except ValidationError as e:
            raise CacheCorruptionError(f"Unparseable cache entry for {key}") from e

    def _load_or_discard(self, key: str) -> Optional[CacheEntry]:
        try:
            return self._load(key)
        except CacheCorruptionError as e:
            logger.warning(f"{e}; removing it")
            self.storage.remove_item(self._storage_key(key))
            return None

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the stored entry regardless of freshness."""
        return self._load_or_discard(key)

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the entry for ``key`` if it is fresh.

        Stale entries are reported as missing but left in storage.

        Args:
            key: Request fingerprint.

        Returns:
            The fresh entry, or None.
        """
        entry = self._load_or_discard(key)
        if entry is None:
            logger.debug(f"Cache MISS for {key}")
            return None
        now = self._clock()
        if not entry.is_fresh(now, self.ttl):
            logger.debug(f"Cache EXPIRED for {key} ({entry.age(now)}s old)")
            return None
        logger.debug(f"Cache HIT for {key} ({entry.age(now)}s old)")
        return entry

    def is_fresh(self, key: str) -> bool:
        return self.get(key) is not None

    def put(self, key: str, payload: Any) -> bool:
        """Store ``payload`` under ``key``, stamped with the current time.

        Overwrites unconditionally. On StorageQuotaExceeded, expired
        entries are swept and the write is retried once. Any remaining
        failure is logged and the write is dropped.

        Args:
            key: Request fingerprint.
            payload: JSON-serializable upstream response.

        Returns:
            True if the entry was written, False if it was dropped.
        """
        entry = CacheEntry(key=key, payload=payload, written_at=self._clock())
        try:
            raw = entry.model_dump_json()
        except PydanticSerializationError as e:
            logger.error(f"Cannot serialize payload for {key}: {e}")
            return False

        storage_key = self._storage_key(key)
        try:
            self.storage.set_item(storage_key, raw)
        except StorageQuotaExceeded as e:
            logger.warning(f"Storage full while saving {key} ({e}); sweeping")
            self.sweep_expired()
            try:
                self.storage.set_item(storage_key, raw)
            except (StorageQuotaExceeded, OSError) as retry_error:
                logger.error(f"Failed to save {key} after sweeping: {retry_error}")
                return False
        except OSError as e:
            logger.error(f"Failed to save {key}: {e}")
            return False

        logger.debug(f"Cache SAVED for {key}")
        return True

    def invalidate(self, key: str) -> None:
        self.storage.remove_item(self._storage_key(key))
        logger.debug(f"Cache CLEARED for {key}")

    def keys(self) -> list[str]:
        """Fingerprints currently held in this cache's namespace."""
        return [
            k[len(self._prefix):]
            for k in self.storage.keys()
            if k.startswith(self._prefix)
        ]

    def invalidate_all(self) -> int:
        """Remove every entry in the namespace.

        Returns:
            Number of entries removed.
        """
        keys = self.keys()
        for key in keys:
            self.storage.remove_item(self._storage_key(key))
        logger.info(f"Cleared {len(keys)} cache entries")
        return len(keys)

    def sweep_expired(self) -> int:
        """Remove stale and corrupt entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        removed = 0
        for key in self.keys():
            try:
                entry = self._load(key)
            except CacheCorruptionError:
                entry = None
            if entry is None or not entry.is_fresh(now, self.ttl):
                self.storage.remove_item(self._storage_key(key))
                removed += 1
        if removed:
            logger.info(f"Swept {removed} expired cache entries")
        return removed

    def age_seconds(self, key: str) -> Optional[int]:
        """Age of the stored entry in whole seconds, fresh or not.

        Returns:
            Seconds since the entry was written, or None if absent.
        """
        entry = self._load_or_discard(key)
        if entry is None:
            return None
        return entry.age(self._clock())

    def stats(self) -> CacheStats:
        """Count fresh and stale entries and report the age range."""
        now = self._clock()
        ages: list[int] = []
        fresh = 0
        for key in self.keys():
            entry = self._load_or_discard(key)
            if entry is None:
                continue
            ages.append(entry.age(now))
            if entry.is_fresh(now, self.ttl):
                fresh += 1

        if not ages:
            return CacheStats()
        return CacheStats(
            total=len(ages),
            fresh=fresh,
            stale=len(ages) - fresh,
            oldest_age=max(ages),
            newest_age=min(ages),
        )
