"""Durable key-value storage backends for the cache.

Backends map string keys to string values and signal a full store with
StorageQuotaExceeded. They know nothing about TTLs or JSON structure;
that lives in openweather.cache.

1. **FileStorage**: One file per key under a directory. Survives
   process restarts. Optional byte quota.
2. **MemoryStorage**: Process-local dict with optional item and byte
   quotas. Useful for tests and short-lived processes.

Cache file naming:
    Keys are percent-encoded into filenames so any city name or query
    is safe (e.g., "weather_cache_current_S%C3%A3o%20Paulo.json").
"""

import errno
import logging
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote, unquote

from .exceptions import StorageQuotaExceeded

logger = logging.getLogger(__name__)

_SUFFIX = ".json"
_FULL_ERRNOS = (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))


class KeyValueStorage(Protocol):
    """Interface every storage backend implements."""

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStorage:
    """In-memory storage with optional quotas.

    Args:
        max_items: Maximum number of keys, or None for unlimited.
        max_bytes: Maximum total size of stored values in bytes (UTF-8),
            or None for unlimited.

    Example:
        >>> storage = MemoryStorage(max_items=2)
        >>> storage.set_item("a", "1")
        >>> storage.get_item("a")
        '1'
    """

    def __init__(
        self, max_items: Optional[int] = None, max_bytes: Optional[int] = None
    ) -> None:
        self.max_items = max_items
        self.max_bytes = max_bytes
        self._data: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        is_new = key not in self._data
        if self.max_items is not None and is_new and len(self._data) >= self.max_items:
            raise StorageQuotaExceeded(f"Item quota of {self.max_items} reached")
        if self.max_bytes is not None:
            used = sum(
                len(v.encode("utf-8")) for k, v in self._data.items() if k != key
            )
            if used + len(value.encode("utf-8")) > self.max_bytes:
                raise StorageQuotaExceeded(f"Byte quota of {self.max_bytes} reached")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class FileStorage:
    """File-based storage, one file per key.

    Cache structure::

        cache_dir/
        ├── weather_cache_current_Paris.json
        ├── weather_cache_forecast_Paris.json
        └── weather_cache_coords_48.85_2.35.json

    Args:
        cache_dir: Directory to store files in. Created if not exists.
        max_bytes: Optional quota on the total size of all files. Writes
            that would exceed it raise StorageQuotaExceeded. A full disk
            (ENOSPC / EDQUOT) is reported the same way.

    Example:
        >>> from pathlib import Path
        >>> storage = FileStorage(Path.home() / ".cache" / "openweather")
        >>> storage.set_item("weather_cache_current_Paris", "{...}")
    """

    def __init__(self, cache_dir: Path, max_bytes: Optional[int] = None) -> None:
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.max_bytes = max_bytes

    def _path(self, key: str) -> Path:
        return self.cache_dir / f"{quote(key, safe='')}{_SUFFIX}"

    def _used_bytes(self, exclude: Path) -> int:
        return sum(
            f.stat().st_size
            for f in self.cache_dir.glob(f"*{_SUFFIX}")
            if f != exclude
        )

    def get_item(self, key: str) -> Optional[str]:
        path = self._path(key)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            # Unreadable counts as corrupt; the cache deletes it.
            logger.warning(f"Failed to read {path}: {e}")
            return ""

    def set_item(self, key: str, value: str) -> None:
        path = self._path(key)
        encoded = value.encode("utf-8")
        if self.max_bytes is not None:
            if self._used_bytes(path) + len(encoded) > self.max_bytes:
                raise StorageQuotaExceeded(f"Byte quota of {self.max_bytes} reached")

        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_bytes(encoded)
            tmp.replace(path)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            if e.errno in _FULL_ERRNOS:
                raise StorageQuotaExceeded(str(e)) from e
            raise

    def remove_item(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)

    def keys(self) -> list[str]:
        return [
            unquote(f.name[: -len(_SUFFIX)])
            for f in self.cache_dir.glob(f"*{_SUFFIX}")
        ]
