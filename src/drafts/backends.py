from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, List, Optional

from .errors import QuotaExceededError, StorageBackendError, StorageSecurityError


DEFAULT_MAX_BYTES = 5 * 1024 * 1024

logger = logging.getLogger(__name__)


def _entry_size(key: str, value: str) -> int:
    return len(key) + len(value)


class KeyValueBackend:
    """
    Synchronous string key/value primitive (the browser's localStorage shape).

    Implementations raise `QuotaExceededError` when a write would exceed the
    byte budget and `StorageSecurityError` when access is blocked.
    """

    max_bytes: int = DEFAULT_MAX_BYTES

    def get_item(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    def remove_item(self, key: str) -> None:
        raise NotImplementedError

    def keys(self) -> List[str]:
        raise NotImplementedError

    def bytes_used(self) -> int:
        total = 0
        for key in self.keys():
            value = self.get_item(key)
            if value is not None:
                total += _entry_size(key, value)
        return total


class MemoryBackend(KeyValueBackend):
    """
    In-process backend with a byte budget.

    - `blocked=True` simulates a host that denies storage access entirely:
      every operation raises `StorageSecurityError`.
    - Insertion order of keys is preserved for deterministic enumeration.
    """

    def __init__(self, *, max_bytes: int = DEFAULT_MAX_BYTES, blocked: bool = False) -> None:
        self.max_bytes = max_bytes
        self.blocked = blocked
        self._data: Dict[str, str] = {}

    def _check_access(self) -> None:
        if self.blocked:
            raise StorageSecurityError("storage access denied by host")

    def get_item(self, key: str) -> Optional[str]:
        self._check_access()
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._check_access()
        previous = self._data.get(key)
        used = self.bytes_used()
        if previous is not None:
            used -= _entry_size(key, previous)
        if used + _entry_size(key, value) > self.max_bytes:
            raise QuotaExceededError(f"setting '{key}' exceeded the quota")
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._check_access()
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        self._check_access()
        return list(self._data)

    def bytes_used(self) -> int:
        return sum(_entry_size(k, v) for k, v in self._data.items())


class JsonFileBackend(KeyValueBackend):
    """
    Backend persisted as a single JSON object `{key: serialized value}`.

    - Loaded lazily on first access; a corrupt or non-object file is ignored
      and storage starts fresh.
    - Every mutation rewrites the file (small, human-inspectable store).
    - `PermissionError` from the filesystem is reported as
      `StorageSecurityError`; other `OSError`s as `StorageBackendError`.
    """

    def __init__(self, path: os.PathLike[str] | str, *, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self._path = Path(path)
        self.max_bytes = max_bytes
        self._data: Dict[str, str] = {}
        self._loaded = False

    @property
    def path(self) -> Path:
        return self._path

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        try:
            if self._path.exists():
                with self._path.open("r", encoding="utf-8") as f:
                    raw = json.load(f)
                if isinstance(raw, dict):
                    self._data = {str(k): v for k, v in raw.items() if isinstance(v, str)}
        except PermissionError as exc:
            raise StorageSecurityError(f"cannot read {self._path}") from exc
        except (OSError, ValueError):
            # Corrupt store: ignore and start fresh
            logger.warning("ignoring unreadable draft store at %s", self._path)
            self._data = {}
        self._loaded = True

    def _save(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, sort_keys=True)
            tmp.replace(self._path)
        except PermissionError as exc:
            raise StorageSecurityError(f"cannot write {self._path}") from exc
        except OSError as exc:
            raise StorageBackendError(f"failed to write {self._path}: {exc}") from exc

    def get_item(self, key: str) -> Optional[str]:
        self._ensure_loaded()
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._ensure_loaded()
        previous = self._data.get(key)
        used = self.bytes_used()
        if previous is not None:
            used -= _entry_size(key, previous)
        if used + _entry_size(key, value) > self.max_bytes:
            raise QuotaExceededError(f"setting '{key}' exceeded the quota")
        self._data[key] = value
        try:
            self._save()
        except StorageBackendError:
            # Keep memory and disk consistent
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def remove_item(self, key: str) -> None:
        self._ensure_loaded()
        if key in self._data:
            del self._data[key]
            self._save()

    def keys(self) -> List[str]:
        self._ensure_loaded()
        return list(self._data)

    def bytes_used(self) -> int:
        self._ensure_loaded()
        return sum(_entry_size(k, v) for k, v in self._data.items())
