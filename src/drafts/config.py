from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from .backends import DEFAULT_MAX_BYTES


# Environment variable names for convenience configuration
ENV_NAMESPACE = "DRAFT_STORAGE_NAMESPACE"
ENV_MAX_BYTES = "DRAFT_STORAGE_MAX_BYTES"
ENV_RETENTION_HOURS = "DRAFT_STORAGE_RETENTION_HOURS"
ENV_DEBOUNCE_MS = "DRAFT_STORAGE_DEBOUNCE_MS"
ENV_MODE = "DRAFT_STORAGE_MODE"
ENV_BACKUP = "DRAFT_STORAGE_BACKUP"
ENV_PATH = "DRAFT_STORAGE_PATH"

DEFAULT_NAMESPACE = "eventForm"
BACKUP_KEY = "formDataBackup"

# Keys the wizard wrote snapshots under before per-section keys existed.
LEGACY_DRAFT_KEYS: Tuple[str, ...] = (
    "eventProposalFormData",
    "formData",
    "submitEventFormData",
    "eventFormData",
    "proposalFormData",
    "cedoFormData",
    BACKUP_KEY,
)


class PersistenceMode(str, Enum):
    DISABLED = "disabled"  # never persist; wizard lives in memory only
    MANUAL_ONLY = "manual_only"  # only explicit save_now() writes
    AUTO_SAVE_NO_DIALOG = "auto_save_no_dialog"
    FULL_PERSISTENCE = "full_persistence"


def _getenv(name: str, default: Optional[str] = None) -> Optional[str]:
    val = os.environ.get(name)
    return val if val not in (None, "") else default


def _int_env(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _bool_env(name: str, default: bool) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class DraftStorageConfig:
    """
    Tunables for the draft persistence engine.

    Sizes are in characters of `key + serialized value`, matching how the
    host's byte budget is measured. Durations are in seconds.
    """

    namespace: str = DEFAULT_NAMESPACE
    max_bytes: int = DEFAULT_MAX_BYTES
    max_item_bytes: int = 1024 * 1024
    compression_threshold: int = 100_000
    retention_seconds: float = 24 * 60 * 60
    form_ttl_seconds: Optional[float] = 7 * 24 * 60 * 60
    debounce_seconds: float = 0.5
    safe_start_threshold: int = 2
    degraded_after_failures: int = 2
    cleanup_prefixes: Tuple[str, ...] = (
        f"{DEFAULT_NAMESPACE}:",
        "file_",
        "form-",
        "draft-",
        "backup-",
        "temp_",
        "cache_",
    )
    legacy_keys: Tuple[str, ...] = LEGACY_DRAFT_KEYS
    mode: PersistenceMode = PersistenceMode.AUTO_SAVE_NO_DIALOG
    backup_enabled: bool = True
    storage_path: Optional[str] = None

    @property
    def persistence_enabled(self) -> bool:
        return self.mode is not PersistenceMode.DISABLED

    @property
    def auto_save_enabled(self) -> bool:
        return self.mode in (PersistenceMode.AUTO_SAVE_NO_DIALOG, PersistenceMode.FULL_PERSISTENCE)

    @property
    def offers_restore_dialog(self) -> bool:
        return self.mode is PersistenceMode.FULL_PERSISTENCE

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "DraftStorageConfig":
        namespace = _getenv(ENV_NAMESPACE, DEFAULT_NAMESPACE) or DEFAULT_NAMESPACE
        raw_mode = _getenv(ENV_MODE, PersistenceMode.AUTO_SAVE_NO_DIALOG.value)
        try:
            mode = PersistenceMode(raw_mode)
        except ValueError as exc:
            allowed = ", ".join(m.value for m in PersistenceMode)
            raise RuntimeError(f"{ENV_MODE} must be one of: {allowed}") from exc

        defaults = cls()
        prefixes = (f"{namespace}:",) + tuple(
            p for p in defaults.cleanup_prefixes if p != f"{DEFAULT_NAMESPACE}:"
        )
        return cls(
            namespace=namespace,
            max_bytes=_int_env(ENV_MAX_BYTES, DEFAULT_MAX_BYTES),
            retention_seconds=_int_env(ENV_RETENTION_HOURS, 24) * 60 * 60,
            debounce_seconds=_int_env(ENV_DEBOUNCE_MS, 500) / 1000.0,
            cleanup_prefixes=prefixes,
            mode=mode,
            backup_enabled=_bool_env(ENV_BACKUP, True),
            storage_path=_getenv(ENV_PATH),
        )
