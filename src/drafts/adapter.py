from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Literal, Optional

from .backends import KeyValueBackend
from .envelope import EnvelopeCodec
from .errors import EnvelopeDecodeError, QuotaExceededError, StorageSecurityError
from .models import RecordEnvelope


NOT_SUPPORTED = "storage not supported"
PROBE_KEY = "__draft_storage_probe__"

FailureCause = Literal["quota", "security", "unsupported", "too_large", "skipped", "other"]

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    """Outcome of a storage write. `error` is always safe to show to a user."""

    success: bool
    bytes_written: int = 0
    error: Optional[str] = None
    cause: Optional[FailureCause] = None
    original_error: Optional[str] = None
    error_type: Optional[str] = None
    cleaned: int = 0
    attempts: int = 0

    @property
    def skipped(self) -> bool:
        return self.cause == "skipped"


def _blocked_result() -> WriteResult:
    return WriteResult(
        success=False,
        error="storage access blocked",
        cause="security",
        original_error=StorageSecurityError.name,
        error_type="SecurityError",
        attempts=1,
    )


class KeySequence:
    """Finite, lazy view over backend keys; every iteration starts afresh."""

    def __init__(self, adapter: "StorageAdapter", prefix: str) -> None:
        self._adapter = adapter
        self._prefix = prefix

    def __iter__(self) -> Iterator[str]:
        for key in self._adapter._snapshot_keys():
            if key.startswith(self._prefix) and key != PROBE_KEY:
                yield key


class StorageAdapter:
    """
    Never-raising wrapper over a `KeyValueBackend`.

    - Probes the backend on first use (write + remove of a probe key). If the
      backend is missing or the probe fails, every operation degrades to a
      no-op and writes report `success=False, error="storage not supported"`
      (or "storage access blocked" when the host denied the probe).
    - `get()` purges values that fail to decode or have expired, then returns
      None (self-healing).
    - `set()` reports failures as `WriteResult`s tagged with a cause so the
      quota layer can decide whether a cleanup + retry makes sense.
    """

    def __init__(self, backend: Optional[KeyValueBackend], codec: EnvelopeCodec) -> None:
        self._backend = backend
        self._codec = codec
        self._supported: Optional[bool] = None
        self._blocked = False

    # -------- Capability probe --------
    @property
    def supported(self) -> bool:
        if self._supported is None:
            self._supported = self._probe()
        return self._supported

    @property
    def blocked(self) -> bool:
        return not self.supported and self._blocked

    @property
    def backend(self) -> Optional[KeyValueBackend]:
        return self._backend

    @property
    def max_bytes(self) -> int:
        return self._backend.max_bytes if self._backend is not None else 0

    def _probe(self) -> bool:
        if self._backend is None:
            return False
        try:
            self._backend.set_item(PROBE_KEY, "probe")
            self._backend.remove_item(PROBE_KEY)
        except StorageSecurityError:
            logger.warning("storage access blocked by host")
            self._blocked = True
            return False
        except Exception as exc:
            logger.warning("storage backend unavailable: %s", type(exc).__name__)
            return False
        return True

    # -------- Core operations --------
    def read_raw(self, key: str) -> Optional[str]:
        if not self.supported:
            return None
        try:
            return self._backend.get_item(key)  # type: ignore[union-attr]
        except Exception as exc:
            logger.warning("failed to read %s: %s", key, type(exc).__name__)
            return None

    def get(self, key: str) -> Optional[RecordEnvelope]:
        raw = self.read_raw(key)
        if raw is None:
            return None
        try:
            envelope = self._codec.decode(raw)
        except EnvelopeDecodeError:
            logger.info("purging unreadable entry %s", key)
            self.remove(key)
            return None
        if self._codec.is_expired(envelope, self._codec.now_ms()):
            logger.info("purging expired entry %s", key)
            self.remove(key)
            return None
        return envelope

    def set(self, key: str, envelope: RecordEnvelope) -> WriteResult:
        return self.set_raw(key, self._codec.encode(envelope))

    def set_raw(self, key: str, payload: str) -> WriteResult:
        if not self.supported:
            if self._blocked:
                return _blocked_result()
            return WriteResult(success=False, error=NOT_SUPPORTED, cause="unsupported")
        size = len(key) + len(payload)
        try:
            self._backend.set_item(key, payload)  # type: ignore[union-attr]
        except QuotaExceededError as exc:
            return WriteResult(
                success=False,
                error="storage quota exceeded",
                cause="quota",
                original_error=exc.name,
                attempts=1,
            )
        except StorageSecurityError:
            return _blocked_result()
        except Exception as exc:
            logger.warning("storage write for %s failed: %s", key, type(exc).__name__)
            return WriteResult(
                success=False,
                error="storage write failed",
                cause="other",
                original_error=type(exc).__name__,
                attempts=1,
            )
        return WriteResult(success=True, bytes_written=size, attempts=1)

    def remove(self, key: str) -> None:
        if not self.supported:
            return
        try:
            self._backend.remove_item(key)  # type: ignore[union-attr]
        except Exception as exc:
            logger.warning("failed to remove %s: %s", key, type(exc).__name__)

    def enumerate(self, prefix: str = "") -> KeySequence:
        return KeySequence(self, prefix)

    def _snapshot_keys(self) -> list[str]:
        if not self.supported:
            return []
        try:
            return self._backend.keys()  # type: ignore[union-attr]
        except Exception as exc:
            logger.warning("failed to list storage keys: %s", type(exc).__name__)
            return []
