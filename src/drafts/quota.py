from __future__ import annotations

import json
import logging
from typing import Any, Optional, Tuple

from .adapter import StorageAdapter, WriteResult
from .config import DraftStorageConfig
from .envelope import EnvelopeCodec
from .errors import EnvelopeDecodeError
from .models import FileAttachmentDescriptor, KeyCounts, StorageHealthSnapshot


QUOTA_EXCEEDED = "storage quota exceeded"

logger = logging.getLogger(__name__)


def is_oversized(value: dict, threshold: int) -> bool:
    data_url = value.get("dataUrl")
    if isinstance(data_url, str) and len(data_url) > threshold:
        return True
    size = value.get("size")
    return isinstance(size, (int, float)) and size > threshold


class QuotaManager:
    """
    Makes writes fit the storage byte budget.

    Write pipeline: compress -> wrap in envelope -> size check -> adapter.set.

    - Oversized file descriptors are reduced to metadata; their content is dropped.
    - A quota failure triggers exactly one `cleanup()` pass and one retry.
    - A security failure is reported as "storage access blocked" and is never
      retried.
    - After `degraded_after_failures` consecutive failed cleanup/retry cycles
      the manager enters degraded mode: non-critical writes are skipped while
      critical ones (the resume marker) are still attempted. Any successful
      write leaves degraded mode.
    """

    def __init__(self, adapter: StorageAdapter, codec: EnvelopeCodec, config: DraftStorageConfig) -> None:
        self._adapter = adapter
        self._codec = codec
        self._config = config
        self._failed_cycles = 0
        self._cleanup_passes = 0

    @property
    def degraded(self) -> bool:
        return self._failed_cycles >= self._config.degraded_after_failures

    @property
    def cleanup_passes(self) -> int:
        return self._cleanup_passes

    def reset_degraded(self) -> None:
        self._failed_cycles = 0

    # -------- Size helpers --------
    @staticmethod
    def estimate_size(value: Any) -> int:
        return len(json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False))

    def compress(self, value: Any) -> Any:
        """Return a copy of `value` with oversized file descriptors reduced to metadata."""
        threshold = self._config.compression_threshold
        if isinstance(value, dict):
            if FileAttachmentDescriptor.looks_like(value) and is_oversized(value, threshold):
                descriptor = FileAttachmentDescriptor.from_payload(value)
                return descriptor.metadata_only()
            return {k: self.compress(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.compress(v) for v in value]
        return value

    # -------- Writes --------
    def _stored_timestamp(self, key: str) -> Optional[int]:
        raw = self._adapter.read_raw(key)
        if not raw:
            return None
        try:
            return self._codec.decode(raw).timestamp
        except EnvelopeDecodeError:
            return None

    def write(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        *,
        critical: bool = False,
        recover: bool = True,
        track: bool = True,
    ) -> WriteResult:
        """
        Write `value` under `key`.

        - `critical`: attempted even in degraded mode.
        - `recover=False`: a quota failure is returned as-is, without the
          cleanup pass and retry.
        - `track=False`: the outcome does not move the degraded-mode streak
          (auxiliary writes that accompany a tracked one).
        """
        if self.degraded and not critical:
            logger.info("degraded mode: skipping write of %s", key)
            return WriteResult(success=False, error="storage degraded; write skipped", cause="skipped")

        envelope = self._codec.wrap(key, self.compress(value), ttl_seconds, after=self._stored_timestamp(key))
        payload = self._codec.encode(envelope)
        size = len(key) + len(payload)
        if size > self._config.max_item_bytes:
            logger.warning("item %s too large for storage (%d > %d)", key, size, self._config.max_item_bytes)
            return WriteResult(success=False, error="item too large for storage", cause="too_large")

        result = self._adapter.set_raw(key, payload)
        if result.success:
            if track:
                self._failed_cycles = 0
            return result
        if result.cause != "quota":
            return result
        if not recover:
            result.error = QUOTA_EXCEEDED
            return result

        logger.warning("storage quota exceeded writing %s; running cleanup", key)
        cleaned = self.cleanup()
        retry = self._adapter.set_raw(key, payload)
        if retry.success:
            if track:
                self._failed_cycles = 0
            retry.cleaned = cleaned
            retry.attempts = 2
            return retry

        if track:
            self._failed_cycles += 1
            if self.degraded:
                logger.error("storage still full after %d cleanup cycles; entering degraded mode", self._failed_cycles)
        return WriteResult(
            success=False,
            error=QUOTA_EXCEEDED,
            cause="quota",
            original_error=retry.original_error or result.original_error,
            cleaned=cleaned,
            attempts=2,
        )

    # -------- Cleanup --------
    def _cleanup_prefixes(self) -> Tuple[str, ...]:
        own = f"{self._config.namespace}:"
        prefixes = self._config.cleanup_prefixes
        return prefixes if own in prefixes else (own,) + prefixes

    def _is_stale(self, raw: Optional[str], now_ms: int) -> bool:
        if not raw:
            return True
        try:
            envelope = self._codec.decode(raw)
        except EnvelopeDecodeError:
            return True
        if self._codec.is_expired(envelope, now_ms):
            return True
        if envelope.timestamp <= 0:
            return True
        return now_ms - envelope.timestamp > self._config.retention_seconds * 1000

    def cleanup(self) -> int:
        """Remove unreadable, expired and out-of-retention entries; return the count."""
        self._cleanup_passes += 1
        now_ms = self._codec.now_ms()
        prefixes = self._cleanup_prefixes()
        doomed = [
            key
            for key in self._adapter.enumerate()
            if key.startswith(prefixes) and self._is_stale(self._adapter.read_raw(key), now_ms)
        ]
        for key in doomed:
            self._adapter.remove(key)
        if doomed:
            logger.info("storage cleanup removed %d entries", len(doomed))
        return len(doomed)

    # -------- Diagnostics --------
    def health_snapshot(self) -> StorageHealthSnapshot:
        form_prefix = f"{self._config.namespace}:"
        counts = KeyCounts()
        total = 0
        for key in self._adapter.enumerate():
            raw = self._adapter.read_raw(key)
            if raw is None:
                continue
            total += len(key) + len(raw)
            if key.startswith(form_prefix):
                counts.form_data += 1
            elif key.startswith("file_"):
                counts.file_data += 1
            else:
                counts.other += 1
        max_bytes = self._adapter.max_bytes or self._config.max_bytes
        percent = round(total / max_bytes * 100, 2) if max_bytes else 0.0
        return StorageHealthSnapshot(
            total_bytes_used=total,
            max_bytes=max_bytes,
            percent_used=percent,
            key_counts=counts,
        )
