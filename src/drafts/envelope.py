from __future__ import annotations

import json
import time
from typing import Any, Callable, Dict, Optional

from pydantic import ValidationError

from .errors import EnvelopeDecodeError
from .models import SCHEMA_VERSION, RecordEnvelope


def _now_ms(clock: Callable[[], float]) -> int:
    return int(clock() * 1000)


def _dump_json(payload: Any) -> str:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(payload, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


class EnvelopeCodec:
    """
    Wraps values in `RecordEnvelope`s and reads them back.

    - `wrap()` stamps epoch-millisecond timestamps that strictly increase per
      key, even when the clock stalls or steps backwards. Callers pass the
      stored timestamp as `after` so the ordering also holds across codec
      instances.
    - `decode()` accepts the legacy 2.0 field names (`expires`, `version`).
    - `unwrap_snapshot()` is the lenient reader for reconciliation: it also
      accepts bare JSON objects written before envelopes existed.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        schema_version: str = SCHEMA_VERSION,
    ) -> None:
        self._clock = clock
        self._schema_version = schema_version
        self._last_stamp: Dict[str, int] = {}

    def now_ms(self) -> int:
        return _now_ms(self._clock)

    def wrap(
        self,
        key: str,
        value: Any,
        ttl_seconds: Optional[float] = None,
        *,
        after: Optional[int] = None,
    ) -> RecordEnvelope:
        """`after` is the timestamp already stored under `key`, if any; the new stamp exceeds it."""
        floor = max(self._last_stamp.get(key, -1), after if after is not None else -1)
        stamp = max(self.now_ms(), floor + 1)
        self._last_stamp[key] = stamp
        expires_at = stamp + int(ttl_seconds * 1000) if ttl_seconds else None
        return RecordEnvelope(
            value=value,
            timestamp=stamp,
            expires_at=expires_at,
            schema_version=self._schema_version,
        )

    def encode(self, envelope: RecordEnvelope) -> str:
        return _dump_json(envelope.model_dump(by_alias=True))

    def decode(self, raw: str) -> RecordEnvelope:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise EnvelopeDecodeError("stored value is not valid JSON") from exc
        if not isinstance(data, dict) or "value" not in data or "timestamp" not in data:
            raise EnvelopeDecodeError("stored value is not a record envelope")

        # Schema 2.0 as first shipped used shorter names
        if "expiresAt" not in data and "expires" in data:
            data["expiresAt"] = data.pop("expires")
        if "schemaVersion" not in data and "version" in data:
            data["schemaVersion"] = str(data.pop("version"))

        try:
            return RecordEnvelope.model_validate(data)
        except ValidationError as exc:
            raise EnvelopeDecodeError(f"invalid record envelope: {exc.error_count()} error(s)") from exc

    @staticmethod
    def is_expired(envelope: RecordEnvelope, now_ms: int) -> bool:
        return envelope.expires_at is not None and now_ms > envelope.expires_at

    def unwrap_snapshot(self, raw: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the draft fields held by `raw`, or None if unreadable."""
        if not raw:
            return None
        try:
            envelope = self.decode(raw)
        except EnvelopeDecodeError:
            try:
                bare = json.loads(raw)
            except ValueError:
                return None
            return bare if isinstance(bare, dict) else None
        if self.is_expired(envelope, self.now_ms()):
            return None
        return envelope.value if isinstance(envelope.value, dict) else None
