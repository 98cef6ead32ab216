from __future__ import annotations

import copy
import json
import logging
import time
from types import MappingProxyType
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from common.debounce import KeyedDebouncer
from common.drafts_api import DraftApiClient, DraftApiError

from .adapter import StorageAdapter, WriteResult
from .backends import JsonFileBackend, KeyValueBackend, MemoryBackend
from .config import BACKUP_KEY, DraftStorageConfig
from .envelope import EnvelopeCodec
from .errors import StorageWriteError
from .models import (
    CONTACT_EMAIL,
    CONTACT_NAME,
    CONTACT_PHONE,
    CURRENT_SECTION,
    ENTITY_ID_FIELDS,
    ORGANIZATION_NAME,
    SCHEMA_VERSION,
    SELECTED_EVENT_TYPE,
    DraftRecord,
    FileAttachmentDescriptor,
    StorageHealthSnapshot,
    StorageKey,
    file_key,
    file_prefix,
    is_populated,
)
from .quota import QuotaManager, is_oversized
from .reconcile import Candidate, ReconciliationEngine
from .recovery import ErrorRecoveryController, ErrorReport
from .resume import DraftStateMachine, ResumeDecision
from .session import DraftSession, StorageEvent, Listener, Subscription


# Section holding the resume marker and completion flags
MARKER_SECTION = CURRENT_SECTION
FILE_REF = "fileKey"
AGGREGATE_SOURCE = "sections"

# Payload keys copied onto the record's top-level fields
_LIFTED_FIELDS = {
    ORGANIZATION_NAME: "organization_name",
    CONTACT_NAME: "contact_name",
    CONTACT_EMAIL: "contact_email",
    CONTACT_PHONE: "contact_phone",
    SELECTED_EVENT_TYPE: "selected_event_type",
}

logger = logging.getLogger(__name__)


def _canonical(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)


def _default_backend(config: DraftStorageConfig) -> Optional[KeyValueBackend]:
    if not config.persistence_enabled:
        return None
    if config.storage_path:
        return JsonFileBackend(config.storage_path, max_bytes=config.max_bytes)
    return MemoryBackend(max_bytes=config.max_bytes)


class DraftStorageFacade:
    """
    Public surface used by the proposal wizard.

    Writes: save() -> debounce -> QuotaManager -> envelope -> adapter.
    Reads:  restore() -> adapter -> reconciliation -> state machine.

    Nothing here raises to the caller on storage or remote failures: the
    outcome is reflected in `storage_error` and the draft stays usable in
    memory. Time is injectable: `clock` for envelope timestamps and
    `last_saved_at`, `monotonic` for debounce deadlines.
    """

    def __init__(
        self,
        entity_id: str,
        *,
        backend: Optional[KeyValueBackend] = None,
        config: Optional[DraftStorageConfig] = None,
        api: Optional[DraftApiClient] = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
        url: Optional[str] = None,
    ) -> None:
        if not entity_id:
            raise ValueError("entity_id is required")
        self.config = config or DraftStorageConfig()
        self.session = DraftSession(entity_id=entity_id, url=url)
        self._clock = clock
        self._codec = EnvelopeCodec(clock=clock)
        if not self.config.persistence_enabled:
            backend = None
        elif backend is None:
            backend = _default_backend(self.config)
        self._adapter = StorageAdapter(backend, self._codec)
        self._quota = QuotaManager(self._adapter, self._codec, self.config)
        self._reconciler = ReconciliationEngine(self._codec)
        self._machine = DraftStateMachine(safe_start_threshold=self.config.safe_start_threshold)
        self._recovery = ErrorRecoveryController(url=url, clock=clock)
        self._debouncer: KeyedDebouncer[Dict[str, Any]] = KeyedDebouncer(
            self.config.debounce_seconds, clock=monotonic
        )
        self._api = api
        self._record = DraftRecord.empty()
        self._last_written: Dict[str, str] = {}
        self._failed: Optional[Tuple[str, Dict[str, Any]]] = None
        self._closed = False

        # State flags read by the UI
        self.is_loading = False
        self.is_saving = False
        self.last_saved_at: Optional[float] = None
        self.storage_error: Optional[str] = None

    # -------- Properties --------
    @property
    def entity_id(self) -> str:
        return self.session.entity_id

    @property
    def draft(self) -> Mapping[str, Any]:
        """Read-only projection of the owned draft record."""
        return MappingProxyType(self._record.to_snapshot())

    @property
    def degraded(self) -> bool:
        return self._quota.degraded

    @property
    def pending_sections(self) -> List[str]:
        return self._debouncer.pending()

    @property
    def errors(self) -> List[ErrorReport]:
        return list(self._recovery.history)

    def _key(self, section: str) -> str:
        return StorageKey(namespace=self.config.namespace, entity_id=self.entity_id, section=section).render()

    # -------- Writes --------
    def save(self, section: str, data: Mapping[str, Any]) -> None:
        """Record an edit; the persisted write happens after the quiet period."""
        payload = copy.deepcopy(dict(data))
        self._apply(section, payload)
        if not self.config.auto_save_enabled:
            return
        self._debouncer.schedule(section, payload)

    def save_now(self, section: str, data: Optional[Mapping[str, Any]] = None) -> Optional[WriteResult]:
        """Persist `section` immediately, bypassing the debounce."""
        if data is not None:
            self._apply(section, copy.deepcopy(dict(data)))
        self._debouncer.cancel(section)
        payload = self._record.sections.get(section)
        if payload is None or not self.config.persistence_enabled:
            return None
        return self._persist(section, copy.deepcopy(payload))

    def poll(self) -> int:
        """Persist every debounced write whose quiet period has elapsed."""
        ready = self._debouncer.due()
        for section, payload in ready:
            self._persist(section, payload)
        return len(ready)

    def flush(self) -> List[WriteResult]:
        return [self._persist(section, payload) for section, payload in self._debouncer.flush()]

    def mark_completed(self, section: str, completed: bool = True) -> None:
        self._record.completed[section] = completed
        if self.config.persistence_enabled:
            self._write_marker()

    def retry(self) -> Optional[WriteResult]:
        """Re-attempt the last failed write, leaving degraded mode first."""
        if self._failed is None:
            return None
        section, payload = self._failed
        self._quota.reset_degraded()
        self._last_written.pop(self._key(section), None)
        return self._persist(section, payload)

    def _apply(self, section: str, payload: Dict[str, Any]) -> None:
        record = self._record
        record.sections[section] = payload
        for name, attr in _LIFTED_FIELDS.items():
            if is_populated(payload.get(name)):
                setattr(record, attr, str(payload[name]))
        if not is_populated(record.selected_event_type) and isinstance(payload.get("eventType"), str):
            record.selected_event_type = payload["eventType"]
        record.current_section = section

    def _split_files(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Move small file descriptors with content to their own `file_` keys."""
        stored = dict(payload)
        for field_name, value in payload.items():
            if not FileAttachmentDescriptor.looks_like(value) or not value.get("dataUrl"):
                continue
            if is_oversized(value, self.config.compression_threshold):
                continue  # reduced to metadata by the quota layer
            key = file_key(self.entity_id, field_name)
            result = self._quota.write(key, value, self.config.form_ttl_seconds, track=False)
            if not result.success:
                logger.warning("could not store file %s separately: %s", field_name, result.error)
                continue
            self.session.publish(StorageEvent(kind="write", key=key))
            descriptor = FileAttachmentDescriptor.from_payload(value)
            stored[field_name] = {
                "name": descriptor.name,
                "size": descriptor.size,
                "mimeType": descriptor.mime_type,
                "hasData": True,
                "compressed": False,
                FILE_REF: key,
            }
        return stored

    def _persist(self, section: str, payload: Dict[str, Any]) -> WriteResult:
        key = self._key(section)
        if not self.config.persistence_enabled:
            return WriteResult(success=False, error="persistence disabled", cause="skipped")
        if self._last_written.get(key) == _canonical(payload):
            logger.debug("skipping unchanged write of %s", key)
            return WriteResult(success=True)

        self.is_saving = True
        try:
            result = self._quota.write(key, self._split_files(payload), self.config.form_ttl_seconds)
            self.session.publish(StorageEvent(kind="write", key=key, success=result.success))
            if not result.success:
                self._record_failure(section, payload, result)
                # Storage is known to be full; one attempt, outside the failure count
                self._write_marker(recover=False, track=False)
                return result

            self._last_written[key] = _canonical(payload)
            self._failed = None
            self.storage_error = None
            self.last_saved_at = self._clock()
            self._write_marker(track=False)
            if self.config.backup_enabled:
                self._write_backup()
            self._sync_remote(section, payload)
            return result
        finally:
            self.is_saving = False

    def _record_failure(self, section: str, payload: Dict[str, Any], result: WriteResult) -> None:
        self._failed = (section, payload)
        self.storage_error = result.error
        if result.skipped:
            return
        self._recovery.handle(
            StorageWriteError(result.error or "storage write failed", original_error=result.original_error),
            component="DraftStorageFacade",
        )

    def _write_marker(self, *, recover: bool = True, track: bool = True) -> WriteResult:
        marker = {CURRENT_SECTION: self._record.current_section, "completed": dict(self._record.completed)}
        key = self._key(MARKER_SECTION)
        if self._last_written.get(key) == _canonical(marker):
            return WriteResult(success=True)
        result = self._quota.write(
            key, marker, self.config.form_ttl_seconds, critical=True, recover=recover, track=track
        )
        if result.success:
            self._last_written[key] = _canonical(marker)
        else:
            logger.warning("resume marker not persisted: %s", result.error)
        return result

    def _write_backup(self) -> None:
        snapshot = self._record.to_snapshot()
        snapshot["draftId"] = self.entity_id
        result = self._quota.write(BACKUP_KEY, snapshot, self.config.form_ttl_seconds, track=False)
        if not result.success and not result.skipped:
            logger.info("backup snapshot not persisted: %s", result.error)

    def _sync_remote(self, section: str, payload: Dict[str, Any]) -> None:
        if self._api is None:
            return
        try:
            self._api.patch_section(self.entity_id, section, payload)
        except DraftApiError as exc:
            # Local storage stays the source of truth
            self._recovery.handle(exc, component="DraftApiClient")

    # -------- Reads --------
    def _restore_files(self, value: Dict[str, Any]) -> Dict[str, Any]:
        restored = dict(value)
        for field_name, item in value.items():
            if not isinstance(item, dict) or not str(item.get(FILE_REF, "")).startswith("file_"):
                continue
            envelope = self._adapter.get(item[FILE_REF])
            if envelope is not None and isinstance(envelope.value, dict):
                restored[field_name] = envelope.value
        return restored

    def load(self, section: str) -> Optional[Dict[str, Any]]:
        # Read-your-writes: a pending edit for this section is persisted first
        for pending_section, payload in self._debouncer.flush(section):
            self._persist(pending_section, payload)

        in_memory = self._record.sections.get(section)
        if not self.config.persistence_enabled:
            return copy.deepcopy(in_memory)

        self.is_loading = True
        try:
            envelope = self._adapter.get(self._key(section))
            if envelope is None or not isinstance(envelope.value, dict):
                return copy.deepcopy(in_memory)
            value = self._restore_files(envelope.value)
            if in_memory is None:
                self._record.sections[section] = copy.deepcopy(value)
            return value
        finally:
            self.is_loading = False

    def _stored_sections(self) -> Tuple[Dict[str, Dict[str, Any]], Dict[str, Any]]:
        sections: Dict[str, Dict[str, Any]] = {}
        marker: Dict[str, Any] = {}
        prefix = StorageKey.entity_prefix(self.config.namespace, self.entity_id)
        for key in self._adapter.enumerate(prefix):
            parsed = StorageKey.parse(key)
            envelope = self._adapter.get(key)
            if parsed is None or envelope is None or not isinstance(envelope.value, dict):
                continue
            if parsed.section == MARKER_SECTION:
                marker = envelope.value
            else:
                sections[parsed.section] = self._restore_files(envelope.value)
        return sections, marker

    def _aggregate(self) -> Optional[Candidate]:
        sections, marker = self._stored_sections()
        if not sections and not marker:
            return None
        fields: Dict[str, Any] = {}
        for payload in sections.values():
            fields.update(payload)
        fields["sections"] = sections
        fields["draftId"] = self.entity_id
        if is_populated(marker.get(CURRENT_SECTION)):
            fields[CURRENT_SECTION] = marker[CURRENT_SECTION]
        if isinstance(marker.get("completed"), dict):
            fields["completed"] = marker["completed"]
        return Candidate(source=AGGREGATE_SOURCE, fields=fields)

    def _belongs_here(self, candidate: Candidate) -> bool:
        for name in ENTITY_ID_FIELDS:
            value = candidate.fields.get(name)
            if is_populated(value) and str(value) != self.entity_id:
                return False
        return True

    def restore(self) -> ResumeDecision:
        """
        Rebuild the draft from storage and decide where the wizard resumes.

        Section payloads and legacy snapshots are reconciled once; the
        winning snapshot replaces the in-memory record.
        """
        self.flush()
        if not self.config.persistence_enabled:
            return self._machine.decide(self._record)

        self.is_loading = True
        try:
            aggregate = self._aggregate()
            legacy = [(key, self._adapter.read_raw(key)) for key in self.config.legacy_keys]
            result = self._reconciler.reconcile(
                legacy,
                preferred=[aggregate] if aggregate is not None else [],
                accept=self._belongs_here,
            )
            if result.found:
                logger.info("restored draft %s from %s (score %d)", self.entity_id, result.source, result.score)
                self._record = DraftRecord.from_snapshot(result.fields)
            return self._machine.decide(self._record)
        finally:
            self.is_loading = False

    # -------- Maintenance --------
    def _owns_legacy(self, key: str) -> bool:
        raw = self._adapter.read_raw(key)
        if raw is None:
            return False
        fields = self._codec.unwrap_snapshot(raw)
        return fields is None or self._belongs_here(Candidate(source=key, fields=fields))

    def clear(self) -> None:
        """
        Drop pending writes and every stored snapshot of this draft.

        Legacy and backup snapshots are removed only when they are unreadable
        or carry no id of another draft.
        """
        self._debouncer.cancel()
        prefixes = (StorageKey.entity_prefix(self.config.namespace, self.entity_id), file_prefix(self.entity_id))
        doomed = [k for k in self._adapter.enumerate() if k.startswith(prefixes)]
        doomed.extend(k for k in self.config.legacy_keys if self._owns_legacy(k))
        for key in doomed:
            self._adapter.remove(key)
            self.session.publish(StorageEvent(kind="remove", key=key))
        self._record = DraftRecord.empty()
        self._last_written.clear()
        self._failed = None
        self.storage_error = None
        self.session.publish(StorageEvent(kind="clear"))

    def get_diagnostics(self) -> StorageHealthSnapshot:
        snapshot = self._quota.health_snapshot()
        self.session.last_health = snapshot
        return snapshot

    def report_error(
        self,
        error: BaseException | str,
        *,
        reset: Optional[Callable[[], None]] = None,
        component: str = "wizard",
    ) -> ErrorReport:
        """Classify a failure raised by the wizard UI and apply its strategy."""
        return self._recovery.handle(error, reset=reset, component=component)

    # -------- Export / import --------
    def export_draft(self) -> str:
        return json.dumps(
            {
                "entityId": self.entity_id,
                "exportedAt": int(self._clock() * 1000),
                "version": SCHEMA_VERSION,
                "data": self._record.to_snapshot(),
            },
            indent=2,
            sort_keys=True,
        )

    def import_draft(self, raw: str) -> bool:
        try:
            doc = json.loads(raw)
        except ValueError:
            logger.warning("rejected draft import: not valid JSON")
            return False
        if not isinstance(doc, dict) or not isinstance(doc.get("data"), dict):
            logger.warning("rejected draft import: missing data object")
            return False
        try:
            record = DraftRecord.from_snapshot(doc["data"])
        except ValueError:
            logger.warning("rejected draft import: invalid draft fields")
            return False
        self._debouncer.cancel()
        self._record = record
        if self.config.persistence_enabled:
            for section, payload in record.sections.items():
                self._persist(section, copy.deepcopy(payload))
            self._write_marker(track=False)
        return True

    # -------- Events / lifecycle --------
    def subscribe(self, listener: Listener) -> Subscription:
        return self.session.subscribe(listener)

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self.session.close()
        self._closed = True

    def __enter__(self) -> "DraftStorageFacade":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
