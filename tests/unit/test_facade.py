from __future__ import annotations

import json
from typing import Any, Dict, List, Tuple

import pytest

from common.drafts_api import DraftApiAuthError
from drafts.backends import MemoryBackend
from drafts.config import DraftStorageConfig, PersistenceMode
from drafts.envelope import EnvelopeCodec
from drafts.errors import QuotaExceededError
from drafts.facade import DraftStorageFacade
from drafts.recovery import ErrorKind
from drafts.resume import WizardStep


ORG_KEY = "eventForm:p1:organization"
MARKER_KEY = "eventForm:p1:currentSection"


class FakeClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class RecordingBackend(MemoryBackend):
    """MemoryBackend that records write attempts and can simulate a full disk."""

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.full = False
        self.writes: List[Tuple[str, str]] = []

    def set_item(self, key: str, value: str) -> None:
        if key.startswith("__"):
            return super().set_item(key, value)
        self.writes.append((key, value))
        if self.full:
            raise QuotaExceededError("full")
        super().set_item(key, value)

    def writes_to(self, key: str) -> List[str]:
        return [v for k, v in self.writes if k == key]


class FakeApi:
    def __init__(self, *, fail: Exception | None = None) -> None:
        self.fail = fail
        self.patches: List[Tuple[str, str, Dict[str, Any]]] = []

    def patch_section(self, draft_id: str, section: str, data: Dict[str, Any]) -> Dict[str, Any]:
        if self.fail is not None:
            raise self.fail
        self.patches.append((draft_id, section, data))
        return {}


def _facade(backend=None, entity_id: str = "p1", **kwargs):
    backend = backend if backend is not None else RecordingBackend()
    mono = FakeClock()
    facade = DraftStorageFacade(
        entity_id,
        backend=backend,
        clock=FakeClock(1_700_000_000.0),
        monotonic=mono,
        **kwargs,
    )
    return facade, backend, mono


def test_rapid_saves_coalesce_into_one_write():
    f, backend, mono = _facade()

    f.save("organization", {"name": "Acme"})
    f.save("organization", {"name": "Acme Corp"})
    assert f.poll() == 0
    assert backend.writes_to(ORG_KEY) == []

    mono.advance(0.5)
    assert f.poll() == 1

    written = backend.writes_to(ORG_KEY)
    assert len(written) == 1
    assert "Acme Corp" in written[0]
    assert f.last_saved_at == 1_700_000_000.0


def test_round_trip_after_debounce_and_across_instances():
    value = {
        "organizationName": "Acme",
        "contactEmail": "a@b.com",
        "details": {"tags": ["youth", "stem"], "capacity": 40, "notes": None},
        "confirmed": True,
    }
    f, backend, mono = _facade()
    f.save("organization", value)
    mono.advance(1)
    f.poll()

    assert f.load("organization") == value
    reloaded, _, _ = _facade(backend)
    assert reloaded.load("organization") == value


def test_load_flushes_pending_write_for_that_section():
    f, backend, _ = _facade()
    f.save("reporting", {"attendance": 120})
    f.save("organization", {"name": "Acme"})

    assert f.load("reporting") == {"attendance": 120}
    assert backend.get_item("eventForm:p1:reporting") is not None
    assert f.pending_sections == ["organization"]


def test_unchanged_payload_is_not_written_twice():
    f, backend, _ = _facade()
    f.save_now("organization", {"name": "Acme"})
    f.save_now("organization", {"name": "Acme"})
    assert len(backend.writes_to(ORG_KEY)) == 1


def test_small_files_are_stored_separately_and_restored():
    logo = {"name": "logo.png", "size": 12, "mimeType": "image/png", "dataUrl": "data:image/png;base64,AAAA"}
    f, backend, _ = _facade()
    f.save_now("organization", {"name": "Acme", "logo": logo})

    assert backend.get_item("file_p1_logo") is not None
    assert "base64,AAAA" not in backend.get_item(ORG_KEY)
    assert f.load("organization") == {"name": "Acme", "logo": logo}


def test_oversized_file_keeps_metadata_only():
    big = {"name": "flyer.pdf", "size": 500, "mimeType": "application/pdf", "dataUrl": "data:" + "B" * 500}
    f, backend, _ = _facade(config=DraftStorageConfig(compression_threshold=100))
    f.save_now("reporting", {"flyer": big})

    stored = f.load("reporting")["flyer"]
    assert stored["hasData"] is True
    assert stored["compressed"] is True
    assert "dataUrl" not in stored
    assert backend.get_item("file_p1_flyer") is None


def test_quota_failure_sets_storage_error_and_retry_recovers():
    backend = RecordingBackend()
    f, _, _ = _facade(backend)
    backend.full = True

    res = f.save_now("organization", {"name": "Acme"})
    assert res.success is False
    assert "quota" in f.storage_error
    assert "QuotaExceededError" not in f.storage_error
    assert f.errors[-1].kind is ErrorKind.STORAGE
    # The draft is still usable in memory
    assert f.load("organization") == {"name": "Acme"}

    backend.full = False
    res = f.retry()
    assert res.success is True
    assert f.storage_error is None
    assert backend.get_item(ORG_KEY) is not None
    assert f.retry() is None


def test_one_failed_save_runs_a_single_cleanup_cycle():
    backend = RecordingBackend()
    f, _, _ = _facade(backend)
    backend.full = True

    f.save_now("organization", {"name": "Acme"})

    assert len(backend.writes_to(ORG_KEY)) == 2
    assert len(backend.writes_to(MARKER_KEY)) == 1
    assert f._quota.cleanup_passes == 1
    assert f.degraded is False


def test_degraded_mode_still_attempts_resume_marker():
    backend = RecordingBackend()
    f, _, _ = _facade(backend)
    backend.full = True

    f.save_now("organization", {"name": "Acme"})
    assert f.degraded is False
    f.save_now("organization", {"name": "Acme Corp"})
    assert f.degraded is True
    marker_attempts = len(backend.writes_to(MARKER_KEY))

    res = f.save_now("eventType", {"selectedEventType": "school-based"})
    assert res.skipped is True
    assert backend.writes_to("eventForm:p1:eventType") == []
    assert len(backend.writes_to(MARKER_KEY)) > marker_attempts


def test_blocked_storage_degrades_to_memory():
    f, _, _ = _facade(MemoryBackend(blocked=True))
    f.save_now("organization", {"name": "Acme"})
    assert f.storage_error == "storage access blocked"
    assert f.load("organization") == {"name": "Acme"}
    assert f.restore().step is WizardStep.OVERVIEW


def test_clear_removes_every_key_of_the_draft():
    backend = RecordingBackend()
    backend.set_item("eventForm:p2:organization", "{}")
    f, _, _ = _facade(backend)
    f.save_now("organization", {"name": "Acme", "logo": {"name": "l.png", "size": 1, "dataUrl": "x"}})
    f.save("reporting", {"attendance": 3})

    f.clear()
    assert backend.keys() == ["eventForm:p2:organization"]
    assert f.pending_sections == []
    assert dict(f.draft) == {}


def test_restore_resumes_from_own_sections_after_reload():
    f, backend, _ = _facade()
    f.save_now("organization", {"organizationName": "Acme", "contactEmail": "a@b.com"})
    f.save_now("eventType", {"selectedEventType": "school-based"})
    f.save_now("schoolEvent", {"venue": "Gym"})

    reloaded, _, _ = _facade(backend)
    decision = reloaded.restore()
    assert decision.step is WizardStep.SCHOOL_EVENT
    assert reloaded.draft["organizationName"] == "Acme"
    assert reloaded.draft["sections"]["schoolEvent"] == {"venue": "Gym"}


def test_sparse_draft_restarts_at_overview_after_reload():
    f, backend, _ = _facade()
    f.save_now("organization", {"organizationName": "Acme"})

    reloaded, _, _ = _facade(backend)
    decision = reloaded.restore()
    assert decision.step is WizardStep.OVERVIEW
    assert decision.rule == "safe-start"
    assert reloaded.draft["organizationName"] == "Acme"


def test_restore_reconciles_legacy_snapshots():
    backend = MemoryBackend()
    codec = EnvelopeCodec()
    backend.set_item("eventProposalFormData", json.dumps({"foo": 1, "bar": 2}))
    backend.set_item(
        "submitEventFormData",
        codec.encode(
            codec.wrap(
                "submitEventFormData",
                {"organizationName": "Acme", "contactEmail": "a@b.com", "currentSection": "orgInfo"},
            )
        ),
    )
    backend.set_item("formData", "{corrupt")

    f, _, _ = _facade(backend)
    decision = f.restore()
    assert decision.step is WizardStep.ORGANIZATION_INFO
    assert f.draft["contactEmail"] == "a@b.com"


def test_restore_ignores_backup_of_another_draft():
    backend = MemoryBackend()
    backend.set_item(
        "formDataBackup",
        json.dumps({"organizationName": "Other", "contactEmail": "o@x.com", "draftId": "p2", "currentSection": "reporting"}),
    )
    f, _, _ = _facade(backend)
    assert f.restore().step is WizardStep.OVERVIEW
    assert dict(f.draft) == {}


def test_clear_keeps_backup_of_another_draft():
    backend = MemoryBackend()
    other = json.dumps({"organizationName": "Other", "draftId": "p2"})
    backend.set_item("formDataBackup", other)
    backend.set_item("formData", "{corrupt")
    backend.set_item("eventProposalFormData", json.dumps({"organizationName": "Mine", "draftId": "p1"}))
    f, _, _ = _facade(backend)

    f.clear()
    assert backend.get_item("formDataBackup") == other
    assert backend.get_item("formData") is None
    assert backend.get_item("eventProposalFormData") is None


def test_disabled_mode_keeps_everything_in_memory():
    backend = RecordingBackend()
    f, _, mono = _facade(backend, config=DraftStorageConfig(mode=PersistenceMode.DISABLED))
    f.save("organization", {"name": "Acme"})
    mono.advance(1)
    f.poll()
    assert f.save_now("organization") is None
    assert backend.writes == []
    assert f.load("organization") == {"name": "Acme"}


def test_manual_only_mode_persists_on_explicit_save():
    backend = RecordingBackend()
    f, _, mono = _facade(backend, config=DraftStorageConfig(mode=PersistenceMode.MANUAL_ONLY))
    f.save("organization", {"name": "Acme"})
    mono.advance(1)
    assert f.poll() == 0
    assert backend.writes_to(ORG_KEY) == []

    assert f.save_now("organization").success is True
    assert len(backend.writes_to(ORG_KEY)) == 1


def test_backup_snapshot_written_after_save():
    f, backend, _ = _facade()
    f.save_now("organization", {"organizationName": "Acme"})
    backup = EnvelopeCodec().decode(backend.get_item("formDataBackup")).value
    assert backup["organizationName"] == "Acme"
    assert backup["draftId"] == "p1"


def test_export_then_import_into_fresh_store():
    f, _, _ = _facade()
    f.save_now("organization", {"organizationName": "Acme", "contactEmail": "a@b.com"})
    exported = f.export_draft()
    doc = json.loads(exported)
    assert doc["entityId"] == "p1"
    assert doc["version"] == "2.0"

    other, backend, _ = _facade()
    assert other.import_draft(exported) is True
    assert other.draft["organizationName"] == "Acme"
    assert other.load("organization") == {"organizationName": "Acme", "contactEmail": "a@b.com"}
    assert backend.get_item(ORG_KEY) is not None

    assert other.import_draft("not json") is False
    assert other.import_draft(json.dumps({"data": []})) is False


def test_subscription_receives_events_until_closed():
    events = []
    f, _, _ = _facade()
    sub = f.subscribe(events.append)
    f.save_now("organization", {"name": "Acme"})
    assert ("write", ORG_KEY) in [(e.kind, e.key) for e in events]

    sub.close()
    count = len(events)
    f.save_now("organization", {"name": "Acme Corp"})
    assert len(events) == count
    assert sub.active is False


def test_close_flushes_pending_and_releases_listeners():
    events = []
    backend = RecordingBackend()
    with _facade(backend)[0] as f:
        f.subscribe(events.append)
        f.save("organization", {"name": "Acme"})
    assert backend.get_item(ORG_KEY) is not None
    assert f.session.listener_count == 0


def test_remote_sync_failures_are_classified_not_raised():
    api = FakeApi(fail=DraftApiAuthError("draft API unauthorized (HTTP 401)"))
    f, _, _ = _facade(api=api)
    res = f.save_now("organization", {"name": "Acme"})
    assert res.success is True
    assert f.storage_error is None
    assert f.errors[-1].kind is ErrorKind.AUTHENTICATION

    ok_api = FakeApi()
    g, _, _ = _facade(api=ok_api)
    g.save_now("organization", {"name": "Acme"})
    assert ok_api.patches == [("p1", "organization", {"name": "Acme"})]


def test_diagnostics_count_keys_by_category():
    f, backend, _ = _facade()
    f.save_now("organization", {"name": "Acme", "logo": {"name": "l.png", "size": 1, "dataUrl": "x"}})
    snap = f.get_diagnostics()
    assert snap.key_counts.form_data == 2  # section + resume marker
    assert snap.key_counts.file_data == 1
    assert snap.key_counts.other == 1  # backup snapshot
    assert snap.total_bytes_used == backend.bytes_used()
    assert f.session.last_health == snap


def test_report_error_runs_reset_for_recoverable_ui_errors():
    calls = []
    f, _, _ = _facade()
    report = f.report_error(Exception("Failed to execute 'removeChild'"), reset=lambda: calls.append(1))
    assert report.kind is ErrorKind.DOM_MANIPULATION
    assert calls == [1]


def test_entity_id_required():
    with pytest.raises(ValueError):
        DraftStorageFacade("")
