from __future__ import annotations

import json

from drafts.envelope import EnvelopeCodec
from drafts.reconcile import Candidate, ReconciliationEngine, score, select_canonical


def test_score_weights_identity_over_marker_over_volume():
    a = {"organizationName": "Acme", "contactEmail": "a@b.com", "x": 1, "y": 2, "z": 3}
    b = {"foo": 1, "bar": 2}
    assert score(a) == 23
    assert score(b) == 2
    assert score({"proposalId": "p1", "currentSection": "reporting"}) == 6
    # Blank values do not count as populated
    assert score({"organizationName": "  ", "contactEmail": None, "notes": ""}) == 0


def test_select_canonical_prefers_identity_and_keeps_first_on_tie():
    a = Candidate("eventProposalFormData", {"organizationName": "Acme", "contactEmail": "a@b.com", "x": 1, "y": 2, "z": 3})
    b = Candidate("formData", {"foo": 1, "bar": 2})
    assert select_canonical([b, a]) is a

    first = Candidate("formData", {"foo": 1})
    second = Candidate("cedoFormData", {"bar": 2})
    assert select_canonical([first, second]) is first
    assert select_canonical([]) is None


def test_reconcile_skips_unparseable_candidates():
    codec = EnvelopeCodec()
    engine = ReconciliationEngine(codec)
    sources = {
        "eventProposalFormData": codec.encode(codec.wrap("eventProposalFormData", {"foo": 1, "bar": 2})),
        "formData": "{corrupt",
        "submitEventFormData": json.dumps(
            {"organizationName": "Acme", "contactEmail": "a@b.com", "x": 1, "y": 2, "z": 3}
        ),
        "eventFormData": None,
    }

    result = engine.reconcile(sources)
    assert result.source == "submitEventFormData"
    assert result.score == 23
    assert result.fields["organizationName"] == "Acme"
    assert result.skipped == ["formData"]
    assert result.considered == ["eventProposalFormData", "submitEventFormData"]


def test_reconcile_preferred_wins_ties_and_accept_filters():
    engine = ReconciliationEngine(EnvelopeCodec())
    preferred = Candidate("sections", {"organizationName": "Acme", "draftId": "p1"})
    sources = [
        ("formDataBackup", json.dumps({"organizationName": "Acme", "draftId": "p1"})),
        ("formData", json.dumps({"organizationName": "Other", "contactEmail": "o@x.com", "draftId": "p2"})),
    ]

    result = engine.reconcile(sources, preferred=[preferred], accept=lambda c: c.fields.get("draftId") == "p1")
    assert result.source == "sections"
    assert "formData" not in result.considered


def test_reconcile_with_nothing_stored():
    result = ReconciliationEngine(EnvelopeCodec()).reconcile({})
    assert result.found is False
    assert result.fields == {}
