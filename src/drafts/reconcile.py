from __future__ import annotations

import logging
from collections import abc
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .envelope import EnvelopeCodec
from .models import (
    CONTACT_EMAIL,
    CURRENT_SECTION,
    ENTITY_ID_FIELDS,
    ORGANIZATION_NAME,
    is_populated,
)


ORGANIZATION_WEIGHT = 10
EMAIL_WEIGHT = 10
ENTITY_ID_WEIGHT = 5
MARKER_WEIGHT = 1

_WEIGHTED_FIELDS = (ORGANIZATION_NAME, CONTACT_EMAIL, CURRENT_SECTION) + ENTITY_ID_FIELDS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Candidate:
    """One stored snapshot of a draft, tagged with the key it came from."""

    source: str
    fields: Dict[str, Any]


@dataclass
class ReconciliationResult:
    source: Optional[str]
    fields: Dict[str, Any]
    score: int
    considered: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.source is not None


def score(fields: Mapping[str, Any]) -> int:
    """
    Rank a snapshot by how much of the user's work it holds.

    Identity fields dominate the resume marker, which dominates raw volume:
    +10 organization name, +10 contact email, +5 entity id, +1 marker, plus
    one per remaining populated top-level field.
    """
    total = 0
    if is_populated(fields.get(ORGANIZATION_NAME)):
        total += ORGANIZATION_WEIGHT
    if is_populated(fields.get(CONTACT_EMAIL)):
        total += EMAIL_WEIGHT
    if any(is_populated(fields.get(name)) for name in ENTITY_ID_FIELDS):
        total += ENTITY_ID_WEIGHT
    if is_populated(fields.get(CURRENT_SECTION)):
        total += MARKER_WEIGHT
    total += sum(1 for k, v in fields.items() if k not in _WEIGHTED_FIELDS and is_populated(v))
    return total


def select_canonical(candidates: Sequence[Candidate]) -> Optional[Candidate]:
    best: Optional[Candidate] = None
    best_score = -1
    for candidate in candidates:
        s = score(candidate.fields)
        # Strict comparison: ties keep the first scanned candidate
        if s > best_score:
            best, best_score = candidate, s
    return best


class ReconciliationEngine:
    """Picks the canonical draft snapshot among overlapping stored keys."""

    def __init__(self, codec: EnvelopeCodec) -> None:
        self._codec = codec

    def candidates(self, sources: Iterable[Tuple[str, Optional[str]]]) -> Tuple[List[Candidate], List[str]]:
        found: List[Candidate] = []
        skipped: List[str] = []
        for source, raw in sources:
            if raw is None:
                continue
            fields = self._codec.unwrap_snapshot(raw)
            if fields is None:
                skipped.append(source)
                continue
            found.append(Candidate(source=source, fields=fields))
        return found, skipped

    def reconcile(
        self,
        sources: Mapping[str, Optional[str]] | Iterable[Tuple[str, Optional[str]]],
        *,
        preferred: Sequence[Candidate] = (),
        accept: Optional[Callable[[Candidate], bool]] = None,
    ) -> ReconciliationResult:
        """
        Select the canonical snapshot.

        `preferred` candidates are scanned before the stored ones and so win
        ties. `accept` can reject parsed candidates (e.g. snapshots that
        belong to another draft); rejected ones are ignored entirely.
        """
        pairs = sources.items() if isinstance(sources, abc.Mapping) else sources
        found, skipped = self.candidates(pairs)
        if skipped:
            logger.info("skipped %d unreadable draft snapshot(s): %s", len(skipped), ", ".join(skipped))
        if accept is not None:
            found = [c for c in found if accept(c)]
        found = list(preferred) + found
        winner = select_canonical(found)
        considered = [c.source for c in found]
        if winner is None:
            return ReconciliationResult(source=None, fields={}, score=0, considered=considered, skipped=skipped)
        return ReconciliationResult(
            source=winner.source,
            fields=dict(winner.fields),
            score=score(winner.fields),
            considered=considered,
            skipped=skipped,
        )
