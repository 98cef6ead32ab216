from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from .models import DraftRecord, count_user_fields


class WizardStep(str, Enum):
    OVERVIEW = "overview"
    EVENT_TYPE_SELECTION = "eventTypeSelection"
    ORGANIZATION_INFO = "organizationInfo"
    SCHOOL_EVENT = "schoolEvent"
    COMMUNITY_EVENT = "communityEvent"
    REPORTING = "reporting"
    SUBMITTED = "submitted"

    @property
    def terminal(self) -> bool:
        return self is WizardStep.SUBMITTED


INITIAL_STEP = WizardStep.OVERVIEW

# Older wizard builds and section names that address the same step
_ALIASES: Dict[str, WizardStep] = {
    "orgInfo": WizardStep.ORGANIZATION_INFO,
    "organization": WizardStep.ORGANIZATION_INFO,
    "organizationinfo": WizardStep.ORGANIZATION_INFO,
    "eventType": WizardStep.EVENT_TYPE_SELECTION,
    "event-type": WizardStep.EVENT_TYPE_SELECTION,
    "school-event": WizardStep.SCHOOL_EVENT,
    "schoolBased": WizardStep.SCHOOL_EVENT,
    "community-event": WizardStep.COMMUNITY_EVENT,
    "communityBased": WizardStep.COMMUNITY_EVENT,
    "start": WizardStep.OVERVIEW,
}

_NEEDS_EVENT_TYPE = frozenset(
    {
        WizardStep.ORGANIZATION_INFO,
        WizardStep.SCHOOL_EVENT,
        WizardStep.COMMUNITY_EVENT,
        WizardStep.REPORTING,
        WizardStep.SUBMITTED,
    }
)
_NEEDS_ORGANIZATION = frozenset(
    {
        WizardStep.SCHOOL_EVENT,
        WizardStep.COMMUNITY_EVENT,
        WizardStep.REPORTING,
        WizardStep.SUBMITTED,
    }
)


def normalize_marker(marker: Optional[str]) -> Optional[WizardStep]:
    """Map a stored `currentSection` value to a step, or None if unrecognized."""
    if not marker or not isinstance(marker, str):
        return None
    marker = marker.strip()
    try:
        return WizardStep(marker)
    except ValueError:
        pass
    return _ALIASES.get(marker) or _ALIASES.get(marker.lower())


@dataclass(frozen=True)
class ResumeDecision:
    step: WizardStep
    rule: str
    marker: Optional[WizardStep] = None


class DraftStateMachine:
    """
    Decides which wizard step a reloaded draft resumes at.

    One-shot and guarded: each call evaluates the rules below in order and
    returns the first match; nothing loops or retries.

    1. safe-start   : at most `safe_start_threshold` populated keys -> Overview
    2. marker       : identity present and the marker names a later step
    3. event-type   : marker's step needs an event type that is missing
    4. organization : marker's step needs organization info that is missing
    5. default      : Overview
    """

    def __init__(self, *, safe_start_threshold: int = 2) -> None:
        self.safe_start_threshold = safe_start_threshold

    def decide(self, draft: Union[DraftRecord, Mapping[str, Any]]) -> ResumeDecision:
        if isinstance(draft, DraftRecord):
            record = draft
            count = record.populated_keys()
        else:
            record = DraftRecord.from_snapshot(dict(draft))
            count = count_user_fields(dict(draft))
        marker = normalize_marker(record.current_section)

        if count <= self.safe_start_threshold:
            return ResumeDecision(step=WizardStep.OVERVIEW, rule="safe-start", marker=marker)

        if record.has_identity() and marker is not None and marker is not INITIAL_STEP:
            return ResumeDecision(step=marker, rule="marker", marker=marker)

        if marker in _NEEDS_EVENT_TYPE and not record.has_event_type():
            return ResumeDecision(step=WizardStep.EVENT_TYPE_SELECTION, rule="event-type", marker=marker)

        if marker in _NEEDS_ORGANIZATION and not record.has_identity():
            return ResumeDecision(step=WizardStep.ORGANIZATION_INFO, rule="organization", marker=marker)

        return ResumeDecision(step=WizardStep.OVERVIEW, rule="default", marker=marker)
