"""
Draft persistence and recovery for the proposal submission wizard.

Keeps partially filled wizard data durable across reloads, survives storage
quota exhaustion, reconciles overlapping legacy snapshots of the same draft,
and decides which wizard step to resume at.
"""

from .config import DraftStorageConfig, PersistenceMode
from .facade import DraftStorageFacade
from .models import DraftRecord, RecordEnvelope, StorageHealthSnapshot
from .resume import ResumeDecision, WizardStep

__all__ = [
    "DraftRecord",
    "DraftStorageConfig",
    "DraftStorageFacade",
    "PersistenceMode",
    "RecordEnvelope",
    "ResumeDecision",
    "StorageHealthSnapshot",
    "WizardStep",
]
