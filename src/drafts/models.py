from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


SCHEMA_VERSION = "2.0"

# Top-level draft fields with a dedicated meaning; everything else is payload.
ORGANIZATION_NAME = "organizationName"
CONTACT_NAME = "contactName"
CONTACT_EMAIL = "contactEmail"
CONTACT_PHONE = "contactPhone"
SELECTED_EVENT_TYPE = "selectedEventType"
CURRENT_SECTION = "currentSection"
ENTITY_ID_FIELDS = ("id", "proposalId", "draftId")
# Written by the storage layer itself, never typed by the user.
BOOKKEEPING_FIELDS = ("draftId", "sections", "completed")


def is_populated(value: Any) -> bool:
    """True for values a user actually filled in (not None / blank / empty)."""
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return True


def count_user_fields(fields: Dict[str, Any]) -> int:
    """
    Number of distinct populated fields the user filled in.

    Top-level keys count unless they are storage bookkeeping; fields inside
    per-section payloads under `sections` count too. A name seen both at the
    top level and in a section counts once.
    """
    names = {k for k, v in fields.items() if k not in BOOKKEEPING_FIELDS and is_populated(v)}
    sections = fields.get("sections")
    if isinstance(sections, dict):
        for payload in sections.values():
            if isinstance(payload, dict):
                names.update(k for k, v in payload.items() if is_populated(v))
    return len(names)


class StorageKey(BaseModel):
    """
    Composite key for one section payload of one draft.

    Rendered as "<namespace>:<entityId>:<section>". Two keys with the same
    triple address the same stored entry; a later write overwrites.
    """

    model_config = ConfigDict(frozen=True)

    namespace: str
    entity_id: str
    section: str

    def render(self) -> str:
        return f"{self.namespace}:{self.entity_id}:{self.section}"

    @classmethod
    def parse(cls, raw: str) -> Optional["StorageKey"]:
        parts = raw.split(":", 2)
        if len(parts) != 3 or not all(parts):
            return None
        return cls(namespace=parts[0], entity_id=parts[1], section=parts[2])

    @staticmethod
    def entity_prefix(namespace: str, entity_id: str) -> str:
        return f"{namespace}:{entity_id}:"


def file_key(entity_id: str, field_name: str) -> str:
    return f"file_{entity_id}_{field_name}"


def file_prefix(entity_id: str) -> str:
    return f"file_{entity_id}_"


class RecordEnvelope(BaseModel):
    """
    Timestamped, versioned wrapper around every persisted value.

    Wire format uses camelCase names:
        {"value": ..., "timestamp": <epoch ms>, "expiresAt": <epoch ms|null>,
         "schemaVersion": "2.0"}
    """

    model_config = ConfigDict(populate_by_name=True)

    value: Any = None
    timestamp: int = Field(..., description="Epoch milliseconds of the write")
    expires_at: Optional[int] = Field(default=None, alias="expiresAt")
    schema_version: str = Field(default=SCHEMA_VERSION, alias="schemaVersion")


class FileAttachmentDescriptor(BaseModel):
    """
    Metadata (and optionally the encoded content) of an attached file.

    When `size` exceeds the compression threshold the stored form is always
    metadata-only: `compressed=True`, `hasData=True`, no `dataUrl`.
    """

    model_config = ConfigDict(populate_by_name=True)

    name: str
    size: int = 0
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    has_data: bool = Field(default=False, alias="hasData")
    compressed: bool = False
    data_url: Optional[str] = Field(default=None, alias="dataUrl")

    @classmethod
    def looks_like(cls, value: Any) -> bool:
        """Duck-type check used when walking arbitrary form payloads."""
        if not isinstance(value, dict):
            return False
        if "name" not in value or "size" not in value:
            return False
        return any(k in value for k in ("dataUrl", "mimeType", "type", "hasData"))

    @classmethod
    def from_payload(cls, value: Dict[str, Any]) -> "FileAttachmentDescriptor":
        data = dict(value)
        # Browser File objects call it "type"
        if "mimeType" not in data and "type" in data:
            data["mimeType"] = data["type"]
        size = data.get("size")
        return cls.model_validate(
            {
                "name": str(data.get("name", "")),
                "size": int(size) if isinstance(size, (int, float)) else 0,
                "mimeType": data.get("mimeType"),
                "hasData": bool(data.get("hasData")) or bool(data.get("dataUrl")),
                "compressed": bool(data.get("compressed", False)),
                "dataUrl": data.get("dataUrl"),
            }
        )

    def metadata_only(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "size": self.size,
            "mimeType": self.mime_type,
            "hasData": True,
            "compressed": True,
        }


class DraftRecord(BaseModel):
    """
    Aggregate in-memory view of one proposal draft.

    Owned by the facade; the UI only ever sees `to_snapshot()` copies.

    Fields
    - organization / contact fields collected by the organization section.
    - selected_event_type: "school-based" | "community-based" (free-form).
    - sections: per-section payload maps, keyed by section name.
    - completed: per-section completion flags.
    - current_section: resume marker as last written by the wizard.
    Unknown top-level keys from legacy snapshots are kept as extras.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    organization_name: str = Field(default="", alias="organizationName")
    contact_name: str = Field(default="", alias="contactName")
    contact_email: str = Field(default="", alias="contactEmail")
    contact_phone: str = Field(default="", alias="contactPhone")
    selected_event_type: str = Field(default="", alias="selectedEventType")
    current_section: Optional[str] = Field(default=None, alias="currentSection")
    sections: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    completed: Dict[str, bool] = Field(default_factory=dict)

    @classmethod
    def empty(cls) -> "DraftRecord":
        return cls()

    @classmethod
    def from_snapshot(cls, fields: Dict[str, Any]) -> "DraftRecord":
        data = dict(fields)
        for name in (ORGANIZATION_NAME, CONTACT_NAME, CONTACT_EMAIL, CONTACT_PHONE, SELECTED_EVENT_TYPE):
            if data.get(name) is None:
                data.pop(name, None)
            elif not isinstance(data[name], str):
                data[name] = str(data[name])
        # Older wizards stored the event type as "eventType"
        legacy_type = data.pop("eventType", None)
        if SELECTED_EVENT_TYPE not in data and isinstance(legacy_type, str):
            data[SELECTED_EVENT_TYPE] = legacy_type
        marker = data.get(CURRENT_SECTION)
        if marker is not None and not isinstance(marker, str):
            data.pop(CURRENT_SECTION)
        if not isinstance(data.get("sections", {}), dict):
            data.pop("sections")
        if not isinstance(data.get("completed", {}), dict):
            data.pop("completed")
        return cls.model_validate(data)

    def to_snapshot(self) -> Dict[str, Any]:
        """Flat camelCase dict containing only populated fields."""
        raw = self.model_dump(by_alias=True)
        return {k: v for k, v in raw.items() if is_populated(v)}

    def populated_keys(self) -> int:
        return count_user_fields(self.to_snapshot())

    def has_identity(self) -> bool:
        return is_populated(self.organization_name) and is_populated(self.contact_email)

    def has_event_type(self) -> bool:
        if is_populated(self.selected_event_type):
            return True
        return is_populated((self.model_extra or {}).get("organizationType"))


class KeyCounts(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    form_data: int = Field(default=0, alias="formData")
    file_data: int = Field(default=0, alias="fileData")
    other: int = 0


class StorageHealthSnapshot(BaseModel):
    """Live storage usage; recomputed on every request."""

    model_config = ConfigDict(populate_by_name=True)

    total_bytes_used: int = Field(default=0, alias="totalBytesUsed")
    max_bytes: int = Field(default=0, alias="maxBytes")
    percent_used: float = Field(default=0.0, alias="percentUsed")
    key_counts: KeyCounts = Field(default_factory=KeyCounts, alias="keyCounts")

    @property
    def is_healthy(self) -> bool:
        return self.percent_used < 80.0
