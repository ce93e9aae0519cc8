from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

"""NormalizedRecord model.

NormalizedRecord is the canonical device entity derived from one sheet row.
The fixed business fields are typed; columns outside the fixed schema land in
``dynamic_attributes`` whose values are restricted to the closed scalar set
(str | int | float | bool | None) so hashing and serialization stay
deterministic.
"""

__all__ = [
    "ScalarValue",
    "TransferMetadata",
    "NormalizedRecord",
    "isoformat_utc",
]

ScalarValue = Union[str, int, float, bool, None]


def isoformat_utc(value: datetime | None) -> str | None:
    """ISO8601 with 'Z' suffix; naive datetimes are taken as UTC."""
    if value is None:
        return None
    text = value.isoformat()
    if value.tzinfo is None:
        return text + "Z"
    return text.replace("+00:00", "Z")


@dataclass(frozen=True)
class TransferMetadata:
    """Last-transfer (offboarding) details. Present only when any input column was set."""
    last_actor: str | None = None
    last_action: str | None = None
    last_transfer_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "lastActor": self.last_actor,
            "lastAction": self.last_action,
            "lastTransferAt": isoformat_utc(self.last_transfer_at),
        }


@dataclass(frozen=True)
class NormalizedRecord:
    identity: str  # lower-cased serial; case-insensitive unique key
    sheet_origin: str
    assigned_to: str = "Unassigned"
    status: str = "Unknown"
    condition: str = "Unknown"
    legacy_identity: str | None = None
    offboarding_status: str | None = None
    offboarding_metadata: TransferMetadata | None = None
    last_seen: datetime | None = None
    last_transfer_notes: str | None = None
    dynamic_attributes: dict[str, ScalarValue] = field(default_factory=dict)
    schema_version: str | None = None
    content_hash: str = ""
    last_synced_at: datetime | None = None

    def to_document(self) -> dict[str, Any]:
        """JSON-ready document as persisted by the document store."""
        return {
            "identity": self.identity,
            "legacyIdentity": self.legacy_identity,
            "sheetOrigin": self.sheet_origin,
            "assignedTo": self.assigned_to,
            "status": self.status,
            "condition": self.condition,
            "offboardingStatus": self.offboarding_status,
            "offboardingMetadata": (
                self.offboarding_metadata.to_document() if self.offboarding_metadata else None
            ),
            "lastSeen": isoformat_utc(self.last_seen),
            "lastTransferNotes": self.last_transfer_notes,
            "dynamicAttributes": dict(self.dynamic_attributes) or None,
            "schemaVersion": self.schema_version,
            "contentHash": self.content_hash,
            "lastSyncedAt": isoformat_utc(self.last_synced_at),
        }
