from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Column registry models.

ColumnDescriptor describes one sheet column; RegistryDiff is the comparison of
the current header set against the previously persisted registry for the same
sheet origin.
"""

__all__ = [
    "ColumnDataType",
    "ColumnDescriptor",
    "RegistryDiff",
    "RegistryUpdate",
]


class ColumnDataType(Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ColumnDescriptor:
    key: str  # normalized slug of label
    label: str
    display_order: int
    data_type: ColumnDataType = ColumnDataType.UNKNOWN
    nullable: bool = True

    def to_document(self) -> dict[str, Any]:
        return {
            "columnKey": self.key,
            "label": self.label,
            "displayOrder": self.display_order,
            "dataType": self.data_type.value,
            "nullable": self.nullable,
        }

    @staticmethod
    def from_document(doc: dict[str, Any]) -> ColumnDescriptor:
        return ColumnDescriptor(
            key=doc["columnKey"],
            label=doc["label"],
            display_order=int(doc["displayOrder"]),
            data_type=ColumnDataType(doc.get("dataType") or "unknown"),
            nullable=bool(doc.get("nullable", True)),
        )


@dataclass(frozen=True)
class RegistryDiff:
    added: list[ColumnDescriptor] = field(default_factory=list)
    removed: list[ColumnDescriptor] = field(default_factory=list)
    unchanged: list[ColumnDescriptor] = field(default_factory=list)
    # (previous, current) pairs matched by display order
    renamed: list[tuple[ColumnDescriptor, ColumnDescriptor]] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.removed or self.renamed)


@dataclass(frozen=True)
class RegistryUpdate:
    """What the upsert engine writes to the registry alongside the record batch."""
    sheet_origin: str
    entries: list[ColumnDescriptor]
    removed: list[ColumnDescriptor]
    version: str
