from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

"""Inbound sheet data model.

SheetData is what the fetch collaborator hands to the sync core: header labels
in sheet order, typed rows keyed by header label, per-row sheet metadata and
fetch metrics. Rows are transient; one SheetData is consumed by one run.
"""

__all__ = [
    "CellValue",
    "RawRow",
    "SheetHeader",
    "RowMetadata",
    "FetchMetrics",
    "SheetData",
]

CellValue = Union[str, int, float, bool, datetime, None]
RawRow = dict[str, CellValue]


@dataclass(frozen=True)
class SheetHeader:
    name: str  # Label as it appears in the sheet
    normalized_key: str  # Slug derived from the label (see header_registry.normalize_header_key)
    position: int  # 0-based column position


@dataclass(frozen=True)
class RowMetadata:
    row_number: int  # 1-based sheet row (header row = 1)
    raw_cells: list[CellValue] = field(default_factory=list)


@dataclass(frozen=True)
class FetchMetrics:
    duration_ms: int = 0
    row_count: int = 0
    page_count: int = 0
    retry_count: int = 0
    started_at: str | None = None  # ISO8601 UTC
    completed_at: str | None = None


@dataclass(frozen=True)
class SheetData:
    headers: list[str]
    ordered_headers: list[SheetHeader]
    rows: list[RawRow]
    row_metadata: list[RowMetadata] = field(default_factory=list)
    metrics: FetchMetrics = field(default_factory=FetchMetrics)
