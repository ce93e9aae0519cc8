from __future__ import annotations

import math
import time
import zipfile
from datetime import UTC, date, datetime
from pathlib import Path
from typing import Any

import pandas as pd

from ..models.record import isoformat_utc
from ..models.sheet_data import CellValue, FetchMetrics, RawRow, RowMetadata, SheetData
from ..services.header_registry import build_ordered_headers

"""Local workbook source.

Reads one tab of an .xlsx workbook with pandas/openpyxl and produces the
SheetData handed to the sync orchestrator:
- Row 1 is the header row; a blank header cell becomes ``column_N`` (1-based)
- Fully blank rows are dropped; row numbers keep their sheet position
- Cells are typed (int, float, bool, datetime, str); NaN / blank -> None
"""

__all__ = [
    "WorkbookReadError",
    "WorkbookSource",
    "read_workbook",
    "to_cell_value",
]


class WorkbookReadError(Exception):
    """Workbook missing, unreadable, or the tab / header row is absent."""


def to_cell_value(value: Any) -> CellValue:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if pd.isna(value):
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    # numpy scalar -> python
    if hasattr(value, "item"):
        value = value.item()
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return int(value) if value.is_integer() else value
    return str(value)


def _header_labels(header_row: list[Any]) -> list[str]:
    labels: list[str] = []
    for index, raw in enumerate(header_row):
        cell = to_cell_value(raw)
        text = "" if cell is None else str(cell).strip()
        labels.append(text or f"column_{index + 1}")
    return labels


def read_workbook(path: Path | str, tab_name: str) -> SheetData:
    path = Path(path)
    started = time.time()
    if not path.exists():
        raise WorkbookReadError(f"workbook not found: {path}")
    try:
        xls = pd.ExcelFile(path, engine="openpyxl")
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        raise WorkbookReadError(f"cannot open workbook {path}: {e}") from e
    if tab_name not in [str(n) for n in xls.sheet_names]:
        raise WorkbookReadError(f"tab '{tab_name}' not found in {path.name}")

    # ヘッダなしで生読み (1行目をヘッダとして後で適用)
    df = xls.parse(tab_name, header=None)
    if df.shape[0] < 1:
        raise WorkbookReadError(f"tab '{tab_name}' has no header row")

    labels = _header_labels(df.iloc[0].tolist())
    ordered = build_ordered_headers(labels)

    rows: list[RawRow] = []
    metadata: list[RowMetadata] = []
    for position in range(1, df.shape[0]):
        raw = df.iloc[position]
        if raw.isna().all():
            continue
        cells = [to_cell_value(v) for v in raw.tolist()]
        rows.append({label: cell for label, cell in zip(labels, cells)})
        metadata.append(RowMetadata(row_number=position + 1, raw_cells=cells))

    completed = time.time()
    metrics = FetchMetrics(
        duration_ms=int((completed - started) * 1000),
        row_count=len(rows),
        page_count=1,
        retry_count=0,
        started_at=isoformat_utc(datetime.fromtimestamp(started, tz=UTC)),
        completed_at=isoformat_utc(datetime.fromtimestamp(completed, tz=UTC)),
    )
    return SheetData(
        headers=labels,
        ordered_headers=ordered,
        rows=rows,
        row_metadata=metadata,
        metrics=metrics,
    )


class WorkbookSource:
    """SheetSource backed by a local workbook tab."""

    def __init__(self, path: Path | str, tab_name: str = "Devices") -> None:
        self.path = Path(path)
        self.tab_name = tab_name

    def fetch(self) -> SheetData:
        return read_workbook(self.path, self.tab_name)
