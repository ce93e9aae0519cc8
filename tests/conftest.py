# Shared pytest fixtures
from __future__ import annotations

import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import pandas as pd
import pytest

from roster_sync.db.memory_store import MemoryDocumentStore
from roster_sync.models.sheet_data import FetchMetrics, RowMetadata, SheetData
from roster_sync.services.header_registry import build_ordered_headers

DEFAULT_HEADERS = ["Serial", "Device ID", "Assigned To", "Status", "Condition", "Location"]


@pytest.fixture()
def temp_workdir(monkeypatch) -> Path:
    with tempfile.TemporaryDirectory() as d:
        p = Path(d)
        (p / "config").mkdir()
        (p / "data").mkdir()
        (p / "logs").mkdir()
        monkeypatch.chdir(p)
        yield p


@pytest.fixture()
def sample_config_yaml() -> str:
    return """sheet:
  sheet_id: devices-main
  tab_name: Devices
  identity_column: Serial
source:
  workbook: ./data/roster.xlsx
store:
  host: localhost
  port: 5432
  user: appuser
  password: secret
  database: appdb
  transactions: auto
notifications:
  paused: false
  timeout_seconds: 2
telemetry:
  directory: ./logs
"""


@pytest.fixture()
def write_config(temp_workdir: Path, sample_config_yaml: str) -> Path:
    cfg = temp_workdir / "config" / "sync.yml"
    cfg.write_text(sample_config_yaml, encoding="utf-8")
    return cfg


class RecordingSink:
    """TelemetrySink that keeps every emitted record in order."""

    def __init__(self) -> None:
        self.records: list[Any] = []

    def emit(self, record: Any) -> None:
        self.records.append(record)

    def of_type(self, event_type: str) -> list[Any]:
        return [r for r in self.records if r.event_type == event_type]


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def memory_store() -> MemoryDocumentStore:
    return MemoryDocumentStore()


def make_sheet_data(
    rows: Sequence[dict[str, Any]],
    headers: Sequence[str] | None = None,
    *,
    first_row_number: int = 2,
) -> SheetData:
    """SheetData as the fetch collaborator would deliver it (header on row 1)."""
    labels = list(headers) if headers is not None else list(DEFAULT_HEADERS)
    full_rows = [{label: row.get(label) for label in labels} for row in rows]
    return SheetData(
        headers=labels,
        ordered_headers=build_ordered_headers(labels),
        rows=full_rows,
        row_metadata=[
            RowMetadata(row_number=first_row_number + i, raw_cells=list(r.values()))
            for i, r in enumerate(full_rows)
        ],
        metrics=FetchMetrics(duration_ms=5, row_count=len(full_rows), page_count=1, retry_count=0),
    )


@pytest.fixture()
def sheet_data_factory():
    return make_sheet_data


class StaticSource:
    """SheetSource returning a fixed SheetData (swap ``data`` between runs)."""

    def __init__(self, data: SheetData) -> None:
        self.data = data
        self.calls = 0

    def fetch(self) -> SheetData:
        self.calls += 1
        return self.data


def device_rows(count: int, *, prefix: str = "SN-") -> list[dict[str, Any]]:
    return [
        {
            "Serial": f"{prefix}{i:03d}",
            "Device ID": f"D{i:03d}",
            "Assigned To": f"user{i}",
            "Status": "in use",
            "Condition": "good",
            "Location": f"Room {100 + i}",
        }
        for i in range(1, count + 1)
    ]


def write_workbook(path: Path, rows: Sequence[dict[str, Any]], *, tab_name: str = "Devices") -> Path:
    df = pd.DataFrame(list(rows))
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        df.to_excel(writer, sheet_name=tab_name, index=False)
    return path


@pytest.fixture()
def device_rows_factory():
    return device_rows


@pytest.fixture()
def workbook_writer():
    return write_workbook


@pytest.fixture()
def static_source_factory():
    return StaticSource


@pytest.fixture()
def propagate_logs(monkeypatch):
    # setup_logging() は propagate=False にするため caplog 用に一時的に戻す
    import logging

    monkeypatch.setattr(logging.getLogger("roster_sync"), "propagate", True)
