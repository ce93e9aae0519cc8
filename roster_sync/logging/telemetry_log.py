from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from roster_sync.models.telemetry import TelemetryRecord

"""Telemetry sinks.

The sync core hands every telemetry record to a TelemetrySink. The JSON Lines
sink buffers records in memory and appends them to
``<directory>/sync-events-YYYYMMDD-HHMMSS.log`` (UTC, one file per process)
on flush. Records are append-only; nothing here rewrites an emitted line.
"""

__all__ = [
    "TelemetrySink",
    "JsonLinesTelemetrySink",
]

DEFAULT_LOGS_DIR = Path("./logs")
TIMESTAMP_FMT = "%Y%m%d-%H%M%S"


class TelemetrySink(Protocol):
    def emit(self, record: TelemetryRecord) -> None: ...


class JsonLinesTelemetrySink:
    """In-memory buffer of telemetry records. ``flush`` writes JSON Lines.

    Serial use only; the orchestrator flushes once at the end of each run.
    """

    def __init__(self, directory: Path | str = DEFAULT_LOGS_DIR) -> None:
        self.directory = Path(directory)
        self._records: list[TelemetryRecord] = []
        self._file_path: Path | None = None

    @property
    def file_path(self) -> Path:
        if self._file_path is None:
            self.directory.mkdir(parents=True, exist_ok=True)
            stamp = datetime.now(UTC).strftime(TIMESTAMP_FMT)
            self._file_path = self.directory / f"sync-events-{stamp}.log"
        return self._file_path

    def emit(self, record: TelemetryRecord) -> None:
        self._records.append(record)

    def flush(self) -> Path:
        fp = self.file_path
        if not self._records:
            return fp
        with fp.open("a", encoding="utf-8") as f:
            for r in self._records:
                f.write(json.dumps(r.to_dict(), ensure_ascii=False) + "\n")
        self._records.clear()
        return fp
