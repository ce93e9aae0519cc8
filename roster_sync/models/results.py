from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal

from .record import NormalizedRecord

"""Per-phase result models for the sync pipeline.

NormalizationResult (row normalizer), AuditResult (identity audit gate),
WriteOperation / UpsertSummary (upsert engine). All are created once per
phase and never mutated after being returned.
"""

__all__ = [
    "NormalizationResult",
    "AuditStatus",
    "MissingIdentityRow",
    "AuditResult",
    "WriteOperation",
    "ExecutionMode",
    "UpsertSummary",
    "BatchStatsAccumulator",
]


@dataclass(frozen=True)
class NormalizationResult:
    records: list[NormalizedRecord]
    anomalies: list[str]
    row_count: int
    skipped_count: int


class AuditStatus(Enum):
    PASSED = "passed"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class MissingIdentityRow:
    row_number: int  # 1-based sheet row
    identity_value: str | int | float | bool | None
    row: dict[str, Any]  # serialized cells (datetimes as ISO strings)

    def to_dict(self) -> dict[str, Any]:
        return {"rowNumber": self.row_number, "serialValue": self.identity_value, "row": self.row}


@dataclass(frozen=True)
class AuditResult:
    sheet_id: str
    tab_name: str
    rows_audited: int
    missing_count: int
    missing_rows: list[MissingIdentityRow]
    status: AuditStatus
    started_at: str
    completed_at: str

    @property
    def blocked(self) -> bool:
        return self.status is AuditStatus.BLOCKED


@dataclass(frozen=True)
class WriteOperation:
    kind: Literal["insert", "update"]
    record: NormalizedRecord


class ExecutionMode(Enum):
    TRANSACTION = "transaction"
    FALLBACK = "fallback"
    DRY_RUN = "dry-run"


@dataclass(frozen=True)
class UpsertSummary:
    run_id: str
    added: int
    updated: int
    unchanged: int
    conflicts: int
    duration_ms: int
    anomalies: tuple[str, ...] = ()
    legacy_ids_updated: int = 0
    mode: ExecutionMode = ExecutionMode.TRANSACTION
    dry_run: bool = False

    @property
    def written(self) -> int:
        return self.added + self.updated


class BatchStatsAccumulator:
    """Accumulates store write batch timings for the upsert summary log line."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Return (total_batches, avg_batch_seconds, p95_batch_seconds)."""
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)
        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method="inclusive"
            )[18]
        return (total_batches, avg_batch_seconds, p95_batch_seconds)
