from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, TypeVar, Union

"""Immutable telemetry records.

One SyncRunTelemetry per orchestration attempt (append-only, never updated in
place), a SchemaChangeTelemetry whenever the column registry itself changed,
and an AuditTelemetry per identity audit. ``to_dict`` emits a fixed key set;
JSON Lines sinks serialize exactly that dict.
"""

__all__ = [
    "ANOMALY_SAMPLE_LIMIT",
    "cap_sample",
    "utc_now_iso",
    "SchemaChangeTelemetry",
    "SyncRunTelemetry",
    "AuditTelemetry",
    "TelemetryRecord",
]

ANOMALY_SAMPLE_LIMIT = 25

T = TypeVar("T")


def cap_sample(items: Sequence[T], limit: int = ANOMALY_SAMPLE_LIMIT) -> tuple[T, ...]:
    return tuple(items[: max(limit, 0)])


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class SchemaChangeTelemetry:
    sheet_id: str
    run_id: str
    added: tuple[str, ...]  # column labels
    removed: tuple[str, ...]
    renamed: tuple[tuple[str, str], ...]  # (previous label, current label)
    previous_version: str | None
    current_version: str
    column_total: int
    created_at: str
    event_type: str = "SYNC_COLUMNS_CHANGED"

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "sheetId": self.sheet_id,
            "runId": self.run_id,
            "added": list(self.added),
            "removed": list(self.removed),
            "renamed": [{"from": a, "to": b} for a, b in self.renamed],
            "previousVersion": self.previous_version,
            "currentVersion": self.current_version,
            "columnTotal": self.column_total,
            "createdAt": self.created_at,
        }


@dataclass(frozen=True)
class SyncRunTelemetry:
    sheet_id: str
    run_id: str
    trigger: str
    requested_by: str | None
    anonymized: bool
    started_at: str
    completed_at: str
    duration_ms: int
    status: str  # success | skipped | failed
    queue_latency_ms: int | None = None
    row_count: int = 0
    rows_processed: int = 0
    rows_skipped: int = 0
    conflicts: int = 0
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    legacy_ids_updated: int = 0
    columns_added: int = 0
    columns_removed: int = 0
    columns_renamed: int = 0
    column_total: int = 0
    column_version: str | None = None
    reason: str | None = None
    error_code: str | None = None
    anomalies: tuple[str, ...] = ()
    dry_run: bool = False
    mode: str | None = None
    notification_suppressed_reason: str | None = None
    schema_change: SchemaChangeTelemetry | None = None
    event_type: str = "SYNC_RUN"

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "sheetId": self.sheet_id,
            "runId": self.run_id,
            "trigger": self.trigger,
            "requestedBy": self.requested_by,
            "anonymized": self.anonymized,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "durationMs": self.duration_ms,
            "queueLatencyMs": self.queue_latency_ms,
            "rowCount": self.row_count,
            "rowsProcessed": self.rows_processed,
            "rowsSkipped": self.rows_skipped,
            "conflicts": self.conflicts,
            "added": self.added,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "legacyIdsUpdated": self.legacy_ids_updated,
            "columnsAdded": self.columns_added,
            "columnsRemoved": self.columns_removed,
            "columnsRenamed": self.columns_renamed,
            "columnTotal": self.column_total,
            "columnVersion": self.column_version,
            "status": self.status,
            "reason": self.reason,
            "errorCode": self.error_code,
            "anomalies": list(cap_sample(self.anomalies)),
            "dryRun": self.dry_run,
            "mode": self.mode,
            "notificationSuppressedReason": self.notification_suppressed_reason,
            "schemaChange": self.schema_change.to_dict() if self.schema_change else None,
        }


@dataclass(frozen=True)
class AuditTelemetry:
    sheet_id: str
    tab_name: str
    rows_audited: int
    missing_count: int
    skipped_rows: tuple[dict[str, Any], ...]  # capped sample of missing rows
    status: str  # passed | blocked
    mode: str  # live | dry-run
    trigger: str
    requested_by: str | None
    created_at: str
    event_type: str = "SERIAL_AUDIT"

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "sheetId": self.sheet_id,
            "tabName": self.tab_name,
            "rowsAudited": self.rows_audited,
            "missingSerialCount": self.missing_count,
            "skippedRows": list(cap_sample(self.skipped_rows)),
            "status": self.status,
            "mode": self.mode,
            "trigger": self.trigger,
            "requestedBy": self.requested_by,
            "createdAt": self.created_at,
        }


TelemetryRecord = Union[SyncRunTelemetry, SchemaChangeTelemetry, AuditTelemetry]
