"""Domain models for the device roster sync.

Sheet input, normalized records, the column registry, per-phase results, run
state and telemetry records.
"""

from .record import NormalizedRecord, ScalarValue, TransferMetadata
from .registry import ColumnDataType, ColumnDescriptor, RegistryDiff, RegistryUpdate
from .results import (
    AuditResult,
    AuditStatus,
    ExecutionMode,
    MissingIdentityRow,
    NormalizationResult,
    UpsertSummary,
    WriteOperation,
)
from .run import RunPhase, RunStatus, SyncRunResult, TriggerContext
from .sheet_data import CellValue, FetchMetrics, RawRow, RowMetadata, SheetData, SheetHeader
from .telemetry import AuditTelemetry, SchemaChangeTelemetry, SyncRunTelemetry, TelemetryRecord

__all__ = [
    # Sheet input
    "CellValue",
    "RawRow",
    "SheetHeader",
    "RowMetadata",
    "FetchMetrics",
    "SheetData",
    # Records & registry
    "ScalarValue",
    "TransferMetadata",
    "NormalizedRecord",
    "ColumnDataType",
    "ColumnDescriptor",
    "RegistryDiff",
    "RegistryUpdate",
    # Phase results
    "NormalizationResult",
    "AuditStatus",
    "MissingIdentityRow",
    "AuditResult",
    "WriteOperation",
    "ExecutionMode",
    "UpsertSummary",
    # Run
    "TriggerContext",
    "RunStatus",
    "RunPhase",
    "SyncRunResult",
    # Telemetry
    "SyncRunTelemetry",
    "SchemaChangeTelemetry",
    "AuditTelemetry",
    "TelemetryRecord",
]
