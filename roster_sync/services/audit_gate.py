from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import Any

from ..errors import ConfigurationError
from ..logging.telemetry_log import TelemetrySink
from ..models.record import isoformat_utc
from ..models.results import AuditResult, AuditStatus, MissingIdentityRow
from ..models.run import TriggerContext
from ..models.sheet_data import CellValue, SheetData
from ..models.telemetry import ANOMALY_SAMPLE_LIMIT, AuditTelemetry, cap_sample, utc_now_iso

"""Identity audit gate.

Runs on the raw fetched rows before normalization. A sheet without the
identity column is a configuration error (raised). A sheet where some rows
lack the identity value is reported as ``blocked`` with the exact sheet row
numbers; the caller must then refuse to upsert anything for the run.
"""

__all__ = [
    "DEFAULT_IDENTITY_COLUMN",
    "AUDIT_SKIPPED_ROW_SAMPLE_LIMIT",
    "has_identity_value",
    "serialize_cell",
    "find_identity_header",
    "audit_identity",
    "missing_rows_payload",
]

logger = logging.getLogger(__name__)

DEFAULT_IDENTITY_COLUMN = "Serial"
AUDIT_SKIPPED_ROW_SAMPLE_LIMIT = ANOMALY_SAMPLE_LIMIT


def has_identity_value(value: CellValue | None) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip() != ""
    return True


def serialize_cell(value: CellValue | None) -> str | int | float | bool | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return isoformat_utc(value)
    return value


def find_identity_header(headers: list[str], identity_column: str) -> str | None:
    wanted = identity_column.strip().lower()
    for header in headers:
        if header.strip().lower() == wanted:
            return header
    return None


def _row_numbers(data: SheetData) -> list[int]:
    # メタデータが欠けている行はヘッダ行 (1) の次から順番に採番
    numbers = [meta.row_number for meta in data.row_metadata[: len(data.rows)]]
    next_number = (numbers[-1] + 1) if numbers else 2
    while len(numbers) < len(data.rows):
        numbers.append(next_number)
        next_number += 1
    return numbers


def audit_identity(
    data: SheetData,
    *,
    sheet_id: str,
    tab_name: str = "Devices",
    identity_column: str = DEFAULT_IDENTITY_COLUMN,
    telemetry: TelemetrySink | None = None,
    trigger: TriggerContext | None = None,
    mode: str = "live",
) -> AuditResult:
    """Audit every fetched row for a non-blank identity value.

    Raises:
        ConfigurationError: the identity column is absent from the headers.
    """
    started = time.time()
    identity_header = find_identity_header(data.headers, identity_column)
    if identity_header is None:
        raise ConfigurationError(
            f"sheet '{tab_name}' must include a {identity_column} column before running the audit",
            details={"sheetId": sheet_id, "tabName": tab_name, "headers": list(data.headers)},
        )

    missing: list[MissingIdentityRow] = []
    for row_number, row in zip(_row_numbers(data), data.rows):
        value = row.get(identity_header)
        if has_identity_value(value):
            continue
        missing.append(
            MissingIdentityRow(
                row_number=row_number,
                identity_value=serialize_cell(value),
                row={str(k): serialize_cell(v) for k, v in row.items()},
            )
        )

    status = AuditStatus.BLOCKED if missing else AuditStatus.PASSED
    completed = time.time()
    result = AuditResult(
        sheet_id=sheet_id,
        tab_name=tab_name,
        rows_audited=len(data.rows),
        missing_count=len(missing),
        missing_rows=missing,
        status=status,
        started_at=data.metrics.started_at or isoformat_utc(datetime.fromtimestamp(started, tz=UTC)),
        completed_at=data.metrics.completed_at or isoformat_utc(datetime.fromtimestamp(completed, tz=UTC)),
    )

    sample = cap_sample(missing, AUDIT_SKIPPED_ROW_SAMPLE_LIMIT)
    if telemetry is not None:
        trig = trigger or TriggerContext()
        telemetry.emit(
            AuditTelemetry(
                sheet_id=sheet_id,
                tab_name=tab_name,
                rows_audited=result.rows_audited,
                missing_count=result.missing_count,
                skipped_rows=tuple(r.to_dict() for r in sample),
                status=status.value,
                mode=mode,
                trigger=trig.type,
                requested_by=trig.requested_by,
                created_at=utc_now_iso(),
            )
        )

    if result.blocked:
        logger.warning(
            "event=SERIAL_AUDIT_FAILURE sheet=%s tab=%s rows_audited=%d missing=%d sample_rows=%s",
            sheet_id,
            tab_name,
            result.rows_audited,
            result.missing_count,
            [r.row_number for r in sample],
        )
    else:
        logger.info(
            "event=SERIAL_AUDIT_SUCCESS sheet=%s tab=%s rows_audited=%d",
            sheet_id,
            tab_name,
            result.rows_audited,
        )
    return result


def missing_rows_payload(result: AuditResult) -> list[dict[str, Any]]:
    """Capped, JSON-ready sample of the offending rows for error details."""
    return [r.to_dict() for r in cap_sample(result.missing_rows, AUDIT_SKIPPED_ROW_SAMPLE_LIMIT)]
