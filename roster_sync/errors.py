from __future__ import annotations

import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any

"""Sync error kinds and catalog.

Partition-level problems (missing identity column, audit block, write failure)
abort a run and surface as a single SyncError subclass. Row-level problems are
never raised; they are accumulated as anomaly strings by the services.
"""

__all__ = [
    "SyncErrorCode",
    "SyncError",
    "ConfigurationError",
    "AuditBlockedError",
    "WriteFailureError",
    "RollbackFailureError",
    "map_to_sync_error",
]


class SyncErrorCode(Enum):
    CONFIG_MISSING = "CONFIG_MISSING"
    INVALID_SYNC_CONFIGURATION = "INVALID_SYNC_CONFIGURATION"
    AUDIT_BLOCKED = "AUDIT_BLOCKED"
    TRANSFORM_VALIDATION_FAILED = "TRANSFORM_VALIDATION_FAILED"
    WRITE_FAILED = "WRITE_FAILED"
    ROLLBACK_FAILED = "ROLLBACK_FAILED"
    UNKNOWN_FAILURE = "UNKNOWN_FAILURE"


@dataclass(frozen=True)
class _CatalogEntry:
    default_message: str
    recommendation: str


ERROR_CATALOG: dict[SyncErrorCode, _CatalogEntry] = {
    SyncErrorCode.CONFIG_MISSING: _CatalogEntry(
        "Sync configuration is unavailable",
        "Check config/sync.yml and the .env overrides, then retry.",
    ),
    SyncErrorCode.INVALID_SYNC_CONFIGURATION: _CatalogEntry(
        "Sync configuration is invalid",
        "Make sure the sheet carries the identity column and the sheet id / tab are correct.",
    ),
    SyncErrorCode.AUDIT_BLOCKED: _CatalogEntry(
        "Identity audit blocked the sync run",
        "Fill in the missing identity values in the sheet and re-run the sync.",
    ),
    SyncErrorCode.TRANSFORM_VALIDATION_FAILED: _CatalogEntry(
        "Sheet rows failed validation",
        "Fix the rows listed in the anomalies and retry the sync.",
    ),
    SyncErrorCode.WRITE_FAILED: _CatalogEntry(
        "Database write failed; last dataset was preserved",
        "Inspect the database logs, then rerun the sync.",
    ),
    SyncErrorCode.ROLLBACK_FAILED: _CatalogEntry(
        "Rollback was unable to restore the pre-run snapshot",
        "Restore the partition manually from a baseline snapshot before the next run.",
    ),
    SyncErrorCode.UNKNOWN_FAILURE: _CatalogEntry(
        "Unexpected sync failure occurred",
        "Check the sync logs with the reference id for details.",
    ),
}


class SyncError(Exception):
    """Base class for terminal, run-level sync errors."""

    code: SyncErrorCode = SyncErrorCode.UNKNOWN_FAILURE

    def __init__(
        self,
        message: str | None = None,
        *,
        code: SyncErrorCode | None = None,
        recommendation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if code is not None:
            self.code = code
        entry = ERROR_CATALOG[self.code]
        super().__init__(message or entry.default_message)
        self.recommendation = recommendation or entry.recommendation
        self.reference_id = str(uuid.uuid4())
        self.details = details or {}

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "recommendation": self.recommendation,
            "referenceId": self.reference_id,
        }


class ConfigurationError(SyncError):
    """Mandatory column absent or sync settings unusable. Fatal, not retried."""

    code = SyncErrorCode.INVALID_SYNC_CONFIGURATION


class AuditBlockedError(SyncError):
    """Rows are missing the identity value; nothing was written."""

    code = SyncErrorCode.AUDIT_BLOCKED

    def __init__(self, audit: Any, message: str | None = None) -> None:
        super().__init__(
            message
            or f"identity audit blocked the run: {audit.missing_count} of {audit.rows_audited} rows missing identity",
            details={"missingCount": audit.missing_count, "rowsAudited": audit.rows_audited},
        )
        self.audit = audit


class RollbackFailureError(SyncError):
    code = SyncErrorCode.ROLLBACK_FAILED


class WriteFailureError(SyncError):
    """Store write failed after normalization succeeded.

    ``rollback_error`` is set when the fallback restore also failed; it is
    reported next to the original failure, never instead of it.
    """

    code = SyncErrorCode.WRITE_FAILED

    def __init__(
        self,
        message: str | None = None,
        *,
        rollback_error: RollbackFailureError | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.rollback_error = rollback_error


def map_to_sync_error(
    error: BaseException, fallback_code: SyncErrorCode = SyncErrorCode.UNKNOWN_FAILURE
) -> SyncError:
    if isinstance(error, SyncError):
        return error
    mapped = SyncError(str(error) or None, code=fallback_code)
    mapped.__cause__ = error
    return mapped
