from __future__ import annotations

from types import SimpleNamespace

from roster_sync.errors import (
    AuditBlockedError,
    ConfigurationError,
    RollbackFailureError,
    SyncError,
    SyncErrorCode,
    WriteFailureError,
    map_to_sync_error,
)


def test_catalog_defaults():
    e = ConfigurationError()
    assert e.code is SyncErrorCode.INVALID_SYNC_CONFIGURATION
    assert e.message == "Sync configuration is invalid"
    assert e.recommendation
    payload = e.to_dict()
    assert set(payload) == {"code", "message", "recommendation", "referenceId"}
    assert payload["code"] == "INVALID_SYNC_CONFIGURATION"


def test_reference_ids_are_unique():
    assert SyncError().reference_id != SyncError().reference_id


def test_audit_blocked_message_and_details():
    audit = SimpleNamespace(missing_count=2, rows_audited=10)
    e = AuditBlockedError(audit)
    assert e.code is SyncErrorCode.AUDIT_BLOCKED
    assert "2 of 10 rows" in e.message
    assert e.details == {"missingCount": 2, "rowsAudited": 10}
    assert e.audit is audit


def test_write_failure_carries_rollback_error():
    rollback = RollbackFailureError("restore failed")
    e = WriteFailureError("write failed", rollback_error=rollback)
    assert e.code is SyncErrorCode.WRITE_FAILED
    assert e.rollback_error.code is SyncErrorCode.ROLLBACK_FAILED


def test_map_to_sync_error():
    original = ValueError("bad cell")
    mapped = map_to_sync_error(original)
    assert mapped.code is SyncErrorCode.UNKNOWN_FAILURE
    assert mapped.message == "bad cell"
    assert mapped.__cause__ is original

    existing = ConfigurationError("missing column")
    assert map_to_sync_error(existing) is existing

    assert map_to_sync_error(RuntimeError()).message == "Unexpected sync failure occurred"
    assert (
        map_to_sync_error(KeyError("x"), SyncErrorCode.TRANSFORM_VALIDATION_FAILED).code
        is SyncErrorCode.TRANSFORM_VALIDATION_FAILED
    )
