from __future__ import annotations

from datetime import UTC, datetime

from roster_sync.services.normalizer import (
    coerce_cell,
    coerce_date,
    coerce_string,
    compute_content_hash,
    normalize_rows,
)

ORIGIN = "devices-main"


def _row(**overrides):
    row = {
        "Serial": "SN-001",
        "Device ID": "D001",
        "Assigned To": "alice",
        "Status": "in use",
        "Condition": "good",
        "Location": "Room 101",
    }
    row.update(overrides)
    return row


def test_normalize_basic_row():
    result = normalize_rows([_row()], ORIGIN, "registry-6-abc")
    assert result.row_count == 1
    assert result.skipped_count == 0
    assert result.anomalies == []
    rec = result.records[0]
    assert rec.identity == "sn-001"
    assert rec.legacy_identity == "D001"
    assert rec.assigned_to == "alice"
    assert rec.status == "In Use"
    assert rec.condition == "Good"
    assert rec.schema_version == "registry-6-abc"
    assert rec.dynamic_attributes == {"location": "Room 101"}
    assert len(rec.content_hash) == 64


def test_defaults_for_missing_business_fields():
    result = normalize_rows([{"Serial": "A1"}], ORIGIN)
    rec = result.records[0]
    assert rec.assigned_to == "Unassigned"
    assert rec.status == "Unknown"
    assert rec.condition == "Unknown"
    assert rec.offboarding_metadata is None
    assert rec.last_seen is None


def test_missing_identity_is_skipped_with_anomaly():
    rows = [_row(), _row(Serial=None, **{"Device ID": None}), _row(Serial="SN-003")]
    result = normalize_rows(rows, ORIGIN)
    assert [r.identity for r in result.records] == ["sn-001", "sn-003"]
    assert result.skipped_count == 1
    assert result.anomalies == ["row 2: missing serial - row skipped"]


def test_legacy_identity_used_when_serial_blank():
    result = normalize_rows([_row(Serial="  ", **{"Device ID": "D-77"})], ORIGIN)
    assert result.records[0].identity == "d-77"


def test_header_alias_case_insensitive():
    result = normalize_rows([{"SERIAL NUMBER": "X9", "STATUS": "retired"}], ORIGIN)
    rec = result.records[0]
    assert rec.identity == "x9"
    assert rec.status == "Retired"
    assert rec.dynamic_attributes == {}


def test_hash_stable_under_field_reordering():
    row = _row()
    reordered = dict(reversed(list(row.items())))
    a = normalize_rows([row], ORIGIN, "v1").records[0]
    b = normalize_rows([reordered], ORIGIN, "v1").records[0]
    assert a.content_hash == b.content_hash


def test_hash_changes_with_business_field():
    a = normalize_rows([_row()], ORIGIN, "v1").records[0]
    b = normalize_rows([_row(Status="retired")], ORIGIN, "v1").records[0]
    c = normalize_rows([_row(Location="Room 999")], ORIGIN, "v1").records[0]
    assert a.content_hash != b.content_hash
    assert a.content_hash != c.content_hash


def test_hash_ignores_sync_timestamp():
    a = normalize_rows([_row()], ORIGIN, "v1", now=datetime(2024, 1, 1, tzinfo=UTC)).records[0]
    b = normalize_rows([_row()], ORIGIN, "v1", now=datetime(2025, 6, 1, tzinfo=UTC)).records[0]
    assert a.content_hash == b.content_hash
    assert compute_content_hash(a) == a.content_hash


def test_dynamic_attribute_cap():
    row = {"Serial": "S1", "A": 1, "B": 2, "C": 3}
    result = normalize_rows([row], ORIGIN, max_dynamic_columns=2)
    rec = result.records[0]
    assert rec.dynamic_attributes == {"a": 1, "b": 2}
    assert result.anomalies == ["row 1: dynamic attribute count 3 exceeds limit 2"]


def test_dynamic_attribute_cap_ignores_column_order():
    row = {"Serial": "S1", "C": 3, "A": 1, "B": 2}
    rec = normalize_rows([row], ORIGIN, max_dynamic_columns=2).records[0]
    assert rec.dynamic_attributes == {"a": 1, "b": 2}


def test_colliding_dynamic_keys_do_not_depend_on_column_order():
    row = {"Serial": "A1", "Foo Bar": "one", "foo_bar": "two"}
    reordered = {"foo_bar": "two", "Serial": "A1", "Foo Bar": "one"}
    a = normalize_rows([row], ORIGIN, "v1")
    b = normalize_rows([reordered], ORIGIN, "v1")

    assert a.records[0].dynamic_attributes == {"foo_bar": "one", "foo_bar_2": "two"}
    assert b.records[0].dynamic_attributes == a.records[0].dynamic_attributes
    assert a.records[0].content_hash == b.records[0].content_hash
    assert a.anomalies == ["row 1: columns 'Foo Bar', 'foo_bar' share attribute key foo_bar"]
    assert b.anomalies == a.anomalies


def test_dynamic_values_coerced():
    row = {"Serial": "S1", "Count": "42", "Code": "007", "Purchased": "2024-03-01", "Flag": True}
    rec = normalize_rows([row], ORIGIN).records[0]
    assert rec.dynamic_attributes == {
        "count": 42,
        "code": "007",
        "purchased": "2024-03-01T00:00:00Z",
        "flag": True,
    }


def test_offboarding_metadata_only_when_present():
    row = _row(**{"Offboarding Actor": "bob", "Offboarding Timestamp": "2024-05-01T10:00:00Z"})
    rec = normalize_rows([row], ORIGIN).records[0]
    assert rec.offboarding_metadata is not None
    assert rec.offboarding_metadata.last_actor == "bob"
    assert rec.offboarding_metadata.last_transfer_at == datetime(2024, 5, 1, 10, tzinfo=UTC)
    assert "offboarding_actor" not in rec.dynamic_attributes


def test_validation_failure_becomes_anomaly():
    result = normalize_rows([_row()], "   ")
    assert result.records == []
    assert result.skipped_count == 1
    assert result.anomalies[0].startswith("row 1: sheetOrigin")


def test_coerce_cell():
    assert coerce_cell("42") == 42
    assert coerce_cell("3.5") == 3.5
    assert coerce_cell("007") == "007"
    assert coerce_cell("2024-01-02") == datetime(2024, 1, 2, tzinfo=UTC)
    assert coerce_cell(" abc ") == "abc"
    assert coerce_cell(5.0) == 5
    assert coerce_cell(float("nan")) is None


def test_coerce_date_is_best_effort():
    assert coerce_date("not a date") is None
    assert coerce_date("") is None
    assert coerce_date(True) is None
    assert coerce_date(0) == datetime(1970, 1, 1, tzinfo=UTC)
    assert coerce_date(datetime(2024, 1, 1)) == datetime(2024, 1, 1, tzinfo=UTC)


def test_coerce_string():
    assert coerce_string("  ") is None
    assert coerce_string(12.0) == "12"
    assert coerce_string(False) == "false"
    assert coerce_string(datetime(2024, 1, 1, tzinfo=UTC)) == "2024-01-01T00:00:00Z"
