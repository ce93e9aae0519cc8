from __future__ import annotations

from datetime import datetime

from roster_sync.models.registry import ColumnDataType, ColumnDescriptor
from roster_sync.services.header_registry import (
    COLUMN_SAMPLE_LIMIT,
    EMPTY_REGISTRY_VERSION,
    build_ordered_headers,
    build_registry,
    derive_version,
    diff_registry,
    infer_column_profile,
    key_collisions,
    normalize_header_key,
)


def _desc(key: str, order: int, label: str | None = None, **kw) -> ColumnDescriptor:
    return ColumnDescriptor(key=key, label=label or key.title(), display_order=order, **kw)


def test_normalize_header_key():
    assert normalize_header_key("Assigned To", 1) == "assigned_to"
    assert normalize_header_key("  Serial #  ", 1) == "serial"
    assert normalize_header_key("   ", 3) == "column_3"
    assert normalize_header_key("日本語", 2) == "column_2"


def test_build_ordered_headers_collision_appends_rank():
    headers = build_ordered_headers(["Status", "status", "Owner"])
    assert [h.normalized_key for h in headers] == ["status", "status_2", "owner"]
    assert [h.position for h in headers] == [0, 1, 2]


def test_build_ordered_headers_collision_keys_follow_label_not_position():
    forward = build_ordered_headers(["Foo Bar", "Serial", "foo_bar"])
    backward = build_ordered_headers(["foo_bar", "Serial", "Foo Bar"])
    assert {h.name: h.normalized_key for h in forward} == {h.name: h.normalized_key for h in backward}
    assert {h.name: h.normalized_key for h in forward}["Foo Bar"] == "foo_bar"
    assert key_collisions(backward) == {"foo_bar": ["Foo Bar", "foo_bar"]}


def test_build_ordered_headers_suffix_never_shadows_literal_label():
    headers = build_ordered_headers(["status_2", "status", "Status"])
    keys = [h.normalized_key for h in headers]
    assert len(set(keys)) == 3
    assert keys[2] == "status"


def test_infer_single_type():
    rows = [{"n": 1}, {"n": 2.5}, {"n": 3}]
    assert infer_column_profile("n", rows) == (ColumnDataType.NUMBER, False)
    assert infer_column_profile("b", [{"b": True}, {"b": False}]) == (ColumnDataType.BOOLEAN, False)


def test_infer_mixed_falls_back_to_string():
    rows = [{"c": 1}, {"c": "one"}]
    assert infer_column_profile("c", rows) == (ColumnDataType.STRING, False)
    rows = [{"c": True}, {"c": 2}, {"c": "x"}]
    assert infer_column_profile("c", rows) == (ColumnDataType.STRING, False)


def test_infer_number_and_boolean_mix_is_unknown():
    rows = [{"f": True}, {"f": 0}, {"f": None}]
    assert infer_column_profile("f", rows) == (ColumnDataType.UNKNOWN, True)


def test_infer_date_dominates_and_nullable():
    rows = [{"d": "n/a"}, {"d": datetime(2024, 1, 1)}, {"d": None}]
    assert infer_column_profile("d", rows) == (ColumnDataType.DATE, True)


def test_infer_no_samples_unknown():
    assert infer_column_profile("x", []) == (ColumnDataType.UNKNOWN, True)
    assert infer_column_profile("x", [{"x": None}, {"x": "  "}]) == (ColumnDataType.UNKNOWN, True)


def test_infer_samples_capped():
    rows = [{"n": i} for i in range(COLUMN_SAMPLE_LIMIT)] + [{"n": "late string"}]
    assert infer_column_profile("n", rows) == (ColumnDataType.NUMBER, False)


def test_build_registry_uses_header_keys_and_positions():
    headers = build_ordered_headers(["Serial", "Purchase Date"])
    rows = [{"Serial": "A", "Purchase Date": datetime(2024, 1, 1)}]
    entries = build_registry(headers, rows)
    assert [(e.key, e.display_order, e.data_type) for e in entries] == [
        ("serial", 0, ColumnDataType.STRING),
        ("purchase_date", 1, ColumnDataType.DATE),
    ]


def test_diff_detects_positional_rename():
    previous = [_desc("status", 0), _desc("owner", 1)]
    current = [_desc("status", 0), _desc("assignee", 1)]
    diff = diff_registry(current, previous)
    assert diff.added == []
    assert diff.removed == []
    assert [e.key for e in diff.unchanged] == ["status"]
    assert [(a.key, b.key) for a, b in diff.renamed] == [("owner", "assignee")]
    assert diff.has_changes


def test_diff_add_and_remove_at_different_positions():
    previous = [_desc("status", 0), _desc("owner", 1)]
    current = [_desc("status", 0), _desc("location", 2)]
    diff = diff_registry(current, previous)
    assert [e.key for e in diff.added] == ["location"]
    assert [e.key for e in diff.removed] == ["owner"]
    assert diff.renamed == []


def test_diff_no_changes():
    entries = [_desc("status", 0), _desc("owner", 1)]
    diff = diff_registry(entries, list(entries))
    assert not diff.has_changes
    assert len(diff.unchanged) == 2


def test_derive_version_stable_under_reorder():
    a = [_desc("status", 0), _desc("owner", 1)]
    b = [_desc("owner", 0), _desc("status", 1)]
    assert derive_version(a) == derive_version(b)
    assert derive_version(a).startswith("registry-2-")


def test_derive_version_changes_with_shape():
    a = [_desc("status", 0, nullable=True)]
    b = [_desc("status", 0, nullable=False)]
    c = [_desc("status", 0, data_type=ColumnDataType.NUMBER)]
    assert len({derive_version(a), derive_version(b), derive_version(c)}) == 3


def test_derive_version_empty():
    assert derive_version([]) == EMPTY_REGISTRY_VERSION
