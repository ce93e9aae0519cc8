from __future__ import annotations

import re

from roster_sync.services.summary import render_summary_line

"""SUMMARY 行フォーマット契約テスト"""

SUMMARY_PATTERN = re.compile(
    r"^SUMMARY\s+run=(\S+)\s+status=(success|skipped|failed)\s+rows=([0-9]+)\s+"
    r"added=([0-9]+)\s+updated=([0-9]+)\s+unchanged=([0-9]+)\s+conflicts=([0-9]+)\s+"
    r"skipped=([0-9]+)\s+columns=([0-9]+)\s+elapsed_sec=([0-9]+\.?[0-9]*)$"
)


def test_summary_pattern_example_line():
    line = (
        "SUMMARY run=3f1c status=success rows=120 added=4 updated=2 unchanged=113 "
        "conflicts=1 skipped=0 columns=14 elapsed_sec=0.84"
    )
    assert SUMMARY_PATTERN.match(line)


def test_rendered_lines_match_contract():
    for status in ("success", "skipped", "failed"):
        line = render_summary_line(
            "run-1", status, rows=10, added=1, updated=2, unchanged=3, conflicts=1, columns=5,
            elapsed_seconds=12.3456,
        )
        m = SUMMARY_PATTERN.match(line)
        assert m, line
        assert m.group(2) == status
        assert m.group(10) == "12.346"


def test_tiny_elapsed_not_scientific():
    line = render_summary_line("r", "success", elapsed_seconds=0.00004)
    assert "e-" not in line
    assert SUMMARY_PATTERN.match(line)
