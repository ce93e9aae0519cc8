from __future__ import annotations

from ..models.run import SyncRunResult

"""SUMMARY line rendering.

Format:
SUMMARY run={id} status={status} rows={rows} added={n} updated={n} unchanged={n}
conflicts={n} skipped={n} columns={n} elapsed_sec={elapsed}
"""

__all__ = ["format_elapsed", "render_summary_line", "summary_line_for_result"]


def format_elapsed(seconds: float) -> str:
    # 整数はそのまま、極小値は指数表記を避ける
    if seconds == 0:
        return "0"
    if seconds == int(seconds):
        return str(int(seconds))
    if seconds < 0.01:
        return f"{seconds:.6f}".rstrip("0").rstrip(".")
    return f"{seconds:.3f}".rstrip("0").rstrip(".")


def render_summary_line(
    run_id: str,
    status: str,
    *,
    rows: int = 0,
    added: int = 0,
    updated: int = 0,
    unchanged: int = 0,
    conflicts: int = 0,
    skipped: int = 0,
    columns: int = 0,
    elapsed_seconds: float = 0.0,
) -> str:
    """Render the SUMMARY line for any run outcome.

    >>> render_summary_line("r1", "success", rows=3, added=3, columns=4, elapsed_seconds=1.5)
    'SUMMARY run=r1 status=success rows=3 added=3 updated=0 unchanged=0 conflicts=0 skipped=0 columns=4 elapsed_sec=1.5'
    """
    return (
        f"SUMMARY run={run_id} "
        f"status={status} "
        f"rows={rows} "
        f"added={added} "
        f"updated={updated} "
        f"unchanged={unchanged} "
        f"conflicts={conflicts} "
        f"skipped={skipped} "
        f"columns={columns} "
        f"elapsed_sec={format_elapsed(elapsed_seconds)}"
    )


def summary_line_for_result(result: SyncRunResult) -> str:
    upsert = result.upsert
    rows = result.normalization.row_count
    processed = upsert.added + upsert.updated + upsert.unchanged
    return render_summary_line(
        result.run_id,
        result.status.value,
        rows=rows,
        added=upsert.added,
        updated=upsert.updated,
        unchanged=upsert.unchanged,
        conflicts=upsert.conflicts,
        skipped=max(rows - processed, 0),
        columns=len(result.diff.added) + len(result.diff.unchanged) + len(result.diff.renamed),
        elapsed_seconds=result.duration_ms / 1000,
    )
