from __future__ import annotations

import argparse
import os
import sys
import time
import uuid
from pathlib import Path

from roster_sync.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config, load_env_file
from roster_sync.db.document_store import DocumentStore, DocumentStoreError, PostgresDocumentStore
from roster_sync.db.memory_store import MemoryDocumentStore
from roster_sync.errors import AuditBlockedError, SyncError, SyncErrorCode, map_to_sync_error
from roster_sync.excel.reader import WorkbookSource
from roster_sync.logging.init import log_summary, setup_logging
from roster_sync.logging.telemetry_log import JsonLinesTelemetrySink
from roster_sync.models.results import BatchStatsAccumulator
from roster_sync.models.run import TriggerContext
from roster_sync.services.notifier import SchemaChangeNotifier
from roster_sync.services.orchestrator import SyncOrchestrator
from roster_sync.services.summary import render_summary_line, summary_line_for_result

"""CLI entrypoint.

Flow:
- Load .env (override) then config/sync.yml
- Open the document store (PostgreSQL, or in-memory when DISABLE_DB_CONNECT=1)
- Run one sync for the configured sheet
- Flush telemetry, print the SUMMARY line, map the outcome to an exit code
"""

EXIT_SUCCESS = 0
EXIT_FATAL = 1
EXIT_AUDIT_BLOCKED = 3

_SUMMARY_PREFIX = "SUMMARY "


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Device roster spreadsheet -> document store sync")
    p.add_argument("--config", default=str(DEFAULT_CONFIG_PATH), help="Path to sync YAML config")
    p.add_argument("--env-file", default=".env", help="dotenv file loaded before the config")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    p.add_argument("--dry-run", action="store_true", help="Compute the full run without writing")
    p.add_argument(
        "--trigger",
        choices=("manual", "scheduled", "system"),
        default="manual",
        help="Trigger type recorded in telemetry",
    )
    p.add_argument("--requested-by", default=None, help="Operator recorded in telemetry")
    return p.parse_args(argv)


def _log_summary_line(line: str) -> None:
    # log_summary が "SUMMARY " ラベルを付けるため先頭を除去
    log_summary(line[len(_SUMMARY_PREFIX):] if line.startswith(_SUMMARY_PREFIX) else line)


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # [] が渡された場合に sys.argv (pytest の引数) を読まないよう None のときだけ参照
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)

    load_env_file(Path(args.env_file), override=True)
    try:
        cfg = load_config(Path(args.config))
    except ConfigError as e:
        missing = map_to_sync_error(e, SyncErrorCode.CONFIG_MISSING)
        logger.error(f"config: [{missing.code.value}] {missing} ref={missing.reference_id}")
        logger.error(f"recommendation: {missing.recommendation}")
        return EXIT_FATAL

    if args.debug:
        for h in logger.handlers:
            h.setLevel("DEBUG")
        logger.setLevel("DEBUG")
        logger.debug("debug mode enabled")

    batch_stats = BatchStatsAccumulator()
    postgres: PostgresDocumentStore | None = None
    store: DocumentStore
    if os.getenv("DISABLE_DB_CONNECT") == "1":
        logger.debug("DB connect disabled via DISABLE_DB_CONNECT=1 -> mock mode")
        store = MemoryDocumentStore(supports_transactions=cfg.store.transactions != "disabled")
        db_mode = "mock"
    else:
        try:
            postgres = PostgresDocumentStore.connect(
                cfg.store,
                metrics_callback=lambda m: batch_stats.add_batch_time(m.elapsed_seconds),
            )
            postgres.ensure_schema()
        except DocumentStoreError as e:
            logger.error(f"store: {e}")
            if postgres is not None:
                postgres.close()
            return EXIT_FATAL
        store = postgres
        db_mode = "live"

    telemetry = JsonLinesTelemetrySink(cfg.telemetry_directory)
    notifier = SchemaChangeNotifier.from_config(cfg.notifications)
    orchestrator = SyncOrchestrator.from_config(
        cfg,
        store,
        WorkbookSource(cfg.workbook, cfg.tab_name),
        telemetry=telemetry,
        notifier=notifier,
    )
    trigger = TriggerContext(type=args.trigger, requested_by=args.requested_by)
    run_id = str(uuid.uuid4())
    started = time.perf_counter()

    logger.info(f"sync sheet={cfg.sheet_id} tab={cfg.tab_name} mode={db_mode} dry_run={args.dry_run}")
    try:
        result = orchestrator.run(trigger, dry_run=args.dry_run, run_id=run_id)
    except AuditBlockedError as e:
        logger.error(f"audit: {e} ref={e.reference_id}")
        logger.error(f"recommendation: {e.recommendation}")
        _log_summary_line(
            render_summary_line(
                run_id,
                "skipped",
                rows=e.audit.rows_audited,
                skipped=e.audit.missing_count,
                elapsed_seconds=time.perf_counter() - started,
            )
        )
        return EXIT_AUDIT_BLOCKED
    except SyncError as e:
        logger.error(f"sync: [{e.code.value}] {e} ref={e.reference_id}")
        logger.error(f"recommendation: {e.recommendation}")
        _log_summary_line(
            render_summary_line(run_id, "failed", elapsed_seconds=time.perf_counter() - started)
        )
        return EXIT_FATAL
    finally:
        telemetry_path = telemetry.flush()
        logger.debug(f"telemetry written: {telemetry_path}")
        notifier.close()
        if postgres is not None:
            postgres.close()

    batches, avg_sec, p95_sec = batch_stats.get_stats()
    if batches:
        logger.debug(f"batches={batches} avg_batch_sec={avg_sec:.4f} p95_batch_sec={p95_sec:.4f}")
    if result.notification_suppressed_reason:
        logger.debug(f"schema notification suppressed: {result.notification_suppressed_reason}")
    _log_summary_line(summary_line_for_result(result))
    return EXIT_SUCCESS


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
