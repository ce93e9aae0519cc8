from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, Protocol

from ..config.loader import SyncConfig
from ..db.document_store import DocumentStore
from ..errors import AuditBlockedError, SyncError, SyncErrorCode, map_to_sync_error
from ..logging.telemetry_log import TelemetrySink
from ..models.registry import RegistryDiff, RegistryUpdate
from ..models.run import RunPhase, RunStatus, SyncRunResult, TriggerContext
from ..models.sheet_data import SheetData
from ..models.telemetry import (
    ANOMALY_SAMPLE_LIMIT,
    SchemaChangeTelemetry,
    SyncRunTelemetry,
    cap_sample,
    utc_now_iso,
)
from .audit_gate import audit_identity, missing_rows_payload
from .header_registry import build_ordered_headers, build_registry, derive_version, diff_registry
from .normalizer import normalize_rows
from .notifier import SchemaChangeNotifier
from .progress import RunProgress
from .upsert_engine import UpsertEngine

"""Sync orchestration.

One ``run`` drives a single sheet through
fetching -> auditing -> (blocked | normalizing) -> diffing-registry -> upserting
-> (success | failed). Phases run strictly one after another. Phase timings
are recorded for telemetry only.

Telemetry contract: exactly one SyncRunTelemetry per run whatever the outcome
(success / skipped for an audit block / failed), plus a SchemaChangeTelemetry
when a live run changed the column registry.

The previous registry is looked up from the store at the start of every run;
nothing about earlier runs is cached in the process.
"""

__all__ = ["SheetSource", "SyncOrchestrator"]

logger = logging.getLogger(__name__)


class SheetSource(Protocol):
    def fetch(self) -> SheetData: ...


class SyncOrchestrator:
    def __init__(
        self,
        store: DocumentStore,
        source: SheetSource,
        *,
        sheet_id: str,
        tab_name: str = "Devices",
        identity_column: str = "Serial",
        telemetry: TelemetrySink | None = None,
        notifier: SchemaChangeNotifier | None = None,
        max_dynamic_columns: int = 100,
        anomaly_sample_limit: int = ANOMALY_SAMPLE_LIMIT,
        show_progress: bool | None = None,
    ) -> None:
        self.store = store
        self.source = source
        self.sheet_id = sheet_id
        self.tab_name = tab_name
        self.identity_column = identity_column
        self.telemetry = telemetry
        self.notifier = notifier
        self.max_dynamic_columns = max_dynamic_columns
        self.anomaly_sample_limit = min(anomaly_sample_limit, ANOMALY_SAMPLE_LIMIT)
        self.show_progress = show_progress
        self.engine = UpsertEngine(store, telemetry)

    @classmethod
    def from_config(
        cls,
        cfg: SyncConfig,
        store: DocumentStore,
        source: SheetSource,
        *,
        telemetry: TelemetrySink | None = None,
        notifier: SchemaChangeNotifier | None = None,
        show_progress: bool | None = None,
    ) -> SyncOrchestrator:
        return cls(
            store,
            source,
            sheet_id=cfg.sheet_id,
            tab_name=cfg.tab_name,
            identity_column=cfg.identity_column,
            telemetry=telemetry,
            notifier=notifier,
            max_dynamic_columns=cfg.max_dynamic_columns,
            anomaly_sample_limit=cfg.anomaly_sample_limit,
            show_progress=show_progress,
        )

    def run(
        self,
        trigger: TriggerContext | None = None,
        *,
        dry_run: bool = False,
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> SyncRunResult:
        """Execute one sync run.

        Raises:
            AuditBlockedError: rows lack the identity value; nothing was written.
            SyncError: configuration problem, write failure (WriteFailureError)
                or any other failure mapped to UNKNOWN_FAILURE.
        """
        trigger = trigger or TriggerContext()
        run_id = run_id or str(uuid.uuid4())
        now = now or datetime.now(UTC)
        started = time.perf_counter()
        started_at = utc_now_iso()
        timings: dict[str, int] = {}
        progress = RunProgress(self.sheet_id, enabled=self.show_progress)
        counts: dict[str, Any] = {}

        @contextmanager
        def phase(name: RunPhase) -> Iterator[None]:
            progress.enter(name)
            phase_started = time.perf_counter()
            try:
                yield
            finally:
                timings[name.value] = int((time.perf_counter() - phase_started) * 1000)

        def emit(status: RunStatus, **fields: Any) -> None:
            if self.telemetry is None:
                return
            merged = {**counts, **fields}
            merged["anomalies"] = cap_sample(merged.get("anomalies", ()), self.anomaly_sample_limit)
            self.telemetry.emit(
                SyncRunTelemetry(
                    sheet_id=self.sheet_id,
                    run_id=run_id,
                    trigger=trigger.type,
                    requested_by=trigger.requested_by,
                    anonymized=trigger.anonymized,
                    queue_latency_ms=trigger.queue_latency_ms,
                    started_at=started_at,
                    completed_at=utc_now_iso(),
                    duration_ms=int((time.perf_counter() - started) * 1000),
                    status=status.value,
                    dry_run=dry_run,
                    **merged,
                )
            )

        try:
            with phase(RunPhase.FETCHING):
                data = self.source.fetch()
            logger.info(
                "event=DEVICE_SYNC_FETCH run=%s sheet=%s rows=%d pages=%d retries=%d duration_ms=%d",
                run_id,
                self.sheet_id,
                data.metrics.row_count or len(data.rows),
                data.metrics.page_count,
                data.metrics.retry_count,
                data.metrics.duration_ms,
            )
            counts["row_count"] = len(data.rows)

            with phase(RunPhase.AUDITING):
                audit = audit_identity(
                    data,
                    sheet_id=self.sheet_id,
                    tab_name=self.tab_name,
                    identity_column=self.identity_column,
                    telemetry=self.telemetry,
                    trigger=trigger,
                    mode="dry-run" if dry_run else "live",
                )
            if audit.blocked:
                blocked = AuditBlockedError(audit)
                blocked.details["missingRows"] = missing_rows_payload(audit)
                progress.finish(RunPhase.BLOCKED)
                emit(
                    RunStatus.SKIPPED,
                    rows_skipped=audit.missing_count,
                    reason=blocked.message,
                    error_code=blocked.code.value,
                )
                raise blocked

            with phase(RunPhase.NORMALIZING):
                headers = data.ordered_headers or build_ordered_headers(data.headers)
                entries = build_registry(headers, data.rows)
                version = derive_version(entries)
                normalization = normalize_rows(
                    data.rows,
                    self.sheet_id,
                    version,
                    headers=headers,
                    now=now,
                    max_dynamic_columns=self.max_dynamic_columns,
                )
            counts.update(
                rows_skipped=normalization.skipped_count,
                column_total=len(entries),
                column_version=version,
                anomalies=tuple(normalization.anomalies),
            )

            with phase(RunPhase.DIFFING_REGISTRY):
                previous = self.store.load_registry(self.sheet_id)
                diff = diff_registry(entries, previous)
                update = RegistryUpdate(
                    sheet_origin=self.sheet_id,
                    entries=entries,
                    removed=list(diff.removed) + [prev for prev, _ in diff.renamed],
                    version=version,
                )
            counts.update(
                columns_added=len(diff.added),
                columns_removed=len(diff.removed),
                columns_renamed=len(diff.renamed),
            )

            with phase(RunPhase.UPSERTING):
                upsert = self.engine.apply(
                    normalization.records,
                    self.sheet_id,
                    registry=update,
                    dry_run=dry_run,
                    run_id=run_id,
                    anomalies=normalization.anomalies,
                    trigger=trigger,
                    emit_telemetry=False,
                    row_count=normalization.row_count,
                    now=now,
                )
        except AuditBlockedError:
            raise
        except SyncError as e:
            progress.finish(RunPhase.FAILED)
            emit(RunStatus.FAILED, reason=e.message, error_code=e.code.value)
            logger.error("event=DEVICE_SYNC_FAILED run=%s sheet=%s code=%s error=%s",
                         run_id, self.sheet_id, e.code.value, e.message)
            raise
        except Exception as e:
            mapped = map_to_sync_error(e, SyncErrorCode.UNKNOWN_FAILURE)
            progress.finish(RunPhase.FAILED)
            emit(RunStatus.FAILED, reason=mapped.message, error_code=mapped.code.value)
            logger.error("event=DEVICE_SYNC_FAILED run=%s sheet=%s code=%s error=%s",
                         run_id, self.sheet_id, mapped.code.value, mapped.message)
            raise mapped from e

        change = self._schema_change(diff, run_id, previous, version, len(entries))
        notified = False
        suppressed_reason: str | None = None
        if change is not None:
            logger.info(
                "event=SYNC_COLUMNS_CHANGED run=%s sheet=%s added=%d removed=%d renamed=%d version=%s",
                run_id,
                self.sheet_id,
                len(diff.added),
                len(diff.removed),
                len(diff.renamed),
                version,
            )
            if not dry_run and self.telemetry is not None:
                self.telemetry.emit(change)
            if self.notifier is None:
                suppressed_reason = "dry_run" if dry_run else "no_webhook"
            else:
                outcome = self.notifier.notify(change, dry_run=dry_run)
                notified = outcome.delivered
                suppressed_reason = outcome.suppressed_reason

        duration_ms = int((time.perf_counter() - started) * 1000)
        emit(
            RunStatus.SUCCESS,
            rows_processed=upsert.added + upsert.updated + upsert.unchanged,
            rows_skipped=max(normalization.row_count - upsert.written - upsert.unchanged, 0),
            conflicts=upsert.conflicts,
            added=upsert.added,
            updated=upsert.updated,
            unchanged=upsert.unchanged,
            legacy_ids_updated=upsert.legacy_ids_updated,
            anomalies=upsert.anomalies,
            mode=upsert.mode.value,
            notification_suppressed_reason=suppressed_reason,
            schema_change=change if not dry_run else None,
        )
        progress.finish(RunPhase.SUCCESS)
        logger.info(
            "event=DEVICE_SYNC_COMPLETED run=%s sheet=%s status=success mode=%s duration_ms=%d",
            run_id,
            self.sheet_id,
            upsert.mode.value,
            duration_ms,
        )
        return SyncRunResult(
            run_id=run_id,
            sheet_id=self.sheet_id,
            status=RunStatus.SUCCESS,
            audit=audit,
            normalization=normalization,
            diff=diff,
            registry_version=version,
            upsert=upsert,
            duration_ms=duration_ms,
            phase_timings_ms=timings,
            schema_change_notified=notified,
            notification_suppressed_reason=suppressed_reason,
        )

    def _schema_change(
        self,
        diff: RegistryDiff,
        run_id: str,
        previous: list[Any],
        version: str,
        column_total: int,
    ) -> SchemaChangeTelemetry | None:
        if not diff.has_changes:
            return None
        return SchemaChangeTelemetry(
            sheet_id=self.sheet_id,
            run_id=run_id,
            added=tuple(e.label for e in diff.added),
            removed=tuple(e.label for e in diff.removed),
            renamed=tuple((prev.label, cur.label) for prev, cur in diff.renamed),
            previous_version=derive_version(previous) if previous else None,
            current_version=version,
            column_total=column_total,
            created_at=utc_now_iso(),
        )
