from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from ..db.document_store import DocumentStore, PartitionSnapshot, TransactionsUnsupportedError
from ..errors import RollbackFailureError, WriteFailureError
from ..logging.telemetry_log import TelemetrySink
from ..models.record import NormalizedRecord
from ..models.registry import RegistryUpdate
from ..models.results import ExecutionMode, UpsertSummary, WriteOperation
from ..models.run import TriggerContext
from ..models.telemetry import SyncRunTelemetry, utc_now_iso

"""Upsert engine.

Flow per ``apply`` call:
1. Look up existing documents for every incoming identity (one round trip)
2. Plan: insert / update / unchanged per record; blank and duplicate
   identities become anomalies (first occurrence wins)
3. Execute
   - transaction: lookup + writes + registry sync in one store transaction
   - fallback: snapshot partition, write one by one, restore snapshot on failure
   - dry-run: plan only, nothing written
4. Emit one SyncRunTelemetry unless the caller suppresses it
"""

__all__ = ["UpsertPlan", "UpsertEngine", "plan_upserts"]

logger = logging.getLogger(__name__)


@dataclass
class UpsertPlan:
    operations: list[WriteOperation] = field(default_factory=list)
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    conflicts: int = 0
    legacy_ids_updated: int = 0
    anomalies: list[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.added + self.updated + self.unchanged


def plan_upserts(
    records: Sequence[NormalizedRecord],
    existing: dict[str, dict[str, Any]],
    sheet_origin: str,
) -> UpsertPlan:
    plan = UpsertPlan()
    seen: set[str] = set()
    for position, record in enumerate(records, start=1):
        identity = (record.identity or "").strip().lower()
        if not identity:
            plan.anomalies.append(f"record {position}: blank identity - skipped")
            continue
        if identity in seen:
            plan.conflicts += 1
            plan.anomalies.append(
                f"Duplicate row detected for {record.identity} in sheet {sheet_origin}"
            )
            continue
        seen.add(identity)
        if record.identity != identity:
            record = replace(record, identity=identity)

        current = existing.get(identity)
        if current is None:
            plan.operations.append(WriteOperation(kind="insert", record=record))
            plan.added += 1
            continue
        if current.get("contentHash") == record.content_hash:
            plan.unchanged += 1
            continue
        plan.operations.append(WriteOperation(kind="update", record=record))
        plan.updated += 1
        if (current.get("legacyIdentity") or None) != (record.legacy_identity or None):
            plan.legacy_ids_updated += 1
    return plan


def _identities(records: Sequence[NormalizedRecord]) -> list[str]:
    return sorted({(r.identity or "").strip().lower() for r in records} - {""})


class UpsertEngine:
    def __init__(self, store: DocumentStore, telemetry: TelemetrySink | None = None) -> None:
        self.store = store
        self.telemetry = telemetry

    def apply(
        self,
        records: Sequence[NormalizedRecord],
        sheet_origin: str,
        *,
        registry: RegistryUpdate | None = None,
        dry_run: bool = False,
        run_id: str | None = None,
        anomalies: Sequence[str] | None = None,
        trigger: TriggerContext | None = None,
        emit_telemetry: bool = True,
        row_count: int | None = None,
        now: datetime | None = None,
    ) -> UpsertSummary:
        """Apply normalized records to one sheet origin.

        Raises:
            WriteFailureError: a store write failed. Under fallback execution the
                partition has been restored to its pre-run snapshot; if that
                restore failed too, ``rollback_error`` is set.
        """
        run_id = run_id or str(uuid.uuid4())
        now = now or datetime.now(UTC)
        started = time.perf_counter()
        started_at = utc_now_iso()
        prior = list(anomalies or [])

        if not records:
            logger.info("event=DEVICE_SYNC_NOOP run=%s sheet=%s", run_id, sheet_origin)

        try:
            if dry_run:
                plan = plan_upserts(
                    records, self.store.find_by_identities(sheet_origin, _identities(records)), sheet_origin
                )
                mode = ExecutionMode.DRY_RUN
            elif self.store.supports_transactions:
                try:
                    plan = self._apply_transaction(records, sheet_origin, registry, now)
                    mode = ExecutionMode.TRANSACTION
                except TransactionsUnsupportedError as e:
                    logger.warning(
                        "event=TRANSACTION_FALLBACK run=%s sheet=%s reason=%s", run_id, sheet_origin, e
                    )
                    plan = self._apply_fallback(records, sheet_origin, registry, now, run_id)
                    mode = ExecutionMode.FALLBACK
            else:
                logger.info(
                    "event=TRANSACTION_FALLBACK run=%s sheet=%s reason=store has no transactions",
                    run_id,
                    sheet_origin,
                )
                plan = self._apply_fallback(records, sheet_origin, registry, now, run_id)
                mode = ExecutionMode.FALLBACK
        except WriteFailureError as e:
            self._emit_failure(e, run_id, sheet_origin, started, started_at, trigger, registry,
                               prior, row_count if row_count is not None else len(records),
                               emit_telemetry)
            raise
        except Exception as e:
            failure = WriteFailureError(
                f"write failed for sheet {sheet_origin}: {e}", details={"runId": run_id}
            )
            self._emit_failure(failure, run_id, sheet_origin, started, started_at, trigger, registry,
                               prior, row_count if row_count is not None else len(records),
                               emit_telemetry)
            raise failure from e

        duration_ms = int((time.perf_counter() - started) * 1000)
        summary = UpsertSummary(
            run_id=run_id,
            added=plan.added,
            updated=plan.updated,
            unchanged=plan.unchanged,
            conflicts=plan.conflicts,
            duration_ms=duration_ms,
            anomalies=tuple(prior + plan.anomalies),
            legacy_ids_updated=plan.legacy_ids_updated,
            mode=mode,
            dry_run=dry_run,
        )
        logger.info(
            "event=DEVICE_SYNC_SUMMARY run=%s sheet=%s mode=%s added=%d updated=%d unchanged=%d "
            "conflicts=%d legacy_ids_updated=%d duration_ms=%d",
            run_id,
            sheet_origin,
            mode.value,
            summary.added,
            summary.updated,
            summary.unchanged,
            summary.conflicts,
            summary.legacy_ids_updated,
            duration_ms,
        )

        if emit_telemetry and self.telemetry is not None:
            total = row_count if row_count is not None else len(records)
            trig = trigger or TriggerContext()
            self.telemetry.emit(
                SyncRunTelemetry(
                    sheet_id=sheet_origin,
                    run_id=run_id,
                    trigger=trig.type,
                    requested_by=trig.requested_by,
                    anonymized=trig.anonymized,
                    queue_latency_ms=trig.queue_latency_ms,
                    started_at=started_at,
                    completed_at=utc_now_iso(),
                    duration_ms=duration_ms,
                    status="success",
                    row_count=total,
                    rows_processed=plan.processed,
                    rows_skipped=max(total - plan.processed, 0),
                    conflicts=plan.conflicts,
                    added=plan.added,
                    updated=plan.updated,
                    unchanged=plan.unchanged,
                    legacy_ids_updated=plan.legacy_ids_updated,
                    column_total=len(registry.entries) if registry else 0,
                    column_version=registry.version if registry else None,
                    anomalies=summary.anomalies,
                    dry_run=dry_run,
                    mode=mode.value,
                )
            )
        return summary

    def _apply_transaction(
        self,
        records: Sequence[NormalizedRecord],
        sheet_origin: str,
        registry: RegistryUpdate | None,
        now: datetime,
    ) -> UpsertPlan:
        with self.store.transaction():
            existing = self.store.find_by_identities(sheet_origin, _identities(records))
            plan = plan_upserts(records, existing, sheet_origin)
            if plan.operations:
                self.store.bulk_write(sheet_origin, plan.operations)
            if registry is not None:
                self.store.sync_registry(registry, now)
        return plan

    def _apply_fallback(
        self,
        records: Sequence[NormalizedRecord],
        sheet_origin: str,
        registry: RegistryUpdate | None,
        now: datetime,
        run_id: str,
    ) -> UpsertPlan:
        snapshot = self.store.snapshot_partition(sheet_origin)
        existing = self.store.find_by_identities(sheet_origin, _identities(records))
        plan = plan_upserts(records, existing, sheet_origin)

        applied = 0
        try:
            for op in plan.operations:
                self.store.write_one(sheet_origin, op)
                applied += 1
            if registry is not None:
                self.store.sync_registry(registry, now)
        except Exception as e:
            rollback_error = self._restore(snapshot, run_id, applied)
            raise WriteFailureError(
                f"fallback write failed after {applied} of {len(plan.operations)} operations: {e}",
                rollback_error=rollback_error,
                details={"runId": run_id, "applied": applied, "planned": len(plan.operations)},
            ) from e
        return plan

    def _restore(
        self, snapshot: PartitionSnapshot, run_id: str, applied: int
    ) -> RollbackFailureError | None:
        try:
            self.store.restore_partition(snapshot)
        except Exception as restore_error:
            logger.critical(
                "event=ROLLBACK_FAILED run=%s sheet=%s applied=%d error=%s",
                run_id,
                snapshot.sheet_origin,
                applied,
                restore_error,
            )
            failure = RollbackFailureError(
                f"restore of sheet {snapshot.sheet_origin} failed: {restore_error}",
                details={"runId": run_id, "documents": len(snapshot.documents)},
            )
            failure.__cause__ = restore_error
            return failure
        logger.warning(
            "event=ROLLBACK_RESTORED run=%s sheet=%s applied=%d documents=%d",
            run_id,
            snapshot.sheet_origin,
            applied,
            len(snapshot.documents),
        )
        return None

    def _emit_failure(
        self,
        error: WriteFailureError,
        run_id: str,
        sheet_origin: str,
        started: float,
        started_at: str,
        trigger: TriggerContext | None,
        registry: RegistryUpdate | None,
        anomalies: list[str],
        row_count: int,
        emit_telemetry: bool,
    ) -> None:
        if not emit_telemetry or self.telemetry is None:
            return
        trig = trigger or TriggerContext()
        self.telemetry.emit(
            SyncRunTelemetry(
                sheet_id=sheet_origin,
                run_id=run_id,
                trigger=trig.type,
                requested_by=trig.requested_by,
                anonymized=trig.anonymized,
                queue_latency_ms=trig.queue_latency_ms,
                started_at=started_at,
                completed_at=utc_now_iso(),
                duration_ms=int((time.perf_counter() - started) * 1000),
                status="failed",
                row_count=row_count,
                column_total=len(registry.entries) if registry else 0,
                column_version=registry.version if registry else None,
                reason=error.message,
                error_code=error.code.value,
                anomalies=tuple(anomalies),
            )
        )
