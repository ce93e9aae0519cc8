from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from .registry import RegistryDiff
from .results import AuditResult, NormalizationResult, UpsertSummary

"""Run-level models: trigger context, run status / phase and the run result.

State transitions per run:
    fetching -> auditing -> (blocked | normalizing) -> diffing-registry
             -> upserting -> (success | failed)
"""

__all__ = [
    "TriggerType",
    "TriggerContext",
    "RunStatus",
    "RunPhase",
    "SyncRunResult",
]

TriggerType = Literal["manual", "scheduled", "system"]


@dataclass(frozen=True)
class TriggerContext:
    type: TriggerType = "system"
    requested_by: str | None = None
    anonymized: bool = False
    queue_latency_ms: int | None = None  # measured by the scheduler, recorded only


class RunStatus(Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunPhase(Enum):
    FETCHING = "fetching"
    AUDITING = "auditing"
    BLOCKED = "blocked"
    NORMALIZING = "normalizing"
    DIFFING_REGISTRY = "diffing-registry"
    UPSERTING = "upserting"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (RunPhase.BLOCKED, RunPhase.SUCCESS, RunPhase.FAILED)


@dataclass(frozen=True)
class SyncRunResult:
    """Outcome of a successful run (blocked / failed runs raise instead)."""
    run_id: str
    sheet_id: str
    status: RunStatus
    audit: AuditResult
    normalization: NormalizationResult
    diff: RegistryDiff
    registry_version: str
    upsert: UpsertSummary
    duration_ms: int
    phase_timings_ms: dict[str, int]
    schema_change_notified: bool = False
    notification_suppressed_reason: str | None = None
