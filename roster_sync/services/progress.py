from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm

from ..models.run import RunPhase

"""Run phase progress display with tqdm (TTY only).

One bar per run, advanced once per completed phase of the happy path. In
non-TTY environments (CI, cron) the bar is disabled to avoid ANSI control
sequence spam in captured logs.
"""

__all__ = ["RUN_PHASES", "RunProgress", "is_tty_enabled"]

RUN_PHASES: tuple[RunPhase, ...] = (
    RunPhase.FETCHING,
    RunPhase.AUDITING,
    RunPhase.NORMALIZING,
    RunPhase.DIFFING_REGISTRY,
    RunPhase.UPSERTING,
)


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class RunProgress:
    def __init__(self, sheet_id: str, *, enabled: bool | None = None) -> None:
        self.sheet_id = sheet_id
        self.enabled = is_tty_enabled() if enabled is None else enabled
        self.current: RunPhase | None = None
        self.completed: list[RunPhase] = []
        self.pbar: Any = None
        if self.enabled:
            self.pbar = tqdm(
                total=len(RUN_PHASES),
                desc=f"sync {sheet_id}",
                unit="phase",
                leave=True,
                ncols=80,
                ascii=True,
            )

    def enter(self, phase: RunPhase) -> None:
        if self.current is not None and self.current not in self.completed:
            self.completed.append(self.current)
            if self.pbar is not None:
                self.pbar.update(1)
        self.current = phase
        if self.pbar is not None:
            self.pbar.set_description(f"sync {self.sheet_id} ({phase.value})")

    def finish(self, phase: RunPhase) -> None:
        """Mark the terminal phase (success, blocked or failed)."""
        if not phase.terminal:
            raise ValueError(f"not a terminal phase: {phase.value}")
        if phase is RunPhase.SUCCESS:
            self.enter(phase)
        else:
            self.current = phase
            if self.pbar is not None:
                self.pbar.set_description(f"sync {self.sheet_id} ({phase.value})")
        self.close()

    def close(self) -> None:
        if self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> RunProgress:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
