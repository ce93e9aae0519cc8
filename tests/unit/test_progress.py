from __future__ import annotations

from unittest.mock import Mock, patch

import pytest

from roster_sync.models.run import RunPhase
from roster_sync.services.progress import RUN_PHASES, RunProgress, is_tty_enabled


def test_is_tty_enabled_returns_stdout_isatty():
    with patch("sys.stdout.isatty", return_value=True):
        assert is_tty_enabled() is True
    with patch("sys.stdout.isatty", return_value=False):
        assert is_tty_enabled() is False


def test_disabled_when_not_tty():
    with patch("roster_sync.services.progress.is_tty_enabled", return_value=False):
        progress = RunProgress("devices-main")
    assert progress.enabled is False
    assert progress.pbar is None
    progress.enter(RunPhase.FETCHING)
    progress.finish(RunPhase.FAILED)
    assert progress.current is RunPhase.FAILED


def test_finish_rejects_non_terminal_phase():
    progress = RunProgress("devices-main", enabled=False)
    with pytest.raises(ValueError, match="not a terminal phase: upserting"):
        progress.finish(RunPhase.UPSERTING)
    assert [p for p in RunPhase if p.terminal] == [RunPhase.BLOCKED, RunPhase.SUCCESS, RunPhase.FAILED]


def test_bar_created_and_advanced_per_phase():
    with patch("roster_sync.services.progress.tqdm") as mock_tqdm:
        progress = RunProgress("devices-main", enabled=True)
        mock_tqdm.assert_called_once_with(
            total=5,
            desc="sync devices-main",
            unit="phase",
            leave=True,
            ncols=80,
            ascii=True,
        )
        pbar = mock_tqdm.return_value
        for phase in RUN_PHASES:
            progress.enter(phase)
        progress.finish(RunPhase.SUCCESS)

    assert pbar.update.call_count == 5
    assert progress.completed == list(RUN_PHASES)
    pbar.set_description.assert_called_with("sync devices-main (success)")
    pbar.close.assert_called_once()
    assert progress.pbar is None


def test_blocked_run_stops_early():
    pbar = Mock()
    with patch("roster_sync.services.progress.tqdm", return_value=pbar):
        with RunProgress("s", enabled=True) as progress:
            progress.enter(RunPhase.FETCHING)
            progress.enter(RunPhase.AUDITING)
            progress.finish(RunPhase.BLOCKED)
    assert pbar.update.call_count == 1
    assert progress.completed == [RunPhase.FETCHING]
    pbar.close.assert_called_once()
