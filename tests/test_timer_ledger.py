"""
Timer Ledger Tests

Elapsed-time arithmetic shared by the engine and the recovery reconciler.
"""

from datetime import timedelta

import pytest

from taskhub.timer_ledger import (
    MAX_RECOVERY_SESSION_SECONDS,
    elapsed_seconds,
    fold_timer,
    format_duration,
    running_seconds,
    start_timer,
)

from tests.conftest import T0, WORKER_ID, make_task


class TestElapsedSeconds:
    """Tests for elapsed_seconds."""

    def test_plain_interval(self):
        result = elapsed_seconds(T0, T0 + timedelta(seconds=1500))
        assert result.seconds == 1500
        assert not result.skewed
        assert not result.capped

    def test_rounds_to_whole_seconds(self):
        assert elapsed_seconds(T0, T0 + timedelta(seconds=10, milliseconds=600)).seconds == 11

    def test_negative_clamps_to_zero(self):
        result = elapsed_seconds(T0, T0 - timedelta(hours=1))
        assert result.seconds == 0
        assert result.skewed

    def test_cap(self):
        result = elapsed_seconds(T0, T0 + timedelta(days=3), cap=MAX_RECOVERY_SESSION_SECONDS)
        assert result.seconds == 86400
        assert result.capped

    def test_naive_datetimes_treated_as_utc(self):
        naive_start = T0.replace(tzinfo=None)
        assert elapsed_seconds(naive_start, T0 + timedelta(seconds=5)).seconds == 5


class TestFoldTimer:
    """Tests for start_timer / fold_timer / running_seconds."""

    def test_fold_adds_and_clears(self):
        task = start_timer(make_task(accumulated_seconds=100), WORKER_ID, T0)
        folded, elapsed = fold_timer(task, T0 + timedelta(seconds=50))

        assert folded.accumulated_seconds == 150
        assert folded.timer_started_at is None
        assert folded.timer_owner_id is None
        assert elapsed.seconds == 50

    def test_fold_without_timer_raises(self):
        with pytest.raises(ValueError):
            fold_timer(make_task(), T0)

    def test_running_seconds_includes_live_session(self):
        task = start_timer(make_task(accumulated_seconds=60), WORKER_ID, T0)
        assert running_seconds(task, T0 + timedelta(seconds=30)) == 90
        assert running_seconds(make_task(accumulated_seconds=60), T0) == 60


class TestFormatDuration:
    """Tests for format_duration."""

    @pytest.mark.parametrize("seconds,expected", [
        (0, "0 min"),
        (-5, "0 min"),
        (59, "0 min"),
        (720, "12 min"),
        (3600, "1h 0m"),
        (7500, "2h 5m"),
    ])
    def test_format(self, seconds, expected):
        assert format_duration(seconds) == expected
