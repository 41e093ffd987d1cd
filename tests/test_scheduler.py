"""Tests for the refresh scheduler."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from activity_sync.sync.scheduler import (
    REFRESH_JOB_ID,
    RefreshInterval,
    RefreshScheduler,
    RefreshTimeoutError,
)


class TestRefreshInterval:
    """Tests for RefreshInterval."""

    def test_seconds(self):
        assert RefreshInterval.FIVE_MINUTES.seconds == 300
        assert RefreshInterval.ONE_HOUR.seconds == 3600
        assert RefreshInterval.MANUAL.seconds is None

    def test_from_config_value(self):
        assert RefreshInterval("30m") is RefreshInterval.THIRTY_MINUTES
        assert RefreshInterval.MANUAL.label == "Manual only"


class TestRefreshScheduler:
    """Tests for RefreshScheduler."""

    def setup_method(self):
        """Set up test fixtures."""
        self.now = 1000.0
        self.backend = Mock()
        self.backend.running = False
        self.backend.get_job.return_value = None
        self.on_refresh = Mock(return_value=None)
        self.scheduler = RefreshScheduler(
            on_refresh=self.on_refresh,
            debounce_seconds=30,
            timeout_seconds=5,
            scheduler=self.backend,
            clock=lambda: self.now,
        )

    def teardown_method(self):
        """Clean up."""
        self.scheduler.stop()

    def test_start_schedules_interval_job(self):
        self.scheduler.start()

        self.backend.start.assert_called_once()
        kwargs = self.backend.add_job.call_args.kwargs
        assert kwargs["id"] == REFRESH_JOB_ID
        assert kwargs["replace_existing"] is True
        assert kwargs["trigger"].interval == timedelta(minutes=15)

    def test_set_interval_reschedules(self):
        self.backend.running = True

        self.scheduler.set_interval(RefreshInterval.FIVE_MINUTES)

        assert self.backend.add_job.call_args.kwargs["trigger"].interval == timedelta(minutes=5)

    def test_manual_interval_removes_job(self):
        self.backend.running = True
        self.backend.get_job.return_value = Mock()

        self.scheduler.set_interval(RefreshInterval.MANUAL)

        self.backend.remove_job.assert_called_once_with(REFRESH_JOB_ID)
        self.backend.add_job.assert_not_called()
        assert self.scheduler.status_description() == "Manual refresh only"

    def test_stop_shuts_down_running_scheduler(self):
        self.backend.running = True

        self.scheduler.stop()

        self.backend.shutdown.assert_called_once_with(wait=False)

    def test_trigger_runs_cycle_with_cancel_event(self):
        assert self.scheduler.trigger_refresh() is True
        assert self.scheduler.wait_idle(5)

        self.on_refresh.assert_called_once()
        assert isinstance(self.on_refresh.call_args.args[0], threading.Event)
        assert self.scheduler.last_error is None
        assert not self.scheduler.is_refreshing

    def test_debounce(self):
        assert self.scheduler.trigger_refresh() is True
        self.scheduler.wait_idle(5)

        self.now += 10
        assert self.scheduler.trigger_refresh() is False

        self.now += 25
        assert self.scheduler.trigger_refresh() is True
        self.scheduler.wait_idle(5)
        assert self.on_refresh.call_count == 2

    def test_force_ignores_debounce(self):
        self.scheduler.trigger_refresh()
        self.scheduler.wait_idle(5)

        assert self.scheduler.force_refresh() is True
        self.scheduler.wait_idle(5)
        assert self.on_refresh.call_count == 2

    def test_one_cycle_at_a_time(self):
        started = threading.Event()
        release = threading.Event()

        def blocking(cancel_event):
            started.set()
            release.wait(5)

        self.on_refresh.side_effect = blocking
        assert self.scheduler.force_refresh() is True
        assert started.wait(5)

        assert self.scheduler.is_refreshing
        assert self.scheduler.force_refresh() is False
        assert self.scheduler.status_description() == "Refreshing..."

        release.set()
        assert self.scheduler.wait_idle(5)
        assert self.on_refresh.call_count == 1

    def test_scheduled_refresh_runs_inline(self):
        self.scheduler._scheduled_refresh()

        self.on_refresh.assert_called_once()
        assert not self.scheduler.is_refreshing

    def test_timeout_sets_cancel_event(self):
        seen = []

        def slow(cancel_event):
            seen.append(cancel_event)
            cancel_event.wait(5)

        self.scheduler.timeout_seconds = 0.05
        self.on_refresh.side_effect = slow

        self.scheduler.force_refresh()
        assert self.scheduler.wait_idle(5)

        assert isinstance(self.scheduler.last_error, RefreshTimeoutError)
        assert str(self.scheduler.last_error) == "Refresh timed out"
        assert seen[0].is_set()

    def test_failure_is_recorded(self):
        self.on_refresh.side_effect = RuntimeError("boom")

        self.scheduler.force_refresh()
        self.scheduler.wait_idle(5)

        assert str(self.scheduler.last_error) == "boom"
        assert not self.scheduler.is_refreshing

    def test_time_until_next_refresh(self):
        assert self.scheduler.time_until_next_refresh() is None

        self.backend.running = True
        job = Mock()
        job.next_run_time = datetime.now(timezone.utc) + timedelta(minutes=10)
        self.backend.get_job.return_value = job

        remaining = self.scheduler.time_until_next_refresh()

        assert 590 <= remaining <= 600
        assert self.scheduler.status_description() in (
            "Next refresh in 9 min",
            "Next refresh in 10 min",
        )

    def test_timeout_hook_runs_before_cycle_returns(self):
        release = threading.Event()
        on_timeout = Mock()
        self.scheduler._on_timeout = on_timeout
        self.scheduler.timeout_seconds = 0.05
        self.on_refresh.side_effect = lambda cancel_event: release.wait(5)

        self.scheduler.force_refresh()
        assert self.scheduler.wait_idle(5)

        on_timeout.assert_called_once_with()
        assert not release.is_set()
        release.set()

    def test_hung_cycle_does_not_block_next_one(self):
        release = threading.Event()
        calls = []

        def first_hangs(cancel_event):
            calls.append(cancel_event)
            if len(calls) == 1:
                release.wait(5)

        self.scheduler.timeout_seconds = 0.05
        self.on_refresh.side_effect = first_hangs
        self.scheduler.force_refresh()
        assert self.scheduler.wait_idle(5)

        self.scheduler.timeout_seconds = 5
        assert self.scheduler.force_refresh() is True
        assert self.scheduler.wait_idle(5)

        assert len(calls) == 2
        assert self.scheduler.last_error is None
        release.set()

    def test_status_shows_last_error(self):
        self.on_refresh.side_effect = RuntimeError("boom")

        self.scheduler.force_refresh()
        self.scheduler.wait_idle(5)

        assert self.scheduler.status_description() == "Error: boom"

    def test_status_shows_time_since_update(self):
        self.scheduler.interval = RefreshInterval.MANUAL
        self.scheduler.force_refresh()
        self.scheduler.wait_idle(5)

        assert self.scheduler.status_description() == "Updated just now | Manual refresh only"

        self.now += 125
        assert self.scheduler.seconds_since_last_success() == 125
        assert self.scheduler.status_description() == "Updated 2 min ago | Manual refresh only"

        self.now += 2 * 3600
        assert self.scheduler.status_description() == "Updated 2 h ago | Manual refresh only"
