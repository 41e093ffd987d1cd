"""Tests for the command line entry point."""

import tempfile
from pathlib import Path

import pytest

from activity_sync.config import Config
from activity_sync.main import ActivitySyncApp, SingleInstanceLock, build_parser, main
from activity_sync.models import Account, Provider
from activity_sync.sync import RefreshInterval


class TestParser:
    """Tests for build_parser."""

    def test_commands(self):
        parser = build_parser()

        assert parser.parse_args([]).command is None
        assert parser.parse_args(["refresh"]).command == "refresh"
        args = parser.parse_args(["--debug", "--config", "/tmp/c.json", "status"])
        assert args.debug is True
        assert args.config == Path("/tmp/c.json")

    def test_version(self, capsys):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["--version"])

        assert "activity-sync" in capsys.readouterr().out


class TestSingleInstanceLock:
    """Tests for SingleInstanceLock."""

    def test_second_lock_fails(self):
        path = Path(tempfile.mkdtemp()) / "app.lock"
        first = SingleInstanceLock(path)
        second = SingleInstanceLock(path)

        assert first.acquire() is True
        try:
            assert second.acquire() is False
        finally:
            first.release()

        assert not path.exists()
        assert second.acquire() is True
        second.release()


class TestActivitySyncApp:
    """Tests for ActivitySyncApp wiring."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = Path(tempfile.mkdtemp())
        self.config = Config(
            accounts=[
                Account(id="gl-1", provider=Provider.GITLAB, display_name="GitLab"),
                Account(id="gc-1", provider=Provider.GOOGLE_CALENDAR, display_name="Cal", is_enabled=False),
            ]
        )
        self.config.refresh.interval = "every now and then"

    def test_wiring_and_status(self, capsys):
        with ActivitySyncApp(self.config, cache_path=self.temp_dir / "cache.db") as app:
            assert app.scheduler.interval is RefreshInterval.FIFTEEN_MINUTES
            assert app.coordinator.heatmap_range_days == 90
            assert app.scheduler._on_timeout == app.coordinator.abort_refresh
            app.cache.save_activities_for_day([], "gl-1", app.coordinator.today())

            assert app.print_status() == 0

        out = capsys.readouterr().out
        assert "GitLab (GitLab, enabled): 1 cached days, 0 activities" in out
        assert "Cal (Google Calendar, disabled): 0 cached days" in out
        assert "Missing days in 90-day window: 89" in out

    def test_shutdown_is_idempotent(self):
        app = ActivitySyncApp(self.config, cache_path=self.temp_dir / "cache.db")

        app._shutdown()
        app._shutdown()


def test_main_status(tmp_path, capsys, monkeypatch):
    config_path = tmp_path / "config.json"
    Config().save(config_path)
    monkeypatch.setattr(Config, "get_data_dir", classmethod(lambda cls: tmp_path))
    monkeypatch.setattr(Config, "get_log_dir", classmethod(lambda cls: tmp_path / "logs"))

    assert main(["--config", str(config_path), "status"]) == 0
    assert "Missing days in 90-day window: 0" in capsys.readouterr().out
