"""Activity Sync - command line entry point."""

import argparse
import logging
import os
import signal
import sys
import threading
from datetime import timedelta
from pathlib import Path
from typing import Optional

from . import __version__
from .auth import KeyringTokenStore, TokenRefreshService
from .config import Config, setup_logging
from .models import Provider
from .providers import AdapterRegistry, ProviderHttpClient
from .sync import (
    ActivitySession,
    DayCacheCoordinator,
    RefreshInterval,
    RefreshOrchestrator,
    RefreshScheduler,
    SQLiteDayCache,
)

logger = logging.getLogger(__name__)


class ActivitySyncApp:
    """Wires components together and handles lifecycle (start / shutdown)."""

    def __init__(self, config: Config, cache_path: Optional[Path] = None):
        self.config = config

        self.http = ProviderHttpClient()
        self.token_store = KeyringTokenStore()
        oauth_clients = {}
        for provider in Provider:
            client = config.oauth_client(provider)
            if client is not None:
                oauth_clients[provider] = client
        self.token_refresher = TokenRefreshService(self.token_store, oauth_clients=oauth_clients)
        self.cache = SQLiteDayCache(
            db_path=cache_path,
            today_ttl=timedelta(minutes=config.cache.today_ttl_minutes),
        )
        self.orchestrator = RefreshOrchestrator(
            adapters=AdapterRegistry.default(self.http),
            token_store=self.token_store,
            token_refresher=self.token_refresher,
            cache=self.cache,
            days_back=config.refresh.days_back,
        )
        self.session = ActivitySession(config.accounts)
        self.coordinator = DayCacheCoordinator(
            session=self.session,
            orchestrator=self.orchestrator,
            cache=self.cache,
            heatmap_range_days=config.cache.heatmap_range_days,
            max_days_per_batch=config.refresh.max_days_per_batch,
            max_workers=config.refresh.max_workers,
        )
        self.scheduler = RefreshScheduler(
            on_refresh=self.coordinator.refresh,
            interval=self._interval(config.refresh.interval),
            debounce_seconds=config.refresh.debounce_seconds,
            timeout_seconds=config.refresh.timeout_seconds,
            on_timeout=self.coordinator.abort_refresh,
        )

        self._shutdown_done = False
        self._shutdown_event = threading.Event()

    @staticmethod
    def _interval(value: str) -> RefreshInterval:
        try:
            return RefreshInterval(value)
        except ValueError:
            logger.warning(f"Unknown refresh interval {value!r}, using 15m")
            return RefreshInterval.FIFTEEN_MINUTES

    def run(self) -> None:
        """Load cached data, start scheduling and block until signalled."""
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(f"Activity Sync {__version__} starting...")
        self.coordinator.load_from_cache()
        if self.coordinator.needs_initial_fetch():
            self.scheduler.force_refresh()
        self.scheduler.start()

        logger.info("Activity Sync running")
        try:
            self._shutdown_event.wait()
        finally:
            self._shutdown()

    def refresh_once(self) -> int:
        """Run one forced cycle and wait for it. Returns an exit code."""
        self.coordinator.load_from_cache()
        self.scheduler.force_refresh()
        self.scheduler.wait_idle()
        self.coordinator.wait_for_background()

        snapshot = self.session.snapshot()
        total = sum(snapshot.day_activity_counts.values())
        print(f"Loaded {len(snapshot.loaded_days)} days, {total} activities")
        for error in snapshot.errors:
            print(f"  error: {error}")
        if self.scheduler.last_error is not None:
            print(f"  error: {self.scheduler.last_error}")
            return 1
        return 1 if snapshot.is_offline else 0

    def print_status(self) -> int:
        """Print cached day counts and missing days for the visible window."""
        index = self.cache.load_day_index()
        for account in self.config.accounts:
            state = "enabled" if account.is_enabled else "disabled"
            days = index.get(account.id, {})
            count = sum(entry.count for entry in days.values())
            print(
                f"{account.display_name} ({account.provider.display_name}, {state}): "
                f"{len(days)} cached days, {count} activities"
            )

        missing = self.coordinator.get_missing_days()
        print(f"Missing days in {self.coordinator.heatmap_range_days}-day window: {len(missing)}")
        if missing:
            print(f"  oldest: {missing[0]}, newest: {missing[-1]}")
        return 0

    # -- Lifecycle --------------------------------------------------------

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self._shutdown_event.set()

    def _shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.scheduler.stop()
        self.coordinator.cancel_background_fetch()
        self.http.close()
        self.cache.close()

        logger.info("Shutdown complete")

    def __enter__(self) -> "ActivitySyncApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


class SingleInstanceLock:
    """File-based single-instance lock using advisory locking."""

    def __init__(self, path: Optional[Path] = None):
        self._file = None
        self._path = str(path or Config.get_data_dir() / ".activity-sync.lock")

    def acquire(self) -> bool:
        """Try to acquire the lock. Returns True on success."""
        os.makedirs(os.path.dirname(self._path), exist_ok=True)
        self._file = open(self._path, "a+")  # noqa: SIM115
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self._file.seek(0)
            self._file.truncate(0)
            self._file.write(str(os.getpid()))
            self._file.flush()
            return True
        except OSError:
            self._file.close()
            self._file = None
            return False

    def release(self) -> None:
        """Release the lock and clean up."""
        if self._file is None:
            return
        try:
            if sys.platform == "win32":
                import msvcrt
                msvcrt.locking(self._file.fileno(), msvcrt.LK_UNLCK, 1)
            else:
                import fcntl
                fcntl.flock(self._file, fcntl.LOCK_UN)
            self._file.close()
            os.unlink(self._path)
        except OSError as e:
            logger.debug(f"Failed to release instance lock: {e}")
        self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="activity-sync",
        description="Fetch GitLab, Azure DevOps and Google Calendar activity into a local day cache.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Path to config.json")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Refresh on a schedule until interrupted")
    commands.add_parser("refresh", help="Run one refresh cycle and exit")
    commands.add_parser("status", help="Show cached days per account")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    command = args.command or "run"

    config = Config.load(args.config)
    setup_logging(args.debug or config.debug_mode)

    if command == "run":
        lock = SingleInstanceLock()
        if not lock.acquire():
            print("Activity Sync is already running.")
            return 0
        try:
            with ActivitySyncApp(config) as app:
                app.run()
        finally:
            lock.release()
        return 0

    with ActivitySyncApp(config) as app:
        if command == "refresh":
            return app.refresh_once()
        return app.print_status()


if __name__ == "__main__":
    sys.exit(main())
