"""Configuration management for Activity Sync."""

import json
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

from platformdirs import user_config_dir, user_data_dir, user_log_dir

from .models import Account, Provider

__all__ = [
    "Config",
    "RefreshSettings",
    "CacheSettings",
    "OAuthClientSettings",
    "setup_logging",
    "HEATMAP_RANGES",
]

logger = logging.getLogger(__name__)

APP_NAME = "Activity Sync"
APP_AUTHOR = "ActivityBar"

# Refresh settings
DEFAULT_REFRESH_INTERVAL = "15m"
DEFAULT_DEBOUNCE_SECONDS = 30
DEFAULT_REFRESH_TIMEOUT = 60  # seconds
DEFAULT_MAX_DAYS_PER_BATCH = 14
DEFAULT_MAX_WORKERS = 4
DEFAULT_DAYS_BACK = 30

# Cache settings
HEATMAP_RANGES = (90, 180, 365)
DEFAULT_HEATMAP_RANGE = 90
DEFAULT_TODAY_TTL_MINUTES = 15


@dataclass
class RefreshSettings:
    """Refresh cycle configuration."""

    interval: str = DEFAULT_REFRESH_INTERVAL  # "5m", "15m", "30m", "1h" or "manual"
    debounce_seconds: int = DEFAULT_DEBOUNCE_SECONDS
    timeout_seconds: int = DEFAULT_REFRESH_TIMEOUT
    max_days_per_batch: int = DEFAULT_MAX_DAYS_PER_BATCH
    max_workers: int = DEFAULT_MAX_WORKERS
    days_back: int = DEFAULT_DAYS_BACK


@dataclass
class CacheSettings:
    """Per-day cache configuration."""

    heatmap_range_days: int = DEFAULT_HEATMAP_RANGE
    today_ttl_minutes: int = DEFAULT_TODAY_TTL_MINUTES


@dataclass
class OAuthClientSettings:
    """OAuth application credentials for one provider."""

    client_id: str = ""
    client_secret: str = ""

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class Config:
    """Main configuration object."""

    refresh: RefreshSettings = field(default_factory=RefreshSettings)
    cache: CacheSettings = field(default_factory=CacheSettings)
    accounts: list[Account] = field(default_factory=list)
    oauth: dict[str, OAuthClientSettings] = field(default_factory=dict)
    debug_mode: bool = False

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (for the SQLite day cache)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults."""
        config_file = path or cls.get_config_file()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                return cls._from_dict(data)
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Failed to load config: {e}, using defaults")
        return cls()

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        refresh_data = data.pop("refresh", {})
        cache_data = data.pop("cache", {})
        accounts_data = data.pop("accounts", [])
        oauth_data = data.pop("oauth", {})

        cache = CacheSettings(**cache_data) if cache_data else CacheSettings()
        if cache.heatmap_range_days not in HEATMAP_RANGES:
            logger.warning(
                f"Unsupported heatmap range {cache.heatmap_range_days}, "
                f"falling back to {DEFAULT_HEATMAP_RANGE}"
            )
            cache.heatmap_range_days = DEFAULT_HEATMAP_RANGE

        return cls(
            refresh=RefreshSettings(**refresh_data) if refresh_data else RefreshSettings(),
            cache=cache,
            accounts=[Account.from_dict(a) for a in accounts_data],
            oauth={
                Provider(name).value: OAuthClientSettings(**values)
                for name, values in oauth_data.items()
            },
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def to_dict(self) -> dict:
        return {
            "refresh": asdict(self.refresh),
            "cache": asdict(self.cache),
            "accounts": [a.to_dict() for a in self.accounts],
            "oauth": {name: asdict(values) for name, values in self.oauth.items()},
            "debug_mode": self.debug_mode,
        }

    def save(self, path: Optional[Path] = None) -> None:
        """Save config to file."""
        config_file = path or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        with open(config_file, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info(f"Config saved to {config_file}")

    def oauth_client(self, provider: Provider) -> Optional[OAuthClientSettings]:
        """OAuth client credentials for a provider, if configured."""
        settings = self.oauth.get(provider.value)
        if settings and settings.is_configured:
            return settings
        return None


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None) -> None:
    """Configure logging."""
    log_dir = log_dir or Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "activity-sync.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
