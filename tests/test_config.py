"""Tests for configuration loading and saving."""

import json
import tempfile
from pathlib import Path

from activity_sync.config import CacheSettings, Config, OAuthClientSettings
from activity_sync.models import Account, AuthMethod, Provider


class TestConfig:
    """Tests for Config."""

    def setup_method(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp()
        self.path = Path(self.temp_dir) / "config.json"

    def test_defaults_when_missing(self):
        config = Config.load(self.path)

        assert config.refresh.interval == "15m"
        assert config.refresh.timeout_seconds == 60
        assert config.cache.heatmap_range_days == 90
        assert config.accounts == []

    def test_save_and_load(self):
        config = Config(
            cache=CacheSettings(heatmap_range_days=180),
            accounts=[
                Account(
                    id="gl-1", provider=Provider.GITLAB, display_name="GitLab",
                    host="gitlab.example.com", auth_method=AuthMethod.OAUTH,
                )
            ],
            oauth={"gitlab": OAuthClientSettings(client_id="id", client_secret="secret")},
            debug_mode=True,
        )

        config.save(self.path)
        loaded = Config.load(self.path)

        assert loaded == config

    def test_unsupported_heatmap_range_falls_back(self):
        self.path.write_text(json.dumps({"cache": {"heatmap_range_days": 30}}))

        assert Config.load(self.path).cache.heatmap_range_days == 90

    def test_corrupt_file_uses_defaults(self):
        self.path.write_text("{not json")

        assert Config.load(self.path) == Config()

    def test_unknown_top_level_keys_ignored(self):
        self.path.write_text(json.dumps({"debug_mode": True, "theme": "dark"}))

        assert Config.load(self.path).debug_mode is True

    def test_oauth_client(self):
        config = Config(
            oauth={
                "gitlab": OAuthClientSettings(client_id="id", client_secret="secret"),
                "google-calendar": OAuthClientSettings(client_id="id"),
            }
        )

        assert config.oauth_client(Provider.GITLAB).client_id == "id"
        assert config.oauth_client(Provider.GOOGLE_CALENDAR) is None
        assert config.oauth_client(Provider.AZURE_DEVOPS) is None
