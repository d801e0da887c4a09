"""
Tests for the pydantic sync configuration.
"""

import pytest
import yaml
from pydantic import ValidationError

from ..config import RendererKind, SourceName, SyncConfig, create_default_config, load_config
from ..error_tracker import ConfigurationError


class TestSyncConfig:

    @pytest.fixture
    def config(self, tmp_path):
        return create_default_config(str(tmp_path / "data"))

    def test_defaults(self, config, tmp_path):
        osrs = config.get_source("osrs")

        assert osrs.rate_limit_ms == 1000
        assert osrs.categories == ["Items", "Monsters", "NPCs", "Quests", "Locations"]
        assert config.get_source(SourceName.VINTAGE_MACHINERY).default_lookback_days == 30
        assert config.get_source("nlab").local_path == str(tmp_path / "data" / "nlab-content")
        assert config.renderer is RendererKind.MARKDOWN
        assert config.cache_ttl_seconds == 900
        assert config.lock_ttl_seconds == 3600
        assert config.resolved_database_path() == tmp_path / "data" / "wikimirror.sqlite"
        assert config.resolved_blob_directory() == tmp_path / "data" / "blobs"

    def test_unknown_source(self, config):
        with pytest.raises(ConfigurationError):
            config.get_source("memory-alpha")

    def test_disabled_source(self, config):
        config.sources[SourceName.WIKIPEDIA].enabled = False

        with pytest.raises(ConfigurationError):
            config.get_source("wikipedia")
        assert SourceName.WIKIPEDIA not in config.get_enabled_sources()

    def test_log_level_is_validated(self):
        assert SyncConfig(log_level="debug").log_level == "DEBUG"
        with pytest.raises(ValidationError):
            SyncConfig(log_level="chatty")

    def test_yaml_round_trip(self, config, tmp_path):
        path = tmp_path / "sync_config.yaml"
        config.to_yaml(path)

        loaded = SyncConfig.from_yaml(path)

        assert loaded.get_source("osrs").base_url == config.get_source("osrs").base_url
        assert loaded.renderer is RendererKind.MARKDOWN

    def test_yaml_overrides_merge_with_defaults(self, tmp_path):
        path = tmp_path / "sync_config.yaml"
        path.write_text(yaml.safe_dump({
            "data_directory": str(tmp_path / "data"),
            "renderer": "regex",
            "sources": {"osrs": {"max_concurrency": 8}, "wikipedia": {"enabled": False}},
        }))

        config = SyncConfig.from_yaml(path)

        assert config.renderer is RendererKind.REGEX
        assert config.get_source("osrs").max_concurrency == 8
        assert config.get_source("osrs").rate_limit_ms == 1000
        assert SourceName.WIKIPEDIA not in config.get_enabled_sources()

    def test_invalid_url_rejected(self, tmp_path):
        path = tmp_path / "sync_config.yaml"
        path.write_text(yaml.safe_dump({"sources": {"osrs": {"base_url": "not a url"}}}))

        with pytest.raises(ValidationError):
            SyncConfig.from_yaml(path)

    def test_load_config_without_file_uses_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.yaml")

        assert set(config.get_enabled_sources()) == set(SourceName)
