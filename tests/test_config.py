"""Tests for GalleryConfig and ConfigManager."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from notebook_gallery.config import (
    ConfigManager,
    DirectoriesConfig,
    GalleryConfig,
    ServerConfig,
)
from notebook_gallery.metrics import HealthPolicy
from notebook_gallery.ranking import RankingWeights


# ---------------------------------------------------------------------------
# GalleryConfig
# ---------------------------------------------------------------------------


class TestGalleryConfig:
    """Tests for GalleryConfig serialization and overrides."""

    def test_defaults(self) -> None:
        """Defaults match the documented policy values."""
        config = GalleryConfig()
        assert config.ranking.to_weights() == RankingWeights()
        assert config.health.to_policy() == HealthPolicy()
        assert config.wordcloud.ttl_seconds == 7 * 24 * 60 * 60
        assert config.server.port == 8080

    def test_to_dict_stringifies_paths(self) -> None:
        config = GalleryConfig(directories=DirectoriesConfig(state=Path("/srv/state")))
        assert config.to_dict()["directories"]["state"] == "/srv/state"

    def test_from_dict_partial(self) -> None:
        """Missing sections and keys keep their defaults."""
        config = GalleryConfig.from_dict({"ranking": {"health_weight": 2}})
        assert config.ranking.health_weight == 2.0
        assert isinstance(config.ranking.health_weight, float)
        assert config.ranking.suggestion_weight == 5.0
        assert config.server == ServerConfig()

    def test_from_dict_ignores_unknown_keys(self) -> None:
        config = GalleryConfig.from_dict({"server": {"colour": "blue"}, "extra": {}})
        assert config.server == ServerConfig()

    def test_from_dict_rejects_non_mapping_section(self) -> None:
        with pytest.raises(ValueError, match="must be a mapping"):
            GalleryConfig.from_dict({"server": ["port", 1]})

    def test_roundtrip(self) -> None:
        original = GalleryConfig(server=ServerConfig(host="0.0.0.0", port=9999))
        assert GalleryConfig.from_dict(original.to_dict()) == original

    def test_env_overrides(self) -> None:
        environ = {
            "NBGALLERY_SERVER_PORT": "9000",
            "NBGALLERY_SERVER_WATCH_CONTENT": "false",
            "NBGALLERY_HEALTH_MIN_SCORE": "0.9",
            "NBGALLERY_DIRECTORIES_STATE": "/tmp/gallery-state",
            "UNRELATED": "x",
        }
        config = GalleryConfig().with_env(environ)
        assert config.server.port == 9000
        assert config.server.watch_content is False
        assert config.health.min_score == 0.9
        assert config.directories.state == Path("/tmp/gallery-state")

    def test_bad_env_value(self) -> None:
        with pytest.raises(ValueError):
            GalleryConfig().with_env({"NBGALLERY_SERVER_PORT": "eighty"})


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config.yaml"


class TestConfigManager:
    """Tests for ConfigManager load/save."""

    def test_missing_file_gives_defaults(self, config_path: Path) -> None:
        assert ConfigManager(config_path).load(environ={}) == GalleryConfig()

    def test_empty_file_gives_defaults(self, config_path: Path) -> None:
        config_path.write_text("", encoding="utf-8")
        assert ConfigManager(config_path).load(environ={}) == GalleryConfig()

    def test_load_yaml(self, config_path: Path) -> None:
        config_path.write_text(
            "wordcloud:\n  ttl_days: 1\n  timeout: 5\nserver:\n  port: 8123\n",
            encoding="utf-8",
        )
        config = ConfigManager(config_path).load(environ={})
        assert config.wordcloud.ttl_seconds == 24 * 60 * 60
        assert config.wordcloud.timeout == 5.0
        assert config.server.port == 8123

    def test_env_beats_file(self, config_path: Path) -> None:
        config_path.write_text("server:\n  port: 8123\n", encoding="utf-8")
        config = ConfigManager(config_path).load(environ={"NBGALLERY_SERVER_PORT": "7000"})
        assert config.server.port == 7000

    def test_non_mapping_file_rejected(self, config_path: Path) -> None:
        config_path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError):
            ConfigManager(config_path).load(environ={})

    def test_malformed_yaml(self, config_path: Path) -> None:
        config_path.write_text("server: [unclosed\n", encoding="utf-8")
        with pytest.raises(yaml.YAMLError):
            ConfigManager(config_path).load(environ={})

    def test_save_then_load(self, tmp_path: Path) -> None:
        """save() writes atomically and creates parent directories."""
        manager = ConfigManager(tmp_path / "nested" / "config.yaml")
        config = GalleryConfig(server=ServerConfig(port=8181, watch_content=False))

        manager.save(config)

        assert manager.load(environ={}) == config
        assert [p.name for p in manager.config_path.parent.iterdir()] == ["config.yaml"]
