"""YAML configuration for the notebook gallery.

Layout of config.yaml (every key optional):

    directories:
      state: ~/.notebook-gallery/state
      content: ~/.notebook-gallery/notebooks
      wordclouds: ~/.notebook-gallery/wordclouds
    ranking:
      suggestion_weight: 5.0
      health_weight: 10.0
      health_threshold: 0.5
      per_page: 20
    health:
      min_score: 0.75
      max_failed_cells: 2
      window_days: 30
    wordcloud:
      ttl_days: 7
      timeout: 30.0
      width: 320
      height: 200
    server:
      host: 127.0.0.1
      port: 8080
      watch_content: true

Any key can be overridden from the environment as
NBGALLERY_<SECTION>_<KEY>, e.g. NBGALLERY_SERVER_PORT=9000.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from .metrics import HealthPolicy
from .ranking import RankingWeights

logger = logging.getLogger(__name__)

DEFAULT_BASE_DIR = Path("~/.notebook-gallery").expanduser()
DEFAULT_CONFIG_PATH = DEFAULT_BASE_DIR / "config.yaml"
ENV_PREFIX = "NBGALLERY_"


# ---------------------------------------------------------------------------
# Section dataclasses
# ---------------------------------------------------------------------------


@dataclass
class DirectoriesConfig:
    state: Path = DEFAULT_BASE_DIR / "state"
    content: Path = DEFAULT_BASE_DIR / "notebooks"
    wordclouds: Path = DEFAULT_BASE_DIR / "wordclouds"


@dataclass
class RankingConfig:
    suggestion_weight: float = 5.0
    health_weight: float = 10.0
    health_threshold: float = 0.5
    per_page: int = 20

    def to_weights(self) -> RankingWeights:
        return RankingWeights(
            suggestion=self.suggestion_weight,
            health=self.health_weight,
            health_threshold=self.health_threshold,
        )


@dataclass
class HealthConfig:
    min_score: float = 0.75
    max_failed_cells: int = 2
    window_days: int = 30

    def to_policy(self) -> HealthPolicy:
        return HealthPolicy(
            min_score=self.min_score,
            max_failed_cells=self.max_failed_cells,
            window_days=self.window_days,
        )


@dataclass
class WordcloudConfig:
    ttl_days: float = 7.0
    timeout: float = 30.0
    width: int = 320
    height: int = 200

    @property
    def ttl_seconds(self) -> float:
        return self.ttl_days * 24 * 60 * 60


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    watch_content: bool = True


SECTIONS = {
    "directories": DirectoriesConfig,
    "ranking": RankingConfig,
    "health": HealthConfig,
    "wordcloud": WordcloudConfig,
    "server": ServerConfig,
}


@dataclass
class GalleryConfig:
    """Complete configuration, one attribute per section."""

    directories: DirectoriesConfig = field(default_factory=DirectoriesConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    wordcloud: WordcloudConfig = field(default_factory=WordcloudConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    def to_dict(self) -> dict:
        """Serialize to dict for YAML storage."""
        data: dict = {}
        for name in SECTIONS:
            section = getattr(self, name)
            values = {}
            for f in fields(section):
                value = getattr(section, f.name)
                values[f.name] = str(value) if isinstance(value, Path) else value
            data[name] = values
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> GalleryConfig:
        """Deserialize from dict. Unknown sections and keys are ignored."""
        config = cls()
        for name, section_cls in SECTIONS.items():
            values = data.get(name) or {}
            if not isinstance(values, Mapping):
                raise ValueError(f"Config section '{name}' must be a mapping")
            defaults = getattr(config, name)
            updates = {
                f.name: _coerce(getattr(defaults, f.name), values[f.name])
                for f in fields(section_cls)
                if f.name in values
            }
            setattr(config, name, replace(defaults, **updates))
        return config

    def with_env(self, environ: Mapping[str, str]) -> GalleryConfig:
        """Copy with NBGALLERY_<SECTION>_<KEY> environment overrides applied."""
        data = self.to_dict()
        for name in SECTIONS:
            for key in data[name]:
                env_name = f"{ENV_PREFIX}{name}_{key}".upper()
                if env_name in environ:
                    data[name][key] = environ[env_name]
                    logger.debug(f"Config override from {env_name}")
        return GalleryConfig.from_dict(data)


def _coerce(default: Any, value: Any) -> Any:
    """Convert a YAML or environment value to the type of the default."""
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, Path):
        return Path(str(value)).expanduser()
    if isinstance(default, int) and not isinstance(value, bool):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return str(value)


# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Loads and saves config.yaml with atomic writes."""

    def __init__(self, config_path: Path | None = None) -> None:
        """Initialize with path to config.yaml file.

        Args:
            config_path: Path to the YAML configuration file.
        """
        self._config_path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self, environ: Mapping[str, str] | None = None) -> GalleryConfig:
        """Load configuration, then apply environment overrides.

        Args:
            environ: Environment mapping, os.environ by default.

        Returns:
            GalleryConfig. All defaults if the file doesn't exist.

        Raises:
            ValueError: If the file holds something other than a mapping.
        """
        data: Any = None
        if self._config_path.exists():
            with open(self._config_path, encoding="utf-8") as f:
                data = yaml.safe_load(f)

        if data is None:
            config = GalleryConfig()
        elif isinstance(data, Mapping):
            config = GalleryConfig.from_dict(data)
        else:
            raise ValueError(f"{self._config_path} must contain a YAML mapping")

        return config.with_env(os.environ if environ is None else environ)

    def save(self, config: GalleryConfig) -> None:
        """Save configuration to the YAML file.

        Uses atomic write (temp file + rename) to prevent corruption.
        """
        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        fd, temp_path = tempfile.mkstemp(
            dir=self._config_path.parent,
            prefix=".config_",
            suffix=".yaml.tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(config.to_dict(), f, default_flow_style=False)
            os.replace(temp_path, self._config_path)
        except Exception:
            if os.path.exists(temp_path):
                os.unlink(temp_path)
            raise
