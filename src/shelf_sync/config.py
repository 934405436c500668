"""Configuration management for Shelf Sync."""

import logging
import os
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger(__name__)

DATA_DIR_ENV = "SHELF_DATA_DIR"


class ConflictPreference(Enum):
    """What to do when a sync finds a conflict."""
    ASK = "ask"
    LOCAL = "local"
    REMOTE = "remote"
    MERGE = "merge"


@dataclass
class SyncSettings:
    """User-facing sync triggers and policies."""

    auto_sync: bool = True
    sync_interval_minutes: int = 5
    sync_on_startup: bool = True
    sync_before_close: bool = True
    conflict_resolution: ConflictPreference = ConflictPreference.ASK
    backup_before_sync: bool = False

    def __post_init__(self):
        if isinstance(self.conflict_resolution, str):
            self.conflict_resolution = ConflictPreference(self.conflict_resolution)
        if self.sync_interval_minutes < 0:
            raise ValueError("sync_interval_minutes must not be negative")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["conflict_resolution"] = self.conflict_resolution.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SyncSettings":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def update(self, key: str, value: str):
        """Set one setting from its string form, as typed on the command line.

        Raises:
            KeyError: If ``key`` is not a setting
            ValueError: If ``value`` does not fit the setting's type
        """
        if key not in {f.name for f in fields(self)}:
            raise KeyError(key)
        current = getattr(self, key)
        if isinstance(current, bool):
            lowered = value.strip().lower()
            if lowered not in ("true", "false", "yes", "no", "on", "off", "1", "0"):
                raise ValueError(f"{key} expects true/false, got {value!r}")
            parsed: Any = lowered in ("true", "yes", "on", "1")
        elif isinstance(current, int):
            parsed = int(value)
        elif isinstance(current, ConflictPreference):
            parsed = ConflictPreference(value.strip().lower())
        else:
            parsed = value
        setattr(self, key, parsed)
        self.__post_init__()


@dataclass
class ConfigModel:
    """Global configuration model for Shelf Sync."""

    # File paths
    data_dir: str = "~/.shelf"

    # GitHub API
    api_base_url: str = "https://api.github.com"
    request_timeout: float = 30.0
    max_retries: int = 3          # total attempts for transient failures
    retry_delay: float = 1.0      # seconds, doubled per attempt
    rate_limit_buffer: int = 10   # requests kept in reserve
    max_rate_limit_wait: float = 300.0  # seconds

    # Scheduler
    debounce_seconds: float = 2.0

    sync: SyncSettings = field(default_factory=SyncSettings)

    def __post_init__(self):
        """Post-initialization setup."""
        if isinstance(self.sync, dict):
            self.sync = SyncSettings.from_dict(self.sync)
        self.data_dir = os.path.expanduser(self.data_dir)
        Path(self.data_dir).mkdir(parents=True, exist_ok=True)

    def to_yaml(self) -> str:
        """Serialize config to YAML."""
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "sync"}
        data["sync"] = self.sync.to_dict()
        return yaml.dump(data, default_flow_style=False, sort_keys=False)

    @classmethod
    def from_yaml(cls, yaml_str: str) -> "ConfigModel":
        """Deserialize config from YAML, ignoring unknown keys."""
        data = yaml.safe_load(yaml_str) or {}
        if not isinstance(data, dict):
            raise ValueError("Configuration file must contain a mapping")
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def get_config_path(self) -> Path:
        """Get the config file path."""
        return Path(self.data_dir) / "config.yaml"

    def get_state_path(self) -> Path:
        """Get the local key-value store path."""
        return Path(self.data_dir) / "state.json"


def default_data_dir() -> str:
    return os.environ.get(DATA_DIR_ENV, "~/.shelf")


class Config:
    """Configuration manager for Shelf Sync."""

    _instance: Optional[ConfigModel] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> ConfigModel:
        """Load configuration from file or create default."""
        if cls._instance is not None and config_path is None:
            return cls._instance

        config = ConfigModel(data_dir=default_data_dir())

        if config_path is None:
            config_path = config.get_config_path()

        if config_path.exists():
            try:
                with open(config_path, "r", encoding="utf-8") as f:
                    config = ConfigModel.from_yaml(f.read())
                logger.debug(f"Loaded configuration from {config_path}")
            except (OSError, ValueError, TypeError, yaml.YAMLError) as e:
                logger.warning(f"Failed to load config from {config_path}: {e}. Using defaults.")
        else:
            cls.save(config, config_path)
            logger.info(f"Created default configuration at {config_path}")

        cls._instance = config
        return config

    @classmethod
    def save(cls, config: ConfigModel, config_path: Optional[Path] = None) -> None:
        """Save configuration to file."""
        if config_path is None:
            config_path = config.get_config_path()

        config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(config_path, "w", encoding="utf-8") as f:
            f.write(config.to_yaml())
        logger.debug(f"Configuration saved to {config_path}")

    @classmethod
    def get(cls) -> ConfigModel:
        """Get the current configuration instance."""
        if cls._instance is None:
            cls._instance = cls.load()
        return cls._instance

    @classmethod
    def reset(cls):
        """Forget the loaded configuration."""
        cls._instance = None


def get_config() -> ConfigModel:
    """Get the current configuration."""
    return Config.get()


def load_config(config_path: Optional[Path] = None) -> ConfigModel:
    """Load configuration from file."""
    return Config.load(config_path)


def save_config(config: ConfigModel, config_path: Optional[Path] = None) -> None:
    """Save configuration to file."""
    Config.save(config, config_path)
