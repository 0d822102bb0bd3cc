"""
Configuration management for clusterpack.

Loads and validates config.yaml from the clusterpack home directory
($CLUSTERPACK_HOME, default ~/.clusterpack).
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_HOME = "~/.clusterpack"


class ConfigError(Exception):
    """Configuration validation error."""
    pass


def get_clusterpack_home() -> Path:
    """Return the clusterpack home directory."""
    return Path(os.environ.get("CLUSTERPACK_HOME", DEFAULT_HOME)).expanduser()


@dataclass
class ClusterpackConfig:
    """
    Complete clusterpack configuration.

    Attributes:
        state_dir: Root for all on-disk state
        packages_dir: Local package store (default <state_dir>/packages)
        unpacked_dir: Unpacked packages (default <state_dir>/local/packages/unpacked)
        plans_dir: Persisted plans (default <state_dir>/plans)
        logging: level / format / console / output
        engine: max_workers / max_attempts
    """
    state_dir: Path = field(default_factory=lambda: get_clusterpack_home() / "state")
    packages_dir: Optional[Path] = None
    unpacked_dir: Optional[Path] = None
    plans_dir: Optional[Path] = None
    logging: Dict[str, Any] = field(default_factory=dict)
    engine: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.state_dir = Path(self.state_dir).expanduser()
        if self.packages_dir is None:
            self.packages_dir = self.state_dir / "packages"
        if self.unpacked_dir is None:
            self.unpacked_dir = self.state_dir / "local" / "packages" / "unpacked"
        if self.plans_dir is None:
            self.plans_dir = self.state_dir / "plans"
        self.packages_dir = Path(self.packages_dir).expanduser()
        self.unpacked_dir = Path(self.unpacked_dir).expanduser()
        self.plans_dir = Path(self.plans_dir).expanduser()

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.logging.get("level", "INFO")).upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path, if file logging is configured."""
        output = self.logging.get("output")
        return Path(output).expanduser() if output else None

    def get_max_workers(self) -> int:
        return int(self.engine.get("max_workers", 4))

    def get_max_attempts(self) -> int:
        return int(self.engine.get("max_attempts", 1))

    def validate(self) -> None:
        """Validate configuration values."""
        if self.get_log_format() not in ("structured", "pretty"):
            raise ConfigError(f"logging.format must be 'structured' or 'pretty', got {self.get_log_format()!r}")
        try:
            max_workers = self.get_max_workers()
            max_attempts = self.get_max_attempts()
        except (TypeError, ValueError) as e:
            raise ConfigError(f"engine settings must be integers: {e}")
        if max_workers < 1:
            raise ConfigError("engine.max_workers must be >= 1")
        if max_attempts < 1:
            raise ConfigError("engine.max_attempts must be >= 1")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ClusterpackConfig":
        known = {"state_dir", "packages_dir", "unpacked_dir", "plans_dir", "logging", "engine"}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {sorted(unknown)}")
        for section in ("logging", "engine"):
            if data.get(section) is not None and not isinstance(data[section], dict):
                raise ConfigError(f"'{section}' must be a mapping")
        kwargs = {k: v for k, v in data.items() if v is not None}
        config = cls(**kwargs)
        config.validate()
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state_dir": str(self.state_dir),
            "packages_dir": str(self.packages_dir),
            "unpacked_dir": str(self.unpacked_dir),
            "plans_dir": str(self.plans_dir),
            "logging": dict(self.logging),
            "engine": dict(self.engine),
        }


def load_config(config_path: Optional[Path] = None) -> ClusterpackConfig:
    """
    Load clusterpack configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $CLUSTERPACK_HOME/config.yaml

    Returns:
        ClusterpackConfig instance (defaults if the file does not exist)

    Raises:
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_clusterpack_home() / "config.yaml"

    if not config_path.exists():
        return ClusterpackConfig()

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if data is None:
        return ClusterpackConfig()
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")
    return ClusterpackConfig.from_dict(data)
