"""
Configuration management for brig.

Loads config.yaml from the brig home directory ($BRIG_HOME or
~/.config/brig). An optional env_file is loaded into the process
environment with python-dotenv before the settings are used, so DOCKER_HOST
and friends can live there.
"""

import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from brig.errors import ConfigError
from brig.utils import PRIVILEGED_PORT_LIMIT

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class BrigConfig:
    """
    User-level brig settings.

    Attributes:
        socket: Container engine socket (default: $DOCKER_HOST, then Podman)
        cache_dir: Artifact cache root (default: XDG data/cache directory)
        platform_arch / platform_os: Platform for pulled images
        port_offset: Added to privileged (< 1024) host ports
        poll_interval: Seconds between dependency-condition polls
        log_level: Default log level when no CLI flag is given
        log_file: Optional log file
        log_format: "structured" (JSON) or "pretty" for log_file
        env_file: dotenv file loaded into the environment
    """
    socket: Optional[str] = None
    cache_dir: Optional[str] = None
    platform_arch: str = "amd64"
    platform_os: str = "linux"
    port_offset: int = 8000
    poll_interval: float = 1.0
    log_level: str = "ERROR"
    log_file: Optional[str] = None
    log_format: str = "structured"
    env_file: Optional[str] = None

    def validate(self) -> None:
        """
        Check settings.

        Raises:
            ConfigError: If a value is out of range
        """
        if self.port_offset < PRIVILEGED_PORT_LIMIT:
            raise ConfigError(
                f"port_offset must be at least {PRIVILEGED_PORT_LIMIT}, got {self.port_offset}"
            )
        if self.poll_interval < 0:
            raise ConfigError(f"poll_interval must not be negative, got {self.poll_interval}")
        if self.log_level.upper() not in LOG_LEVELS:
            raise ConfigError(f"log_level must be one of {LOG_LEVELS}, got {self.log_level}")
        if self.log_format not in ("structured", "pretty"):
            raise ConfigError(f"log_format must be 'structured' or 'pretty', got {self.log_format}")

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BrigConfig":
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {sorted(unknown)}")
        try:
            config = cls(**data)
        except TypeError as e:
            raise ConfigError(f"Invalid config: {e}") from e
        config.validate()
        return config


def get_brig_home() -> Path:
    """Return the brig home directory ($BRIG_HOME or ~/.config/brig)."""
    env_home = os.environ.get("BRIG_HOME")
    if env_home:
        return Path(env_home)
    return Path("~/.config/brig").expanduser()


def load_config() -> BrigConfig:
    """
    Load config.yaml from the brig home directory.

    Returns:
        BrigConfig

    Raises:
        FileNotFoundError: If config.yaml does not exist
        ConfigError: If it is not valid YAML or has invalid values
    """
    config_path = get_brig_home() / "config.yaml"
    if not config_path.exists():
        raise FileNotFoundError(
            f"brig config.yaml not found at {config_path}. Run 'brig init' to create one."
        )

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")

    config = BrigConfig.from_dict(data)
    if config.env_file:
        load_dotenv(Path(config.env_file).expanduser())
    return config


def load_config_or_default() -> BrigConfig:
    """load_config(), or defaults when no config.yaml exists yet."""
    try:
        return load_config()
    except FileNotFoundError:
        return BrigConfig()
