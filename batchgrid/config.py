"""
Configuration management for batchgrid.

Loads and validates ``config.yaml`` from the batchgrid home directory
(``$BATCHGRID_HOME`` or ``~/.config/batchgrid``).

Example config.yaml:

    backend: scheduler
    backend_options:
      scheduler: slurm
    chunk_size: 10
    serializer: pickle
    seed: 42
    submit_attempts: 3
    submit_backoff_seconds: 5
    log_level: INFO
    log_format: pretty
    env_file: ~/.config/batchgrid/.env
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

from batchgrid.errors import ConfigError

SERIALIZERS = ("pickle", "json")
LOG_FORMATS = ("structured", "pretty", "plain")


def get_batchgrid_home() -> Path:
    """Return the batchgrid home directory."""
    env_home = os.environ.get("BATCHGRID_HOME")
    if env_home:
        return Path(env_home).expanduser()
    return Path("~/.config/batchgrid").expanduser()


@dataclass
class BatchgridConfig:
    """
    Controller-side settings.

    Attributes:
        backend: Name of the cluster backend (see batchgrid.backends)
        backend_options: Keyword arguments for the backend factory
        chunk_size: Default number of jobs per job collection
        serializer: Serializer for data payloads and results of new registries
        seed: Base seed for new registries (random if None)
        submit_attempts: Attempts per collection before a rejection is final
        submit_backoff_seconds: Initial wait between submission attempts
        log_level: Logging level
        log_format: "structured", "pretty" or "plain"
        log_file: Optional log file for the controller
        env_file: Optional dotenv file loaded into the environment
    """
    backend: str = "interactive"
    backend_options: dict[str, Any] = field(default_factory=dict)
    chunk_size: int = 1
    serializer: str = "pickle"
    seed: Optional[int] = None
    submit_attempts: int = 1
    submit_backoff_seconds: float = 5.0
    log_level: str = "INFO"
    log_format: str = "structured"
    log_file: Optional[str] = None
    env_file: Optional[str] = None

    def validate(self) -> None:
        """Validate field values."""
        if not isinstance(self.backend, str) or not self.backend:
            raise ConfigError("'backend' must be a non-empty string")
        if not isinstance(self.backend_options, dict):
            raise ConfigError("'backend_options' must be a mapping")
        if not isinstance(self.chunk_size, int) or self.chunk_size < 1:
            raise ConfigError(f"'chunk_size' must be a positive integer, got {self.chunk_size!r}")
        if self.serializer not in SERIALIZERS:
            raise ConfigError(
                f"Unknown serializer '{self.serializer}'. Expected one of {SERIALIZERS}"
            )
        if self.seed is not None and not isinstance(self.seed, int):
            raise ConfigError(f"'seed' must be an integer, got {self.seed!r}")
        if not isinstance(self.submit_attempts, int) or self.submit_attempts < 1:
            raise ConfigError("'submit_attempts' must be >= 1")
        if self.log_format not in LOG_FORMATS:
            raise ConfigError(
                f"Unknown log_format '{self.log_format}'. Expected one of {LOG_FORMATS}"
            )

    def get_log_file_path(self) -> Optional[Path]:
        """Return the controller log file path, if configured."""
        if not self.log_file:
            return None
        return Path(self.log_file).expanduser()

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for YAML output."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BatchgridConfig":
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {unknown}")
        config = cls(**data)
        config.validate()
        return config


def default_config() -> BatchgridConfig:
    """Return the built-in defaults."""
    return BatchgridConfig()


def load_config(config_path: Optional[Path] = None) -> BatchgridConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to <home>/config.yaml

    Returns:
        BatchgridConfig instance

    Raises:
        FileNotFoundError: If the config file does not exist
        ConfigError: If config is invalid
    """
    if config_path is None:
        config_path = get_batchgrid_home() / "config.yaml"

    if not config_path.exists():
        raise FileNotFoundError(f"batchgrid config.yaml not found at {config_path}")

    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax in {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {config_path}")

    config = BatchgridConfig.from_dict(data)

    if config.env_file:
        env_path = Path(config.env_file).expanduser()
        if env_path.exists():
            load_dotenv(env_path)

    return config
