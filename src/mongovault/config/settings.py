"""
Configuration settings management for mongovault.

This module handles loading, validating, and saving configuration settings
from YAML files with support for environment variable overrides.

Configuration is loaded from ~/.mongovault/config.yaml by default, with the
path overridable via the MONGOVAULT_CONFIG environment variable. The
encryption password is never read from the file; it comes from the
MONGOVAULT_PASSWORD environment variable or an interactive prompt.
"""

import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# Default configuration directory
DEFAULT_CONFIG_DIR = Path.home() / ".mongovault"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.yaml"

PASSWORD_ENV_VAR = "MONGOVAULT_PASSWORD"

VALID_SERIALIZERS = ("bson", "json", "ejson")
VALID_COMPRESSION = ("none", "gzip", "deflate", "brotli")


@dataclass
class BackupConfig:
    """Which collections are transferred and how they are serialized."""

    collections: list[str] | None = None
    include_metadata: bool = False
    clean_destination: bool = True
    serializer: str = "bson"
    query: dict[str, Any] = field(default_factory=dict)
    insert_batch_size: int = 1000


@dataclass
class CompressionConfig:
    """Compression stage settings."""

    algorithm: str = "none"
    level: int | None = None


@dataclass
class EncryptionConfig:
    """Encryption stage settings."""

    enabled: bool = False
    iterations: int = 120_000


@dataclass
class Settings:
    """
    Complete mongovault configuration settings.

    Settings are loaded from a YAML configuration file and can be overridden
    by environment variables prefixed with MONGOVAULT_.

    Attributes:
        uri: MongoDB connection URI.
        log_level: Logging verbosity (DEBUG, INFO, WARNING, ERROR).
        backup: Collection selection and serialization settings.
        compression: Compression stage settings.
        encryption: Encryption stage settings.
    """

    uri: str = ""
    log_level: str = "INFO"

    backup: BackupConfig = field(default_factory=BackupConfig)
    compression: CompressionConfig = field(default_factory=CompressionConfig)
    encryption: EncryptionConfig = field(default_factory=EncryptionConfig)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


def get_config_path() -> Path:
    """
    Get the configuration file path.

    Returns the path from MONGOVAULT_CONFIG environment variable if set,
    otherwise returns the default path (~/.mongovault/config.yaml).

    Returns:
        Path to the configuration file.
    """
    env_path = os.environ.get("MONGOVAULT_CONFIG")
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_FILE


def load_config(config_path: Path | None = None) -> Settings:
    """
    Load configuration from YAML file.

    Reads configuration from the specified path (or default if not provided),
    applies environment variable overrides, and validates the configuration.

    Args:
        config_path: Optional path to configuration file. If not provided,
                    uses MONGOVAULT_CONFIG environment variable or default path.

    Returns:
        Validated Settings instance.

    Raises:
        ConfigurationError: If the configuration file cannot be read or
                          contains invalid settings.
    """
    if config_path is None:
        config_path = get_config_path()

    settings = Settings()

    if config_path.exists():
        try:
            with open(config_path) as f:
                config_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read config file: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Config file must contain a mapping")

        settings = _apply_config_data(settings, config_data)

    settings = _apply_environment_overrides(settings)

    validate_config(settings)

    return settings


def save_config(settings: Settings, config_path: Path | None = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        settings: Settings instance to save.
        config_path: Optional path to configuration file.

    Raises:
        ConfigurationError: If the configuration cannot be written.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config_data = _settings_to_dict(settings)

    try:
        with open(config_path, "w") as f:
            yaml.safe_dump(config_data, f, default_flow_style=False, sort_keys=False)
    except OSError as e:
        raise ConfigurationError(f"Cannot write config file: {e}") from e


def _apply_config_data(settings: Settings, data: dict[str, Any]) -> Settings:
    """Apply configuration data from parsed YAML to settings."""
    general = data.get("mongovault", {}) or {}

    if "uri" in general:
        settings.uri = str(general["uri"])
    if "log_level" in general:
        settings.log_level = str(general["log_level"]).upper()

    backup = data.get("backup", {}) or {}
    if "collections" in backup:
        collections = backup["collections"]
        settings.backup.collections = None if collections is None else list(collections)
    if "include_metadata" in backup:
        settings.backup.include_metadata = bool(backup["include_metadata"])
    if "clean_destination" in backup:
        settings.backup.clean_destination = bool(backup["clean_destination"])
    if "serializer" in backup:
        settings.backup.serializer = str(backup["serializer"]).lower()
    if "query" in backup:
        settings.backup.query = backup["query"] or {}
    if "insert_batch_size" in backup:
        settings.backup.insert_batch_size = int(backup["insert_batch_size"])

    compression = data.get("compression", {}) or {}
    if "algorithm" in compression:
        settings.compression.algorithm = str(compression["algorithm"]).lower()
    if "level" in compression:
        level = compression["level"]
        settings.compression.level = None if level is None else int(level)

    encryption = data.get("encryption", {}) or {}
    if "enabled" in encryption:
        settings.encryption.enabled = bool(encryption["enabled"])
    if "iterations" in encryption:
        settings.encryption.iterations = int(encryption["iterations"])

    return settings


def _apply_environment_overrides(settings: Settings) -> Settings:
    """Apply environment variable overrides to settings."""
    env_map: dict[str, tuple[str, Callable[[str], Any]]] = {
        "MONGOVAULT_URI": ("uri", str),
        "MONGOVAULT_LOG_LEVEL": ("log_level", lambda x: x.upper()),
        "MONGOVAULT_SERIALIZER": ("backup.serializer", lambda x: x.lower()),
        "MONGOVAULT_COLLECTIONS": (
            "backup.collections",
            lambda x: [name.strip() for name in x.split(",") if name.strip()],
        ),
        "MONGOVAULT_COMPRESSION": ("compression.algorithm", lambda x: x.lower()),
    }

    for env_var, (attr_path, converter) in env_map.items():
        value = os.environ.get(env_var)
        if value is not None:
            _set_nested_attr(settings, attr_path, converter(value))

    return settings


def _set_nested_attr(obj: Any, path: str, value: Any) -> None:
    """Set a nested attribute on an object using dot notation."""
    parts = path.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    setattr(obj, parts[-1], value)


def validate_config(settings: Settings) -> None:
    """
    Validate configuration settings.

    Raises:
        ConfigurationError: If configuration is invalid.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if settings.log_level not in valid_log_levels:
        raise ConfigurationError(
            f"Invalid log_level: {settings.log_level}. "
            f"Must be one of: {', '.join(sorted(valid_log_levels))}"
        )

    if settings.backup.serializer not in VALID_SERIALIZERS:
        raise ConfigurationError(
            f"Invalid serializer: {settings.backup.serializer}. "
            f"Must be one of: {', '.join(VALID_SERIALIZERS)}"
        )

    if settings.backup.insert_batch_size < 1:
        raise ConfigurationError("insert_batch_size must be at least 1")

    if not isinstance(settings.backup.query, dict):
        raise ConfigurationError("query must be a mapping")

    if settings.compression.algorithm not in VALID_COMPRESSION:
        raise ConfigurationError(
            f"Invalid compression algorithm: {settings.compression.algorithm}. "
            f"Must be one of: {', '.join(VALID_COMPRESSION)}"
        )

    if settings.encryption.iterations < 1:
        raise ConfigurationError("encryption iterations must be at least 1")


def _settings_to_dict(settings: Settings) -> dict[str, Any]:
    """Convert Settings instance to dictionary for YAML serialization."""
    return {
        "mongovault": {
            "uri": settings.uri,
            "log_level": settings.log_level,
        },
        "backup": {
            "collections": settings.backup.collections,
            "include_metadata": settings.backup.include_metadata,
            "clean_destination": settings.backup.clean_destination,
            "serializer": settings.backup.serializer,
            "query": settings.backup.query,
            "insert_batch_size": settings.backup.insert_batch_size,
        },
        "compression": {
            "algorithm": settings.compression.algorithm,
            "level": settings.compression.level,
        },
        "encryption": {
            "enabled": settings.encryption.enabled,
            "iterations": settings.encryption.iterations,
        },
    }
