"""
Configuration management for mongovault.

This module handles loading, validating, and saving configuration settings.
"""

from mongovault.config.settings import (
    PASSWORD_ENV_VAR,
    BackupConfig,
    CompressionConfig,
    ConfigurationError,
    EncryptionConfig,
    Settings,
    load_config,
    save_config,
    validate_config,
)

__all__ = [
    "Settings",
    "BackupConfig",
    "CompressionConfig",
    "EncryptionConfig",
    "load_config",
    "save_config",
    "validate_config",
    "ConfigurationError",
    "PASSWORD_ENV_VAR",
]
