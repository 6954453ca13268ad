"""Configuration management module for msgdrive."""

from .config_manager import (
    ConfigManager,
    LoggingConfig,
    StorageConfig,
    SyncConfig,
    TransportConfig,
)

__all__ = [
    'ConfigManager',
    'LoggingConfig',
    'StorageConfig',
    'SyncConfig',
    'TransportConfig',
]
