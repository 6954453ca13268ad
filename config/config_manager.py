"""Configuration manager for msgdrive.

This module handles loading, validating, and persisting application configuration.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field


@dataclass
class StorageConfig:
    """Local storage locations."""
    base_dir: str = "~/.msgdrive"
    db_path: str = "~/.msgdrive/data/index.db"
    cache_dir: str = "~/.msgdrive/cache"


@dataclass
class TransportConfig:
    """Messaging transport settings."""
    storage_chat_id: int = 0
    call_timeout: int = 60


@dataclass
class SyncConfig:
    """Synchronization and retry settings."""
    reconcile_limit: int = 200
    history_page_size: int = 100
    search_page_limit: int = 8
    caption_retry_delay: float = 0.6
    exists_retry_delays: list = field(default_factory=lambda: [0.15, 0.5, 1.0, 1.5])


@dataclass
class LoggingConfig:
    """Logging configuration settings."""
    level: str = "INFO"
    log_path: str = "~/.msgdrive/logs/msgdrive.log"
    max_log_size: int = 10485760  # 10 MB
    backup_count: int = 5


class ConfigManager:
    """Manages application configuration with validation and persistence."""

    DEFAULT_CONFIG_PATH = Path.home() / ".msgdrive" / "config" / "settings.yaml"
    BUNDLED_CONFIG_PATH = Path(__file__).parent / "settings.yaml"
    ENV_PREFIX = "MSGDRIVE_"

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Optional custom path to configuration file.
                        If None, uses default user config path.
        """
        self.config_path = config_path or self.DEFAULT_CONFIG_PATH
        self._config: Dict[str, Any] = {}
        self._load_config()
        self._ensure_user_directories()

    def _ensure_user_directories(self) -> None:
        """Create the data, cache and log directories if they don't exist."""
        storage = self._config['storage']
        directories = [
            self.expand_path(storage['base_dir']),
            self.expand_path(storage['db_path']).parent,
            self.expand_path(storage['cache_dir']) / "downloads",
            self.expand_path(self._config['logging']['log_path']).parent,
        ]

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

    def _load_config(self) -> None:
        """Load configuration from file with fallback to defaults."""
        # First, load bundled default config
        default_config = self._load_yaml(self.BUNDLED_CONFIG_PATH)

        # Then try to load user config
        if self.config_path.exists():
            user_config = self._load_yaml(self.config_path)
            # Merge user config over defaults
            self._config = self._merge_configs(default_config, user_config)
        else:
            # Use defaults and save to user config location
            self._config = default_config
            self.save_config()

        # Apply environment variable overrides
        self._apply_env_overrides()

        # Validate configuration
        self._validate_config()

    def _load_yaml(self, path: Path) -> Dict[str, Any]:
        """Load YAML configuration file.

        Args:
            path: Path to YAML file

        Returns:
            Dictionary containing configuration
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                config = yaml.safe_load(f)
                return config if config else {}
        except FileNotFoundError:
            return {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in config file {path}: {e}")

    def _merge_configs(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge two configuration dictionaries.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_configs(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides to configuration.

        Environment variables should be prefixed with MSGDRIVE_ and use
        double underscores for nested keys. For example:
        MSGDRIVE_TRANSPORT__STORAGE_CHAT_ID=-1001234567890
        """
        prefix = self.ENV_PREFIX

        for env_key, env_value in os.environ.items():
            if not env_key.startswith(prefix):
                continue

            # Remove prefix and split by double underscore
            config_key = env_key[len(prefix):].lower()
            parts = config_key.split("__")

            if len(parts) != 2:
                continue

            section, key = parts

            if section not in self._config:
                continue

            self._config[section][key] = self._convert_env_value(env_value)

    def _convert_env_value(self, value: str) -> Any:
        """Convert environment variable string to appropriate type.

        Args:
            value: String value from environment variable

        Returns:
            Converted value (bool, int, float, list of floats, or str)
        """
        # Try boolean
        if value.lower() in ('true', 'yes'):
            return True
        if value.lower() in ('false', 'no'):
            return False

        # Try integer
        try:
            return int(value)
        except ValueError:
            pass

        # Try float
        try:
            return float(value)
        except ValueError:
            pass

        # Comma separated numbers, e.g. retry delays
        if ',' in value:
            try:
                return [float(part) for part in value.split(',') if part.strip()]
            except ValueError:
                pass

        # Return as string
        return value

    def _validate_config(self) -> None:
        """Validate configuration has all required fields and correct types."""
        required_sections = ['storage', 'transport', 'sync', 'logging']

        for section in required_sections:
            if section not in self._config:
                raise ValueError(f"Missing required configuration section: {section}")

        # Validate storage section
        storage = self._config['storage']
        self._validate_field(storage, 'base_dir', str)
        self._validate_field(storage, 'db_path', str)
        self._validate_field(storage, 'cache_dir', str)

        # Validate transport section
        transport = self._config['transport']
        self._validate_field(transport, 'storage_chat_id', int)
        self._validate_field(transport, 'call_timeout', int, 1, 3600)

        # Validate sync section
        sync = self._config['sync']
        self._validate_field(sync, 'reconcile_limit', int, 1, 10000)
        self._validate_field(sync, 'history_page_size', int, 1, 100)
        self._validate_field(sync, 'search_page_limit', int, 1, 100)
        self._validate_field(sync, 'caption_retry_delay', (int, float), 0, 60)
        self._validate_field(sync, 'exists_retry_delays', list)
        if not sync['exists_retry_delays']:
            raise ValueError("Field exists_retry_delays must not be empty")
        for delay in sync['exists_retry_delays']:
            if not isinstance(delay, (int, float)) or delay < 0:
                raise ValueError(f"Invalid delay in exists_retry_delays: {delay}")

        # Validate logging section
        logging = self._config['logging']
        self._validate_field(logging, 'level', str)
        self._validate_field(logging, 'log_path', str)
        self._validate_field(logging, 'max_log_size', int, 1024, 104857600)
        self._validate_field(logging, 'backup_count', int, 0, 100)

    def _validate_field(self, section: Dict[str, Any], field: str,
                        expected_type, min_val: Optional[float] = None,
                        max_val: Optional[float] = None) -> None:
        """Validate a configuration field.

        Args:
            section: Configuration section dictionary
            field: Field name to validate
            expected_type: Expected type (or tuple of types) of the field
            min_val: Optional minimum value for numeric fields
            max_val: Optional maximum value for numeric fields

        Raises:
            ValueError: If validation fails
        """
        if field not in section:
            raise ValueError(f"Missing required field: {field}")

        value = section[field]
        types = expected_type if isinstance(expected_type, tuple) else (expected_type,)

        if isinstance(value, bool) and bool not in types:
            raise ValueError(f"Field {field} must not be a boolean")

        if not isinstance(value, types):
            type_names = "/".join(t.__name__ for t in types)
            raise ValueError(
                f"Field {field} must be of type {type_names}, "
                f"got {type(value).__name__}"
            )

        numeric = any(t in (int, float) for t in types)

        if numeric and min_val is not None and value < min_val:
            raise ValueError(f"Field {field} must be >= {min_val}, got {value}")

        if numeric and max_val is not None and value > max_val:
            raise ValueError(f"Field {field} must be <= {max_val}, got {value}")

    def save_config(self) -> None:
        """Save current configuration to file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)

    def get_config(self, section: str, key: Optional[str] = None) -> Any:
        """Get configuration value.

        Args:
            section: Configuration section name
            key: Optional key within section. If None, returns entire section.

        Returns:
            Configuration value

        Raises:
            KeyError: If section or key doesn't exist
        """
        if section not in self._config:
            raise KeyError(f"Configuration section not found: {section}")

        if key is None:
            return self._config[section]

        if key not in self._config[section]:
            raise KeyError(f"Configuration key not found: {section}.{key}")

        return self._config[section][key]

    def get_storage_config(self) -> StorageConfig:
        """Get storage configuration as dataclass."""
        return StorageConfig(**self._config['storage'])

    def get_transport_config(self) -> TransportConfig:
        """Get transport configuration as dataclass."""
        return TransportConfig(**self._config['transport'])

    def get_sync_config(self) -> SyncConfig:
        """Get sync configuration as dataclass."""
        return SyncConfig(**self._config['sync'])

    def get_logging_config(self) -> LoggingConfig:
        """Get logging configuration as dataclass."""
        return LoggingConfig(**self._config['logging'])

    def expand_path(self, path: str) -> Path:
        """Expand user home directory and environment variables in path.

        Args:
            path: Path string potentially containing ~ or environment variables

        Returns:
            Expanded Path object
        """
        return Path(os.path.expanduser(os.path.expandvars(path)))
