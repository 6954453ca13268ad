"""Tests for configuration management."""

import pytest
import tempfile
import yaml
from pathlib import Path
from config.config_manager import ConfigManager, StorageConfig, SyncConfig, TransportConfig


class TestConfigManager:
    """Test suite for ConfigManager."""

    @pytest.fixture
    def temp_config_dir(self):
        """Create temporary directory for test configuration."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield Path(tmpdir)

    @pytest.fixture
    def sample_config(self, temp_config_dir):
        """Sample configuration dictionary with paths inside the temp dir."""
        base = temp_config_dir / "drive"
        return {
            'storage': {
                'base_dir': str(base),
                'db_path': str(base / "data" / "index.db"),
                'cache_dir': str(base / "cache"),
            },
            'transport': {
                'storage_chat_id': -1001234567890,
                'call_timeout': 30
            },
            'sync': {
                'reconcile_limit': 50,
                'history_page_size': 100,
                'search_page_limit': 8,
                'caption_retry_delay': 0.6,
                'exists_retry_delays': [0.15, 0.5, 1.0, 1.5]
            },
            'logging': {
                'level': 'INFO',
                'log_path': str(base / "logs" / "msgdrive.log"),
                'max_log_size': 10485760,
                'backup_count': 5
            }
        }

    @pytest.fixture
    def config_path(self, temp_config_dir, sample_config):
        path = temp_config_dir / "settings.yaml"
        with open(path, 'w') as f:
            yaml.dump(sample_config, f)
        return path

    def test_load_config(self, config_path):
        """Test loading configuration from file."""
        manager = ConfigManager(config_path)

        assert manager.get_config('transport', 'storage_chat_id') == -1001234567890
        assert manager.get_config('sync', 'reconcile_limit') == 50

    def test_get_config_section(self, config_path):
        """Test getting entire configuration section."""
        manager = ConfigManager(config_path)
        sync = manager.get_config('sync')

        assert isinstance(sync, dict)
        assert sync['exists_retry_delays'] == [0.15, 0.5, 1.0, 1.5]

    def test_missing_key_raises(self, config_path):
        manager = ConfigManager(config_path)

        with pytest.raises(KeyError):
            manager.get_config('network')
        with pytest.raises(KeyError):
            manager.get_config('sync', 'interval')

    def test_save_config(self, config_path):
        """Test saving writes the merged configuration back to the file."""
        manager = ConfigManager(config_path)
        config_path.unlink()
        manager.save_config()

        with open(config_path, 'r') as f:
            saved_config = yaml.safe_load(f)

        assert saved_config['sync']['reconcile_limit'] == 50
        assert ConfigManager(config_path).get_config('transport', 'storage_chat_id') == -1001234567890

    def test_env_override(self, config_path, monkeypatch):
        """Test environment variable overrides."""
        monkeypatch.setenv('MSGDRIVE_TRANSPORT__STORAGE_CHAT_ID', '-1009')
        monkeypatch.setenv('MSGDRIVE_SYNC__CAPTION_RETRY_DELAY', '0.25')
        monkeypatch.setenv('MSGDRIVE_SYNC__EXISTS_RETRY_DELAYS', '0.1,0.2')

        manager = ConfigManager(config_path)

        assert manager.get_config('transport', 'storage_chat_id') == -1009
        assert manager.get_config('sync', 'caption_retry_delay') == 0.25
        assert manager.get_config('sync', 'exists_retry_delays') == [0.1, 0.2]

    def test_partial_user_config_merges_with_defaults(self, temp_config_dir):
        """Test that missing sections come from the bundled defaults."""
        config_path = temp_config_dir / "settings.yaml"
        base = temp_config_dir / "drive"
        partial = {
            'storage': {
                'base_dir': str(base),
                'db_path': str(base / "index.db"),
                'cache_dir': str(base / "cache"),
            },
            'logging': {'log_path': str(base / "app.log")},
            'transport': {'storage_chat_id': -42},
        }
        with open(config_path, 'w') as f:
            yaml.dump(partial, f)

        manager = ConfigManager(config_path)

        assert manager.get_config('transport', 'storage_chat_id') == -42
        assert manager.get_config('transport', 'call_timeout') == 60
        assert manager.get_config('sync', 'search_page_limit') == 8
        assert manager.get_config('logging', 'level') == 'INFO'

    def test_validation_invalid_type(self, temp_config_dir, sample_config):
        """Test validation fails with invalid field type."""
        config_path = temp_config_dir / "settings.yaml"
        sample_config['transport']['call_timeout'] = "soon"

        with open(config_path, 'w') as f:
            yaml.dump(sample_config, f)

        with pytest.raises(ValueError, match="must be of type"):
            ConfigManager(config_path)

    def test_validation_rejects_boolean_for_int(self, temp_config_dir, sample_config):
        config_path = temp_config_dir / "settings.yaml"
        sample_config['sync']['reconcile_limit'] = True

        with open(config_path, 'w') as f:
            yaml.dump(sample_config, f)

        with pytest.raises(ValueError, match="boolean"):
            ConfigManager(config_path)

    def test_validation_out_of_range(self, temp_config_dir, sample_config):
        """Test validation fails with out of range value."""
        config_path = temp_config_dir / "settings.yaml"
        sample_config['sync']['history_page_size'] = 1000

        with open(config_path, 'w') as f:
            yaml.dump(sample_config, f)

        with pytest.raises(ValueError, match="must be <="):
            ConfigManager(config_path)

    def test_validation_negative_delay(self, temp_config_dir, sample_config):
        config_path = temp_config_dir / "settings.yaml"
        sample_config['sync']['exists_retry_delays'] = [0.1, -1]

        with open(config_path, 'w') as f:
            yaml.dump(sample_config, f)

        with pytest.raises(ValueError, match="exists_retry_delays"):
            ConfigManager(config_path)

    def test_dataclasses(self, config_path):
        """Test getting sections as dataclasses."""
        manager = ConfigManager(config_path)

        storage = manager.get_storage_config()
        transport = manager.get_transport_config()
        sync = manager.get_sync_config()

        assert isinstance(storage, StorageConfig)
        assert isinstance(transport, TransportConfig)
        assert isinstance(sync, SyncConfig)
        assert transport.call_timeout == 30
        assert sync.exists_retry_delays == [0.15, 0.5, 1.0, 1.5]

    def test_expand_path(self, config_path):
        """Test path expansion with ~."""
        manager = ConfigManager(config_path)

        expanded = manager.expand_path("~/.msgdrive/data")
        assert str(expanded).startswith(str(Path.home()))
        assert not str(expanded).startswith("~")

    def test_user_directories_created(self, config_path, temp_config_dir):
        """Test that data, cache and log directories are created on initialization."""
        ConfigManager(config_path)

        base = temp_config_dir / "drive"
        assert (base / "data").exists()
        assert (base / "cache" / "downloads").exists()
        assert (base / "logs").exists()

    def test_missing_user_config_is_written(self, temp_config_dir, monkeypatch):
        """Test that the defaults are saved when no user config exists."""
        monkeypatch.setattr(Path, 'home', lambda: temp_config_dir / "home")
        monkeypatch.setenv('HOME', str(temp_config_dir / "home"))
        config_path = temp_config_dir / "fresh" / "settings.yaml"

        manager = ConfigManager(config_path)

        assert config_path.exists()
        assert manager.get_config('sync', 'reconcile_limit') == 200
