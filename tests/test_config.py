"""
Tests for the auth configuration surface.

Covers defaults, validation, INI file loading and environment overrides.
"""

import os
import tempfile
import pytest
from pathlib import Path
from unittest.mock import patch

from iob_client.config import AuthConfig, ClientConfiguration, StorageBackend
from iob_shared.exceptions import ConfigurationError, ErrorCode


class TestAuthConfig:
    """Test AuthConfig defaults and validation."""

    def test_defaults(self):
        config = AuthConfig()

        assert config.refresh_threshold_minutes == 5
        assert config.refresh_threshold_seconds == 300
        assert config.max_refresh_retries == 1
        assert config.retry_delay_ms == 1000
        assert config.storage_backend == StorageBackend.DURABLE
        assert config.cross_tab_sync is True
        assert config.fail_open_on_refresh_error is False

    def test_browser_storage_aliases(self):
        assert AuthConfig(storage_backend="localStorage").storage_backend == StorageBackend.DURABLE
        assert AuthConfig(storage_backend="sessionStorage").storage_backend == StorageBackend.SESSION
        assert AuthConfig(storage_backend="memory").storage_backend == StorageBackend.MEMORY

    def test_unknown_backend_rejected(self):
        with pytest.raises(ConfigurationError) as exc_info:
            AuthConfig(storage_backend="cookies")

        assert exc_info.value.context['config_key'] == 'storage_backend'

    @pytest.mark.parametrize("field,value", [
        ("refresh_threshold_minutes", -1),
        ("max_refresh_retries", -1),
        ("retry_delay_ms", -5),
        ("watch_interval_seconds", 0),
        ("default_expires_in", 0),
    ])
    def test_invalid_values_rejected(self, field, value):
        with pytest.raises(ConfigurationError) as exc_info:
            AuthConfig(**{field: value})

        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_VALUE

    def test_from_dict_ignores_unknown_keys(self):
        config = AuthConfig.from_dict({"refresh_threshold_minutes": 2, "colour": "blue"})

        assert config.refresh_threshold_minutes == 2

    def test_to_dict_uses_backend_value(self):
        assert AuthConfig(storage_backend="session").to_dict()['storage_backend'] == "session"


class TestClientConfiguration:
    """Test layered configuration loading."""

    def test_defaults_without_file(self):
        with patch.dict(os.environ, {}, clear=True):
            config = ClientConfiguration().get_auth_config()

        assert config == AuthConfig()

    def test_load_from_ini_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "client.conf"
            config_path.write_text(
                "[auth]\n"
                "refresh_threshold_minutes = 10\n"
                "storage_backend = memory\n"
                "cross_tab_sync = false\n"
                "\n"
                "[logging]\n"
                "log_level = debug\n"
            )

            with patch.dict(os.environ, {}, clear=True):
                configuration = ClientConfiguration(str(config_path))

            config = configuration.get_auth_config()
            assert config.refresh_threshold_minutes == 10
            assert config.storage_backend == StorageBackend.MEMORY
            assert config.cross_tab_sync is False
            assert configuration.get_logging_settings()['log_level'] == "DEBUG"

    def test_environment_overrides_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "client.conf"
            config_path.write_text("[auth]\nrefresh_threshold_minutes = 10\n")

            env = {
                'IOB_SDK_REFRESH_THRESHOLD_MINUTES': '3',
                'IOB_SDK_FAIL_OPEN_ON_REFRESH_ERROR': 'TRUE',
                'IOB_SDK_STORAGE_BACKEND': 'session',
            }
            with patch.dict(os.environ, env, clear=True):
                config = ClientConfiguration(str(config_path)).get_auth_config()

        assert config.refresh_threshold_minutes == 3
        assert config.fail_open_on_refresh_error is True
        assert config.storage_backend == StorageBackend.SESSION

    def test_overrides_take_precedence(self):
        with patch.dict(os.environ, {'IOB_SDK_RETRY_DELAY_MS': '500'}, clear=True):
            config = ClientConfiguration(overrides={'retry_delay_ms': 250}).get_auth_config()

        assert config.retry_delay_ms == 250

    def test_missing_file_uses_defaults(self):
        with patch.dict(os.environ, {}, clear=True):
            configuration = ClientConfiguration("/nonexistent/client.conf")

        assert configuration.get('auth', 'refresh_threshold_minutes') is None
        assert configuration.get_auth_config().refresh_threshold_minutes == 5

    def test_invalid_value_in_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "client.conf"
            config_path.write_text("[auth]\nmax_refresh_retries = -2\n")

            with patch.dict(os.environ, {}, clear=True):
                configuration = ClientConfiguration(str(config_path))

            with pytest.raises(ConfigurationError):
                configuration.get_auth_config()

    def test_malformed_file(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            config_path = Path(temp_dir) / "client.conf"
            config_path.write_text("refresh_threshold_minutes = 10\n")

            with pytest.raises(ConfigurationError) as exc_info:
                ClientConfiguration(str(config_path))

        assert exc_info.value.error_code == ErrorCode.CONFIG_INVALID_FORMAT
