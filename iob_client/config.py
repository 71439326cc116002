"""
Configuration Management for the IoB client SDK.

This module exposes the token lifecycle configuration surface to the host
application, with support for configuration files and environment variables.
"""

import os
import json
import logging
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from iob_shared.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)


class StorageBackend(Enum):
    """Where the auth bundle is persisted."""
    MEMORY = "memory"
    SESSION = "session"
    DURABLE = "durable"

    @classmethod
    def parse(cls, value: Any) -> 'StorageBackend':
        if isinstance(value, cls):
            return value
        # Names used by the browser build of the SDK
        aliases = {
            'localstorage': cls.DURABLE,
            'sessionstorage': cls.SESSION,
        }
        normalized = str(value).strip().lower()
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            raise ConfigurationError(
                f"storage_backend must be one of: memory, session, durable (got {value!r})",
                config_key='storage_backend'
            )


@dataclass
class AuthConfig:
    """
    Token lifecycle settings.

    ``max_refresh_retries`` is published for callers that implement their
    own retry policy; the auth manager never retries. In fail-open mode
    ``retry_delay_ms`` is the pause after a failed refresh before an
    on-demand refresh is attempted again.
    """
    refresh_threshold_minutes: float = 5
    max_refresh_retries: int = 1
    retry_delay_ms: int = 1000
    storage_backend: StorageBackend = StorageBackend.DURABLE
    cross_tab_sync: bool = True
    cleanup_interval_seconds: float = 60
    watch_interval_seconds: float = 1.0
    default_expires_in: int = 3600
    fail_open_on_refresh_error: bool = False
    service_name: str = "iob-sdk"
    storage_dir: Optional[str] = None

    def __post_init__(self):
        self.storage_backend = StorageBackend.parse(self.storage_backend)

        if self.refresh_threshold_minutes < 0:
            raise ConfigurationError(
                "refresh_threshold_minutes cannot be negative",
                config_key='refresh_threshold_minutes'
            )
        if self.max_refresh_retries < 0:
            raise ConfigurationError(
                "max_refresh_retries cannot be negative",
                config_key='max_refresh_retries'
            )
        if self.retry_delay_ms < 0:
            raise ConfigurationError(
                "retry_delay_ms cannot be negative",
                config_key='retry_delay_ms'
            )
        if self.cleanup_interval_seconds < 0:
            raise ConfigurationError(
                "cleanup_interval_seconds cannot be negative",
                config_key='cleanup_interval_seconds'
            )
        if self.watch_interval_seconds <= 0:
            raise ConfigurationError(
                "watch_interval_seconds must be positive",
                config_key='watch_interval_seconds'
            )
        if self.default_expires_in <= 0:
            raise ConfigurationError(
                "default_expires_in must be positive",
                config_key='default_expires_in'
            )

    @property
    def refresh_threshold_seconds(self) -> float:
        return self.refresh_threshold_minutes * 60

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AuthConfig':
        """Build a config from a mapping, ignoring unknown keys."""
        known = cls.__dataclass_fields__.keys()
        unknown = set(data) - set(known)
        if unknown:
            logger.warning(f"Ignoring unknown auth settings: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['storage_backend'] = self.storage_backend.value
        return data


class ClientConfiguration:
    """
    Configuration loader for the IoB client SDK.

    Supports configuration from:
    1. Explicit overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'IOB_SDK_REFRESH_THRESHOLD_MINUTES': ('auth', 'refresh_threshold_minutes'),
        'IOB_SDK_MAX_REFRESH_RETRIES': ('auth', 'max_refresh_retries'),
        'IOB_SDK_RETRY_DELAY_MS': ('auth', 'retry_delay_ms'),
        'IOB_SDK_STORAGE_BACKEND': ('auth', 'storage_backend'),
        'IOB_SDK_CROSS_TAB_SYNC': ('auth', 'cross_tab_sync'),
        'IOB_SDK_CLEANUP_INTERVAL_SECONDS': ('auth', 'cleanup_interval_seconds'),
        'IOB_SDK_FAIL_OPEN_ON_REFRESH_ERROR': ('auth', 'fail_open_on_refresh_error'),
        'IOB_SDK_STORAGE_DIR': ('auth', 'storage_dir'),
        'IOB_SDK_LOG_LEVEL': ('logging', 'log_level'),
        'IOB_SDK_LOG_FORMAT': ('logging', 'log_format'),
    }

    def __init__(self, config_file: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None):
        self._config_file = config_file
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides = overrides or {}

        self._load_configuration()

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if self._config_file:
            if os.path.exists(self._config_file):
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            else:
                logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()

        for key, value in self._overrides.items():
            self._config_data.setdefault('auth', {})[key] = value

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for numbers and booleans
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is None:
                continue

            section_data = self._config_data.setdefault(section, {})
            if value.lower() in ('true', 'false'):
                section_data[key] = value.lower() == 'true'
            else:
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

    def get(self, section: str, key: str, default: Any = None) -> Any:
        return self._config_data.get(section, {}).get(key, default)

    def get_auth_config(self) -> AuthConfig:
        """Build the validated token lifecycle configuration."""
        return AuthConfig.from_dict(self._config_data.get('auth', {}))

    def get_logging_settings(self) -> Dict[str, Any]:
        return {
            'log_level': str(self.get('logging', 'log_level', 'INFO')).upper(),
            'log_format': str(self.get('logging', 'log_format', 'standard')).lower(),
            'log_file': self.get('logging', 'log_file'),
        }
