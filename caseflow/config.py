"""
Configuration management for the CaseFlow sync client.

Handles the service URL, request retry behaviour, sync settings, local
storage location and logging, read from an INI file and environment
variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from caseflow.exceptions import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / '.caseflow'

DEFAULT_CONFIG_TEMPLATE = """# CaseFlow sync client configuration
# Configuration file: {config_path}

[server]
# Base URL of the case service API (required)
url = http://localhost:3000/api

# Per-attempt request timeout in seconds
timeout = 30

# Retries after the first attempt, and base backoff delay in seconds
retry_attempts = 3
retry_delay = 1.0

[sync]
# Work from the local cache only
offline_mode = false

# Queued mutations are dropped after this many failed drains
max_sync_retries = 3
page_size = 20

[storage]
data_dir = {data_dir}
encrypt = true

[logging]
# Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
level = INFO
format = standard
"""


class ClientConfiguration:
    """
    Configuration manager for the CaseFlow client.

    Supports configuration from:
    1. Overrides set at runtime, e.g. from the command line (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path, creating it on first use."""
        DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
        user_config_path = str(DEFAULT_CONFIG_DIR / 'client.conf')

        if not os.path.exists(user_config_path):
            self._create_default_config(user_config_path)

        return user_config_path

    def _create_default_config(self, config_path: str) -> None:
        """Write a commented default configuration file."""
        content = DEFAULT_CONFIG_TEMPLATE.format(
            config_path=config_path,
            data_dir=str(DEFAULT_CONFIG_DIR / 'data')
        )
        try:
            with open(config_path, 'w') as f:
                f.write(content)
        except OSError as e:
            logger.error(f"Failed to create default configuration: {e}")
            raise ConfigurationError(
                f"Cannot create configuration file {config_path}",
                cause=e
            ) from e

        logger.info(f"Created default configuration file: {config_path}")

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.debug(f"Configuration loaded from: {self._config_file}")
        else:
            logger.info(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except Exception as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            ) from e

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Numbers, booleans and lists are written as JSON literals
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'CASEFLOW_SERVER_URL': ('server', 'url'),
            'CASEFLOW_TIMEOUT': ('server', 'timeout'),
            'CASEFLOW_RETRY_ATTEMPTS': ('server', 'retry_attempts'),
            'CASEFLOW_RETRY_DELAY': ('server', 'retry_delay'),
            'CASEFLOW_OFFLINE_MODE': ('sync', 'offline_mode'),
            'CASEFLOW_MAX_SYNC_RETRIES': ('sync', 'max_sync_retries'),
            'CASEFLOW_PAGE_SIZE': ('sync', 'page_size'),
            'CASEFLOW_DATA_DIR': ('storage', 'data_dir'),
            'CASEFLOW_ENCRYPT_STORAGE': ('storage', 'encrypt'),
            'CASEFLOW_DEVICE_PLATFORM': ('device', 'platform'),
            'CASEFLOW_DEVICE_MODEL': ('device', 'model'),
            'CASEFLOW_LOG_LEVEL': ('logging', 'level'),
            'CASEFLOW_LOG_FILE': ('logging', 'file'),
            'CASEFLOW_LOG_FORMAT': ('logging', 'format'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in self._config_data:
                    self._config_data[section] = {}

                if value.lower() in ('true', 'false'):
                    self._config_data[section][key] = value.lower() == 'true'
                elif value.isdigit():
                    self._config_data[section][key] = int(value)
                else:
                    self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Fill in default values for anything not configured."""
        defaults = {
            'server': {
                'url': 'http://localhost:3000/api',
                'timeout': 30.0,
                'retry_attempts': 3,
                'retry_delay': 1.0
            },
            'sync': {
                'offline_mode': False,
                'max_sync_retries': 3,
                'page_size': 20
            },
            'storage': {
                'data_dir': str(DEFAULT_CONFIG_DIR / 'data'),
                'encrypt': True
            },
            'device': {
                'platform': 'python',
                'model': 'unknown'
            },
            'app': {
                'version': '2.1.0'
            },
            'logging': {
                'level': 'INFO',
                'file': None,
                'format': 'standard'
            }
        }

        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def get_config_file_path(self) -> str:
        return self._config_file

    def get_all_config(self) -> Dict[str, Any]:
        return self._config_data.copy()

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def _get_number(self, key: str, cast, default):
        value = self.get_config(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Invalid value for {key}: {value!r}",
                context={'key': key, 'value': value},
                cause=e
            ) from e

    def _get_bool(self, key: str, default: bool) -> bool:
        value = self.get_config(key, default)
        if isinstance(value, str):
            return value.strip().lower() in ('1', 'true', 'yes', 'on')
        return bool(value)

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        """Get the API base URL without a trailing slash."""
        return str(self.get_config('server.url')).rstrip('/')

    def get_server_timeout(self) -> float:
        return self._get_number('server.timeout', float, 30.0)

    def get_retry_attempts(self) -> int:
        """Retries after the first attempt."""
        return self._get_number('server.retry_attempts', int, 3)

    def get_retry_delay(self) -> float:
        return self._get_number('server.retry_delay', float, 1.0)

    def is_offline_mode(self) -> bool:
        return self._get_bool('sync.offline_mode', False)

    def get_max_sync_retries(self) -> int:
        return self._get_number('sync.max_sync_retries', int, 3)

    def get_page_size(self) -> int:
        return self._get_number('sync.page_size', int, 20)

    def get_data_dir(self) -> str:
        return os.path.expanduser(str(self.get_config('storage.data_dir')))

    def is_storage_encrypted(self) -> bool:
        return self._get_bool('storage.encrypt', True)

    def get_device_info(self) -> Dict[str, str]:
        """Device description sent with login requests."""
        return {
            'platform': str(self.get_config('device.platform', 'python')),
            'version': str(self.get_config('app.version', '2.1.0')),
            'model': str(self.get_config('device.model', 'unknown')),
        }

    def get_log_level(self) -> str:
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()
