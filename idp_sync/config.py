"""
Configuration loading and management for IdP Octelium Sync.

This module merges settings from an optional YAML file, environment variables
and command line options, with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of sync settings."""

    # Environment variables consulted when neither CLI nor file provide a value
    ENV_OVERRIDES = {
        'keycloak.url': 'KEYCLOAK_URL',
        'keycloak.realm': 'KEYCLOAK_REALM',
        'keycloak.client_id': 'KEYCLOAK_CLIENT_ID',
        'keycloak.client_secret': 'KEYCLOAK_CLIENT_SECRET',
        'exclude_users': 'IDP_SYNC_EXCLUDE_USERS',
    }

    # Command line option name -> settings key path
    CLI_OPTIONS = {
        'provider': 'provider',
        'mapping': 'mapping',
        'output_users': 'output_users',
        'output_groups': 'output_groups',
        'keycloak_url': 'keycloak.url',
        'keycloak_realm': 'keycloak.realm',
        'keycloak_client_id': 'keycloak.client_id',
        'keycloak_client_secret': 'keycloak.client_secret',
        'exclude_users': 'exclude_users',
        'dry_run': 'dry_run',
        'log_level': 'logging.level',
        'log_dir': 'logging.log_dir',
    }

    def __init__(self, cli_options: Optional[Dict[str, Any]] = None,
                 config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            cli_options: Options parsed from the command line; None values are ignored
            config_path: Optional path to a YAML settings file
        """
        self.cli_options = cli_options or {}
        self.config_path = config_path
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Build the settings from file, environment and command line.

        Returns:
            Validated settings dictionary with defaults applied

        Raises:
            ConfigurationError: If the settings file is unreadable or validation fails
        """
        self.config = self._load_file() if self.config_path else {}

        self._apply_env_overrides()
        self._apply_cli_options()

        self._validate()
        self._apply_defaults()

        if self.config_path:
            logger.info(f"Configuration loaded successfully from {self.config_path}")
        else:
            logger.debug("Configuration loaded from command line and environment")
        return self.config

    def _load_file(self) -> Dict[str, Any]:
        """Read the YAML settings file."""
        try:
            with open(self.config_path, 'r') as f:
                data = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")
        return data

    def _apply_env_overrides(self):
        """Fill unset fields from environment variables."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _apply_cli_options(self):
        """Apply command line options, which take precedence over everything else."""
        for option, config_key in self.CLI_OPTIONS.items():
            value = self.cli_options.get(option)
            if value is not None:
                self._set_nested_value(self.config, config_key, value)

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        for field in ['provider', 'mapping', 'output_users', 'output_groups']:
            if not self.config.get(field):
                errors.append(f"Missing required setting: --{field.replace('_', '-')}")

        if self.config.get('provider') == 'keycloak':
            keycloak_config = self.config.get('keycloak') or {}
            for field in ['url', 'realm', 'client_id']:
                if not keycloak_config.get(field):
                    errors.append(f"--keycloak-{field.replace('_', '-')} is required")
            if not keycloak_config.get('client_secret'):
                errors.append("--keycloak-client-secret is required (or set KEYCLOAK_CLIENT_SECRET env)")

            page_size = keycloak_config.get('page_size')
            if page_size is not None and (isinstance(page_size, bool) or not isinstance(page_size, int)
                                          or page_size < 1):
                errors.append(f"keycloak.page_size must be a positive integer, got {page_size!r}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        self.config.setdefault('exclude_users', '')
        self.config.setdefault('dry_run', False)

        logging_defaults = {
            'level': 'INFO',
            'console_output': True,
            'console_level': 'INFO',
            'log_dir': None,
            'rotation': 'daily',
            'retention_days': 7
        }
        logging_config = self.config.setdefault('logging', {})
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        if self.config['provider'] == 'keycloak':
            keycloak_defaults = {
                'verify_ssl': True,
                'page_size': 100,
                'timeout': 30
            }
            keycloak_config = self.config['keycloak']
            for key, value in keycloak_defaults.items():
                keycloak_config.setdefault(key, value)


def load_config(cli_options: Optional[Dict[str, Any]] = None,
                config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        cli_options: Options parsed from the command line
        config_path: Path to an optional settings file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(cli_options, config_path)
    return loader.load()
