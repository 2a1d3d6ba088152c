"""
Configuration loading and management for LDAP Reconciler.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults. Besides the LDAP connection settings, the
configuration declares the directory objects to maintain.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from ldap_reconciler.logging_setup import security_logger

logger = logging.getLogger(__name__)

OBJECT_STATES = ('present', 'absent')


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings
    ENV_OVERRIDES = {
        'ldap.server_url': 'LDAP_SERVER_URL',
        'ldap.bind_dn': 'LDAP_BIND_USER',
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
    }

    BOOLEAN_ENV_OVERRIDES = {
        'ldap.start_tls': 'LDAP_START_TLS',
        'ldap.use_ssl': 'LDAP_TLS',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        security_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for connection settings."""
        if self.config.get('ldap') is None:
            self.config['ldap'] = {}

        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

        for config_key, env_var in self.BOOLEAN_ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, _parse_bool(env_value))
                logger.debug(f"Applied environment override for {config_key}")

        tls_insecure = os.getenv('LDAP_TLS_INSECURE')
        if tls_insecure:
            self._set_nested_value(self.config, 'ldap.verify_ssl', not _parse_bool(tls_insecure))

        # LDAP_HOST/LDAP_PORT only apply when no URL is configured
        ldap_config = self.config['ldap']
        host = os.getenv('LDAP_HOST')
        if host and isinstance(ldap_config, dict) and not ldap_config.get('server_url'):
            port = os.getenv('LDAP_PORT', '389')
            scheme = 'ldaps' if ldap_config.get('use_ssl') else 'ldap'
            ldap_config['server_url'] = f"{scheme}://{host}:{port}"
            logger.debug("Composed ldap.server_url from LDAP_HOST and LDAP_PORT")

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

        ldap_config = self.config.get('ldap', {})
        if not isinstance(ldap_config, dict):
            errors.append("ldap must be a mapping")
            ldap_config = {}
        for field in ['server_url', 'bind_dn', 'bind_password']:
            if not ldap_config.get(field):
                errors.append(f"Missing required LDAP field: {field}")

        invalid_values = self.config.get('invalid_attribute_values', [])
        if not isinstance(invalid_values, list) or not all(isinstance(v, str) for v in invalid_values):
            errors.append("invalid_attribute_values must be a list of strings")

        objects = self.config.get('objects') or []
        if not isinstance(objects, list):
            errors.append("objects must be a list")
            objects = []

        for i, obj in enumerate(objects):
            prefix = f"objects[{i}]"
            if not isinstance(obj, dict):
                errors.append(f"{prefix} must be a mapping")
                continue
            if not obj.get('dn'):
                errors.append(f"Missing required field {prefix}.dn")
            state = obj.get('state', 'present')
            if state not in OBJECT_STATES:
                errors.append(f"Invalid state for {prefix}: {state!r} (expected one of {', '.join(OBJECT_STATES)})")
            attributes = obj.get('attributes', [])
            if not isinstance(attributes, list):
                errors.append(f"{prefix}.attributes must be a list of single-key mappings")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        ldap_defaults = {
            'start_tls': False,
            'verify_ssl': True,
            'connection_timeout': 10,
            'receive_timeout': 10,
        }
        ldap_config = self.config.setdefault('ldap', {})
        for key, value in ldap_defaults.items():
            ldap_config.setdefault(key, value)

        logging_defaults = {
            'level': 'INFO',
            'log_dir': 'logs',
            'rotation': 'daily',
            'retention_days': 7,
            'console_output': True,
            'console_level': 'WARNING'
        }
        logging_config = self.config['logging'] = self.config.get('logging') or {}
        for key, value in logging_defaults.items():
            logging_config.setdefault(key, value)

        error_defaults = {
            'max_retries': 3,
            'retry_wait_seconds': 5,
        }
        error_config = self.config['error_handling'] = self.config.get('error_handling') or {}
        for key, value in error_defaults.items():
            error_config.setdefault(key, value)

        # the client reads its retry settings from its own section
        ldap_config.setdefault('error_handling', error_config)

        self.config.setdefault('invalid_attribute_values', [])
        self.config.setdefault('require_cn', True)
        self.config['objects'] = self.config.get('objects') or []
        for obj in self.config['objects']:
            obj.setdefault('state', 'present')


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
