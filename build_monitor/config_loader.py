#!/usr/bin/env python3
"""
Configuration Loader Module for GitLab Build Monitor

Handles loading configuration from config.json and environment variables,
logging setup, and the fail-fast validation gate run before polling starts.

This module uses only Python standard library (no pip dependencies).
"""

import json
import logging
import os

from build_monitor.errors import ConfigurationError
from build_monitor.gitlab_client import USE_COOKIE_TOKEN, infer_ambient_host

logger = logging.getLogger(__name__)

# Compute project root directory (parent of build_monitor/)
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

# Valid log level names (case-insensitive)
VALID_LOG_LEVELS = ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL')

DEFAULT_POLL_INTERVAL_SEC = 60
DEFAULT_PORT = 8080
DEFAULT_MAX_RETRIES = 3

# config.json key -> environment variable for the raw string settings
STRING_SETTINGS = {
    'gitlab': 'GITLAB_HOST',
    'token': 'GITLAB_TOKEN',
    'projects': 'GITLAB_PROJECTS',
    'groups': 'GITLAB_GROUPS',
    'blacklist': 'GITLAB_BLACKLIST',
    'ref': 'GITLAB_REF',
}


def get_log_level():
    """Get log level from environment variable LOG_LEVEL

    Returns:
        int: Logging level constant (e.g., logging.INFO)

    Environment Variables:
        LOG_LEVEL: One of DEBUG, INFO, WARNING, ERROR, CRITICAL (case-insensitive)
                   Defaults to INFO if not set or invalid
    """
    level_str = os.environ.get('LOG_LEVEL', 'INFO').upper()
    if level_str not in VALID_LOG_LEVELS:
        return logging.INFO
    return getattr(logging, level_str)


def configure_logging():
    """Configure logging with level from environment

    Returns:
        str: The configured log level name (e.g., 'INFO')
    """
    level = get_log_level()
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )
    return logging.getLevelName(level)


def parse_int_config(value, default, name):
    """Parse integer configuration value with error handling

    Args:
        value: Value to parse (string, int, or None)
        default: Default value if parsing fails
        name: Name of the config option for error messages

    Returns:
        int: Parsed integer value or default
    """
    try:
        return int(value)
    except (ValueError, TypeError):
        logger.warning(f"Invalid {name} value: {value}. Using default: {default}")
        return default


def parse_bool_config(value, default, name):
    """Parse boolean configuration value with error handling"""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in ['true', '1', 'yes']
    logger.warning(f"Invalid {name} value: {value}. Using default: {default}")
    return default


def parse_csv_list(value):
    """Parse comma-separated list from environment variable

    Args:
        value: Comma-separated string (e.g., "group1,group2,group3")

    Returns:
        list: List of stripped, non-empty strings
    """
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _as_raw_string(value):
    """config.json may hold a list where the environment holds a CSV string"""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return ','.join(str(item) for item in value)
    return str(value)


def _read_config_file(config_file):
    if not os.path.exists(config_file):
        return {}, "environment variables"
    try:
        with open(config_file, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Failed to load {config_file}: {e}. Falling back to environment variables.")
        return {}, "environment variables"
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {config_file}: top-level value must be an object")
        return {}, "environment variables"
    logger.info(f"Configuration loaded from {config_file}")
    return data, "config.json"


def load_config(config_file=None, environ=None):
    """Load configuration from config.json and environment variables

    Configuration is loaded with the following priority:
    1. Environment variables (highest priority)
    2. config.json (if exists)
    3. Built-in defaults (lowest priority)

    When the token is 'use_cookie' (ambient session mode) the GitLab host
    is inferred from the execution context instead of the configuration.

    Args:
        config_file: Path to config.json (defaults to PROJECT_ROOT/config.json)
        environ: Environment mapping (defaults to os.environ)

    Returns:
        dict: Configuration dictionary with all settings
    """
    environ = os.environ if environ is None else environ
    config_file = config_file or os.path.join(PROJECT_ROOT, 'config.json')
    file_config, config_source = _read_config_file(config_file)

    config = {}

    # Log level: env var takes precedence over config.json
    log_level = str(environ.get('LOG_LEVEL', file_config.get('log_level', 'INFO'))).upper()
    if log_level not in VALID_LOG_LEVELS:
        logger.warning(f"Invalid LOG_LEVEL '{log_level}'. Using default: INFO")
        log_level = 'INFO'
    config['log_level'] = log_level
    logging.getLogger().setLevel(getattr(logging, log_level))

    for key, env_name in STRING_SETTINGS.items():
        if env_name in environ:
            config[key] = environ[env_name].strip()
        else:
            config[key] = _as_raw_string(file_config.get(key))

    config['groups'] = parse_csv_list(config['groups'])
    config['blacklist'] = parse_csv_list(config['blacklist'])
    config['ref'] = config['ref'] or None

    config['poll_interval_sec'] = parse_int_config(
        environ.get('POLL_INTERVAL', file_config.get('poll_interval_sec', DEFAULT_POLL_INTERVAL_SEC)),
        DEFAULT_POLL_INTERVAL_SEC, 'POLL_INTERVAL')
    config['port'] = parse_int_config(
        environ.get('PORT', file_config.get('port', DEFAULT_PORT)), DEFAULT_PORT, 'PORT')
    config['max_retries'] = parse_int_config(
        environ.get('MAX_RETRIES', file_config.get('max_retries', DEFAULT_MAX_RETRIES)),
        DEFAULT_MAX_RETRIES, 'MAX_RETRIES')
    config['insecure_skip_verify'] = parse_bool_config(
        environ.get('INSECURE_SKIP_VERIFY', file_config.get('insecure_skip_verify')),
        False, 'INSECURE_SKIP_VERIFY')
    config['ca_bundle_path'] = environ.get('CA_BUNDLE_PATH', file_config.get('ca_bundle_path'))

    config['use_cookie'] = config['token'] == USE_COOKIE_TOKEN
    if config['use_cookie']:
        config['gitlab'] = infer_ambient_host(environ)

    # Log configuration (without secrets)
    logger.info(f"Configuration loaded from: {config_source}")
    logger.info(f"  Log level: {config['log_level']}")
    logger.info(f"  GitLab host: {config['gitlab'] or 'NOT SET'}{' (inferred, ambient session)' if config['use_cookie'] else ''}")
    logger.info(f"  Poll interval: {config['poll_interval_sec']}s")
    logger.info(f"  Port: {config['port']}")
    logger.info(f"  Projects: {config['projects'] or 'None'}")
    logger.info(f"  Groups: {config['groups'] if config['groups'] else 'None'}")
    logger.info(f"  Blacklist: {config['blacklist'] if config['blacklist'] else 'None'}")
    logger.info(f"  Branch override: {config['ref'] or 'None (project default branch)'}")
    logger.info(f"  Insecure skip verify: {config['insecure_skip_verify']}")
    if config['use_cookie']:
        logger.info("  API token: ambient session")
    else:
        logger.info(f"  API token: {'***' if config['token'] else 'NOT SET'}")

    return config


def validate_config(config):
    """Validate configuration and fail fast if polling cannot start

    Validates:
    - at least one project or group is configured
    - a token is present unless ambient session mode is selected
    - a GitLab host is known (configured, or inferred in ambient mode)
    - poll_interval_sec is a positive integer

    Raises:
        ConfigurationError: Describing the first invalid setting
    """
    projects = (config.get('projects') or '').strip()
    if not projects and not config.get('groups'):
        logger.error("Configuration error: no projects or groups configured")
        logger.error("  Fix: Set GITLAB_PROJECTS and/or GITLAB_GROUPS, or 'projects'/'groups' in config.json")
        raise ConfigurationError("You need to set projects or groups")

    if not config.get('token'):
        logger.error("Configuration error: 'token' is required unless ambient session mode ('use_cookie') is selected")
        logger.error("  Fix: Set GITLAB_TOKEN environment variable or add 'token' to config.json")
        raise ConfigurationError("Wrong format: a GitLab token is required")

    if not config.get('gitlab'):
        logger.error("Configuration error: GitLab host is not set")
        logger.error("  Fix: Set GITLAB_HOST environment variable or add 'gitlab' to config.json")
        raise ConfigurationError("Wrong format: a GitLab host is required")

    poll_interval = config.get('poll_interval_sec')
    if not isinstance(poll_interval, int) or poll_interval <= 0:
        logger.error(f"Configuration error: 'poll_interval_sec' must be a positive integer, got: {poll_interval}")
        raise ConfigurationError(f"poll_interval_sec must be a positive integer, got: {poll_interval}")

    logger.info("Configuration validation passed")
