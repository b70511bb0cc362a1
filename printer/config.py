"""
Configuration loading for the print server.
"""

import copy
import json
import logging
import os

from .exceptions import InvalidConfigurationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = 'PRINT_SERVER_CONFIG'

DEFAULT_CONFIG = {
    'server': {
        'host': '0.0.0.0',
        'port': 3420,
        'debug': False,
    },
    'printer': {
        'device': '/dev/cu.PT-280',
        'bluetooth_address': '86-67-7a-6b-fb-e7',
        'bluetooth_pin': '0000',
        'bluetooth_backend': 'blueutil',
        'rfcomm_channel': 1,
        'baudrate': 9600,
    },
    'reset': {
        'unpair_delay': 1.0,
        'power_off_delay': 2.0,
        'power_on_delay': 3.0,
        'pair_delay': 1.0,
        'reconnect_delay': 1.0,
        'poll_interval': 1.0,
        'poll_attempts': 5,
        'reconnect_cycles': 3,
    },
    'worker': {
        'python': None,
        'startup_timeout': 20.0,
        'job_timeout': 10.0,
    },
    'keepalive': {
        'enabled': False,
        'interval': 30.0,
    },
    'templates': {
        'event_name': 'ClawCon 2026',
        'footer': ['Powered by Claude', '58mm of pure joy'],
        'width': 32,
    },
}


def _merge(base: dict, overrides: dict) -> dict:
    """Recursively merge overrides into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def build_config(overrides: dict = None) -> dict:
    """
    Build a configuration dictionary from the defaults.

    Args:
        overrides: Nested dictionary of values replacing the defaults

    Returns:
        Complete configuration dictionary
    """
    return _merge(DEFAULT_CONFIG, overrides or {})


def load_config(config_path: str = None) -> dict:
    """
    Load configuration from a JSON file, merged over the defaults.

    A missing file is not an error: the defaults are used. A file that
    exists but cannot be parsed is.

    Args:
        config_path: Path to configuration file (defaults to $PRINT_SERVER_CONFIG or config.json)

    Returns:
        Configuration dictionary

    Raises:
        InvalidConfigurationError: If config cannot be loaded
    """
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR, 'config.json')

    if not os.path.exists(config_path):
        logger.warning(f"[Config] {config_path} not found, using defaults")
        config = build_config()
    else:
        try:
            with open(config_path, 'r') as f:
                loaded = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"[Config] Failed to load configuration: {e}")
            raise InvalidConfigurationError(
                f"Failed to load configuration from {config_path}",
                context={'path': config_path, 'error': str(e)}
            )

        if not isinstance(loaded, dict):
            raise InvalidConfigurationError(
                f"Configuration in {config_path} must be a JSON object",
                context={'path': config_path, 'type': type(loaded).__name__}
            )

        logger.debug(f"[Config] Configuration loaded from {config_path}")
        config = build_config(loaded)

    port = os.environ.get('PORT')
    if port:
        try:
            config['server']['port'] = int(port)
        except ValueError:
            raise InvalidConfigurationError(
                "PORT must be an integer",
                context={'PORT': port}
            )

    return config
