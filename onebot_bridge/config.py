"""
Runtime configuration for the bridge.

Configuration is a nested dictionary. DEFAULT_CONFIG holds every setting the
bridge reads; ConfigLoader overlays a JSON file and a handful of environment
variables on top of a copy of it.

Example bridge_config.json:
    {
        "GATEWAY": {"ws_url": "ws://127.0.0.1:6700", "access_token": "secret"},
        "DISPATCH": {"max_workers": 16}
    }
"""

import copy
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

from onebot_bridge.errors import ConfigError

# ============================================================================
# DEFAULTS
# ============================================================================

DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    'GATEWAY': {
        'ws_url': 'ws://127.0.0.1:6700',     # Stream base, /api and /event are appended
        'http_url': 'http://127.0.0.1:5700', # Request channel base for status queries
        'access_token': '',                  # Sent as "<auth_scheme> <token>"
        'auth_scheme': 'Token',
        'reconnect_interval_seconds': 5,     # Delay between stream redials
        'connect_timeout_seconds': 10        # Startup wait before giving up
    },
    'WEBHOOK_LISTEN': {
        'enabled': False,                    # Reverse-HTTP event ingress
        'host': '0.0.0.0',
        'port': 8080,
        'path': '/'
    },
    'PATHS': {
        'plugins_dir': './plugins'           # Plugin discovery directory
    },
    'HTTP': {
        'max_retries': 3,                    # Retry attempts for timeouts and 5xx
        'timeout_seconds': 10,               # Per attempt
        'status_check_timeout': 5            # Per attempt for get_status
    },
    'DISPATCH': {
        'max_workers': 32                    # Upper bound on concurrently running handlers
    },
    'ECHO': {
        'timeout_seconds': 30,               # Unanswered commands are evicted after this
        'sweep_interval_seconds': 30
    },
    'LOGGING': {
        'level': 'INFO'
    }
}

# Environment variable -> (section, key)
ENV_OVERRIDES_ = {
    'ONEBOT_WS_URL': ('GATEWAY', 'ws_url'),
    'ONEBOT_HTTP_URL': ('GATEWAY', 'http_url'),
    'ONEBOT_ACCESS_TOKEN': ('GATEWAY', 'access_token'),
    'ONEBOT_LOG_LEVEL': ('LOGGING', 'level'),
}

logger = logging.getLogger(__name__)

# ============================================================================
# LOADING
# ============================================================================

def ConfigMerger(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge overlay into base in place and return base."""
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            ConfigMerger(base[key], value)
        else:
            base[key] = value
    return base


def ConfigLoader(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Dict[str, Dict[str, Any]]:
    """
    Build the effective configuration.

    Args:
        path: Optional JSON file whose sections override the defaults.
              Sections and keys absent from the file keep their defaults.
        environ: Environment mapping, os.environ when omitted.

    Returns:
        A fresh nested dict; DEFAULT_CONFIG itself is never modified.

    Raises:
        ConfigError: the file cannot be read, is not valid JSON, its top level
                     is not an object, or the log level is unknown.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if path is not None:
        try:
            with open(path, 'r', encoding='utf-8') as configFile:
                fileConfig = json.load(configFile)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exception:
            raise ConfigError(f"Failed to load configuration file '{path}': {exception}") from exception

        if not isinstance(fileConfig, dict):
            raise ConfigError(f"Configuration file '{path}' must contain a JSON object")

        ConfigMerger(config, fileConfig)
        logger.info(f"Loaded configuration from {path}")

    environ = os.environ if environ is None else environ
    for variable, (section, key) in ENV_OVERRIDES_.items():
        if environ.get(variable):
            config.setdefault(section, {})[key] = environ[variable]

    loggingConfig = config.get('LOGGING')
    levelName = loggingConfig.get('level') if isinstance(loggingConfig, dict) else None
    if not isinstance(levelName, str) or levelName.upper() not in logging.getLevelNamesMapping():
        raise ConfigError(f"Unknown log level {levelName!r}")
    config['LOGGING']['level'] = levelName.upper()

    return config
