"""
YAML configuration loading.

Priority (highest to lowest):
    1. Explicit overrides (command-line flags)
    2. YAML config file
    3. ServerConfig defaults (environment variables where supported)
"""

import dataclasses
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from signaling_relay.config.constants import ServerConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yml"

# YAML key -> ServerConfig field. camelCase keys are the legacy spelling.
KEY_MAP: Dict[str, str] = {
    "host": "HOST",
    "port": "PORT",
    "coordinator_path": "COORDINATOR_PATH",
    "participant_path": "PARTICIPANT_PATH",
    "ice_server_url": "ICE_SERVER_URL",
    "ping_interval": "PING_INTERVAL",
    "ping_timeout": "PING_TIMEOUT",
    "max_size": "MAX_SIZE",
    "log_level": "LOG_LEVEL",
    "pathForServer": "COORDINATOR_PATH",
    "pathForClient": "PARTICIPANT_PATH",
    "iceServerUrl": "ICE_SERVER_URL",
}

# websockets accepts None to disable these
NULLABLE_FIELDS = frozenset({"PING_INTERVAL", "PING_TIMEOUT", "MAX_SIZE"})


class ConfigError(Exception):
    """Raised when the configuration is missing or malformed."""


def _check_type(field: dataclasses.Field, value: Any) -> Any:
    name = field.name
    if value is None and name in NULLABLE_FIELDS:
        return None
    # bool is an int subclass; a YAML `yes` is never a valid port
    if isinstance(value, bool):
        raise ConfigError(f"{name}: expected {field.type.__name__}, got bool")
    if field.type is float and isinstance(value, (int, float)):
        return float(value)
    if not isinstance(value, field.type):
        raise ConfigError(
            f"{name}: expected {field.type.__name__}, got {type(value).__name__}"
        )
    return value


def _validate(config: ServerConfig) -> ServerConfig:
    if not 0 <= config.PORT <= 65535:
        raise ConfigError(f"PORT out of range: {config.PORT}")
    if not config.COORDINATOR_PATH.strip("/"):
        raise ConfigError("coordinator path must not be empty")
    if not config.PARTICIPANT_PATH.strip("/"):
        raise ConfigError("participant path must not be empty")
    if config.coordinator_route == config.participant_route:
        raise ConfigError(
            f"coordinator and participant paths are identical: {config.coordinator_route}"
        )
    if not config.ICE_SERVER_URL:
        raise ConfigError("ice_server_url is required")
    if not isinstance(logging.getLevelName(config.LOG_LEVEL.upper()), int):
        raise ConfigError(f"unknown log level: {config.LOG_LEVEL}")
    return config


def read_yaml(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a YAML mapping from `path`."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read config file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def build_config(values: Dict[str, Any], base: Optional[ServerConfig] = None) -> ServerConfig:
    """
    Apply YAML-style `values` on top of `base` and validate the result.

    :param values: mapping using the keys in KEY_MAP
    :param base:   starting point, ServerConfig() if omitted
    """
    fields = {f.name: f for f in dataclasses.fields(ServerConfig)}
    changes: Dict[str, Any] = {}
    for key, value in values.items():
        field_name = KEY_MAP.get(key)
        if field_name is None:
            raise ConfigError(f"unknown config key: {key}")
        changes[field_name] = _check_type(fields[field_name], value)

    return _validate(dataclasses.replace(base or ServerConfig(), **changes))


def load_config(
    path: Optional[Union[str, Path]] = None,
    overrides: Optional[Dict[str, Any]] = None,
) -> ServerConfig:
    """
    Load the server configuration.

    When `path` is None the default config.yml is used if it exists,
    otherwise ServerConfig defaults apply. An explicit `path` must exist.
    `overrides` uses the same keys as the YAML file; None values are skipped.
    """
    values: Dict[str, Any] = {}
    if path is not None:
        values.update(read_yaml(path))
        logger.info(f"Loaded configuration from {path}")
    elif Path(DEFAULT_CONFIG_PATH).exists():
        values.update(read_yaml(DEFAULT_CONFIG_PATH))
        logger.info(f"Loaded configuration from {DEFAULT_CONFIG_PATH}")
    else:
        logger.warning(f"Config file not found: {DEFAULT_CONFIG_PATH}. Using defaults.")

    for key, value in (overrides or {}).items():
        if value is not None:
            values[key] = value

    return build_config(values)
