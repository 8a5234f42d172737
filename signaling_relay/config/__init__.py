"""
Signaling Relay - Configuration and constants.
"""

from signaling_relay.config.constants import (
    ServerConfig,
    MessageTypes,
    NODE_ID_FIELD,
    ICE_SERVER_URL_FIELD,
    COORDINATOR_NODE_ID,
)
from signaling_relay.config.loader import (
    ConfigError,
    load_config,
    DEFAULT_CONFIG_PATH,
)

__all__ = [
    "ServerConfig",
    "MessageTypes",
    "NODE_ID_FIELD",
    "ICE_SERVER_URL_FIELD",
    "COORDINATOR_NODE_ID",
    "ConfigError",
    "load_config",
    "DEFAULT_CONFIG_PATH",
]
