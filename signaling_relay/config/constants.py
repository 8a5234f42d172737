"""
Signaling Relay - Constants and server configuration.
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class ServerConfig:
    """Listening, routing and transport settings."""
    HOST: str = os.environ.get("HOST", "0.0.0.0")
    PORT: int = int(os.environ.get("PORT", "8765"))
    COORDINATOR_PATH: str = "server"
    PARTICIPANT_PATH: str = "client"
    ICE_SERVER_URL: str = os.environ.get("ICE_SERVER_URL", "")
    PING_INTERVAL: float = 20        # keepalive ping every 20 s
    PING_TIMEOUT: float = 20         # close if no pong within 20 s
    MAX_SIZE: int = 1024 * 1024      # 1 MB, SDP/ICE payloads are small
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

    @property
    def coordinator_route(self) -> str:
        return "/" + self.COORDINATOR_PATH.lstrip("/")

    @property
    def participant_route(self) -> str:
        return "/" + self.PARTICIPANT_PATH.lstrip("/")


class MessageTypes:
    """Values of the `type` field in hub-originated messages."""
    HELLO: str = "hello"
    PARTICIPANT_CONNECTED: str = "participantConnected"
    ERROR: str = "error"


# Routing field carried by every relayed message
NODE_ID_FIELD: str = "nodeID"
ICE_SERVER_URL_FIELD: str = "iceServerUrl"

# The coordinator always has node ID 0; participants start at 1
COORDINATOR_NODE_ID: int = 0
