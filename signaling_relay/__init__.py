"""
Signaling Relay - hub for WebRTC-style connection setup.
"""

from signaling_relay.session import RelaySession
from signaling_relay.server import RelayServer

__all__ = ["RelaySession", "RelayServer"]
__version__ = "1.0.0"
