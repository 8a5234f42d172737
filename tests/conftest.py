import asyncio
import json

import pytest
import websockets

from signaling_relay.config import ServerConfig
from signaling_relay.config.loader import build_config
from signaling_relay.session import RelaySession
from signaling_relay.server import RelayServer

ICE_URL = "stun:stun.example.org:3478"


class FakeConnection:
    """In-memory stand-in for a websockets connection."""

    def __init__(self, inbound=()):
        self.inbound = list(inbound)
        self.sent = []
        self.closed = False
        self._writable = asyncio.Event()
        self._writable.set()

    def block(self):
        """Make send() hang, like a peer that stopped reading."""
        self._writable.clear()

    def unblock(self):
        self._writable.set()

    async def send(self, data):
        await self._writable.wait()
        if self.closed:
            raise websockets.exceptions.ConnectionClosedOK(None, None)
        self.sent.append(data)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for raw in self.inbound:
            yield raw

    @property
    def messages(self):
        return [json.loads(raw) for raw in self.sent]


async def wait_until(predicate, timeout=2.0):
    """Poll `predicate` until it is true; server-side cleanup runs asynchronously."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.fixture
async def session():
    session = RelaySession(ICE_URL)
    yield session
    session.close()
    await session.flush()


@pytest.fixture
def config() -> ServerConfig:
    return build_config({
        "host": "127.0.0.1",
        "port": 0,
        "coordinator_path": "server",
        "participant_path": "client",
        "ice_server_url": ICE_URL,
    })


@pytest.fixture
async def relay(session, config):
    """A running RelayServer on an ephemeral port; yields (session, base_url)."""
    server = RelayServer(session, config)
    async with server.serve(host="127.0.0.1", port=0) as ws_server:
        port = next(iter(ws_server.sockets)).getsockname()[1]
        yield session, f"ws://127.0.0.1:{port}"
