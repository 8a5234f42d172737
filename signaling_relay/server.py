"""
Signaling Relay - WebSocket server (websockets >= 14)
=====================================================
One coordinator and any number of participants connect to the same port;
the request path decides which pool a connection joins.

  ws://host:port/<coordinator_path>  -> RelaySession.serve_coordinator
  ws://host:port/<participant_path>  -> RelaySession.serve_participant
  GET /                              -> 200 OK (health check)
  anything else                      -> 404

Paths are matched exactly, so routing does not survive a reverse proxy
that rewrites or strips the path prefix.
"""

import argparse
import asyncio
import http
import logging
import signal
import sys

import websockets

from signaling_relay.config import ServerConfig, ConfigError, load_config
from signaling_relay.session import RelaySession

logger = logging.getLogger(__name__)


class RelayServer:
    """Routes upgrade requests by path to a RelaySession."""

    def __init__(self, session: RelaySession, config: ServerConfig):
        self.session = session
        self.config = config

    def urls(self, host=None, port=None) -> tuple:
        host = host or self.config.HOST
        port = self.config.PORT if port is None else port
        return (
            f"ws://{host}:{port}{self.config.coordinator_route}",
            f"ws://{host}:{port}{self.config.participant_route}",
        )

    async def process_request(self, connection, request):
        """
        Accept the two relay paths, answer health checks (HTTP GET/HEAD /)
        with 200 OK and reject everything else before the handshake.
        """
        if request.path in (self.config.coordinator_route, self.config.participant_route):
            return None
        if request.path == "/" and request.headers.get("Upgrade", "").lower() != "websocket":
            return connection.respond(http.HTTPStatus.OK, "OK\n")
        logger.info(f"Rejected request for unknown path: {request.path}")
        return connection.respond(http.HTTPStatus.NOT_FOUND, "Not Found\n")

    async def handler(self, ws):
        path = ws.request.path
        if path == self.config.coordinator_route:
            await self.session.serve_coordinator(ws)
        elif path == self.config.participant_route:
            await self.session.serve_participant(ws)

    def serve(self, host=None, port=None):
        """Return the websockets server; use it as an async context manager."""
        return websockets.serve(
            self.handler,
            host or self.config.HOST,
            self.config.PORT if port is None else port,
            process_request=self.process_request,
            ping_interval=self.config.PING_INTERVAL,
            ping_timeout=self.config.PING_TIMEOUT,
            max_size=self.config.MAX_SIZE,
        )


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="signaling-relay",
        description="Relay signaling messages between one coordinator and many participants.",
    )
    parser.add_argument("--config", help="YAML config file (default: ./config.yml if present)")
    parser.add_argument("--host", help="listen address, overrides the config file")
    parser.add_argument("--port", type=int, help="listen port, overrides the config file")
    return parser.parse_args(argv)


def setup_logging(config: ServerConfig) -> None:
    logging.basicConfig(
        level=config.LOG_LEVEL.upper(),
        format=config.LOG_FORMAT,
    )
    # Port scanners and health probes that drop mid-handshake make
    # websockets.server log "opening handshake failed" at ERROR.
    logging.getLogger("websockets.server").setLevel(logging.CRITICAL)


SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_stop_handler(loop, stop_event: asyncio.Event) -> None:
    """Set `stop_event` on SIGINT/SIGTERM."""
    def on_signal(*_):
        logger.info("Shutdown signal received. Closing server...")
        stop_event.set()

    try:
        for sig in SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, on_signal)
    except NotImplementedError:
        # Proactor loop on Windows
        for sig in SHUTDOWN_SIGNALS:
            signal.signal(sig, lambda s, f: loop.call_soon_threadsafe(on_signal))


async def run(config: ServerConfig) -> None:
    session = RelaySession(config.ICE_SERVER_URL)
    relay = RelayServer(session, config)

    stop_event = asyncio.Event()
    install_stop_handler(asyncio.get_running_loop(), stop_event)

    async with relay.serve():
        coordinator_url, participant_url = relay.urls()
        logger.info(f"Coordinator: {coordinator_url}")
        logger.info(f"Participant: {participant_url}")
        await stop_event.wait()

    session.close()
    await session.flush()

    logger.info("Server completely shut down.")


def main(argv=None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(args.config, overrides={"host": args.host, "port": args.port})
    except ConfigError as e:
        logging.basicConfig(format=ServerConfig.LOG_FORMAT)
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(config)
    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
