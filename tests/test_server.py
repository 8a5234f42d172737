import asyncio
import json
import signal

import pytest
import websockets

from signaling_relay.server import RelayServer, install_stop_handler, main, parse_args
from signaling_relay.session import RelaySession
from tests.conftest import ICE_URL, wait_until


async def recv_json(ws, timeout=2.0):
    return json.loads(await asyncio.wait_for(ws.recv(), timeout))


async def assert_silent(ws, timeout=0.2):
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(ws.recv(), timeout)


async def test_full_negotiation_round_trip(relay):
    session, base = relay
    async with websockets.connect(f"{base}/server") as coordinator:
        assert await recv_json(coordinator) == {
            "type": "hello", "nodeID": 0, "iceServerUrl": ICE_URL,
        }

        async with websockets.connect(f"{base}/client") as participant:
            assert await recv_json(participant) == {
                "type": "hello", "nodeID": 1, "iceServerUrl": ICE_URL,
            }
            assert await recv_json(coordinator) == {"type": "participantConnected", "nodeID": 1}

            await coordinator.send(json.dumps({"nodeID": 1, "type": "offer", "sdp": "v=0"}))
            assert await recv_json(participant) == {"type": "offer", "sdp": "v=0"}

            await participant.send(json.dumps({"nodeID": 99, "type": "answer", "sdp": "v=0"}))
            assert await recv_json(coordinator) == {"nodeID": 1, "type": "answer", "sdp": "v=0"}


async def test_second_coordinator_is_rejected(relay):
    session, base = relay
    async with websockets.connect(f"{base}/server") as first:
        await recv_json(first)
        async with websockets.connect(f"{base}/server") as second:
            reply = await recv_json(second)
            assert reply["type"] == "error"

            async with websockets.connect(f"{base}/client") as participant:
                await recv_json(participant)
                assert await recv_json(first) == {"type": "participantConnected", "nodeID": 1}
            await assert_silent(second)


async def test_participant_before_coordinator_is_rejected(relay):
    session, base = relay
    async with websockets.connect(f"{base}/client") as participant:
        reply = await recv_json(participant)
        assert reply["type"] == "error"
        await participant.send('{"x": 1}')
        await assert_silent(participant)
    assert session.participant_count == 0


async def test_message_to_departed_participant_is_dropped(relay):
    session, base = relay
    async with websockets.connect(f"{base}/server") as coordinator:
        await recv_json(coordinator)
        async with websockets.connect(f"{base}/client") as participant:
            await recv_json(participant)
            await recv_json(coordinator)
        await wait_until(lambda: session.participant_count == 0)

        await coordinator.send(json.dumps({"nodeID": 1, "type": "offer"}))
        await coordinator.send("not json")
        await assert_silent(coordinator)


async def test_coordinator_can_reconnect(relay):
    session, base = relay
    async with websockets.connect(f"{base}/server") as coordinator:
        await recv_json(coordinator)
        participant = await websockets.connect(f"{base}/client")
        await recv_json(participant)
        await recv_json(coordinator)
    await wait_until(lambda: not session.has_coordinator)

    try:
        # no coordinator: dropped without closing the participant
        await participant.send('{"candidate": "c"}')
        await assert_silent(participant)

        async with websockets.connect(f"{base}/server") as replacement:
            hello = await recv_json(replacement)
            assert hello["nodeID"] == 0

            await participant.send('{"candidate": "c"}')
            assert await recv_json(replacement) == {"candidate": "c", "nodeID": 1}
    finally:
        await participant.close()


async def test_deeply_nested_frames_keep_connections_attached(relay):
    session, base = relay
    nested = "[" * 100000
    async with websockets.connect(f"{base}/server") as coordinator:
        await recv_json(coordinator)
        async with websockets.connect(f"{base}/client") as participant:
            await recv_json(participant)
            await recv_json(coordinator)

            await coordinator.send(nested)
            await participant.send(nested)

            await coordinator.send(json.dumps({"nodeID": 1, "ok": True}))
            assert await recv_json(participant) == {"ok": True}
            await participant.send('{"ok": true}')
            assert await recv_json(coordinator) == {"ok": True, "nodeID": 1}
            assert session.has_coordinator
            assert session.participant_count == 1


async def test_unknown_path_is_refused(relay):
    session, base = relay
    with pytest.raises(websockets.exceptions.InvalidStatus) as exc_info:
        async with websockets.connect(f"{base}/elsewhere"):
            pass
    assert exc_info.value.response.status_code == 404
    assert session.participant_count == 0
    assert not session.has_coordinator


async def test_health_check(relay):
    session, base = relay
    port = int(base.rsplit(":", 1)[1])
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    await writer.drain()
    status_line = await asyncio.wait_for(reader.readline(), 2.0)
    writer.close()
    assert status_line.startswith(b"HTTP/1.1 200")


def test_urls_use_configured_paths(config):
    server = RelayServer(RelaySession(ICE_URL), config)
    assert server.urls(port=9000) == (
        "ws://127.0.0.1:9000/server",
        "ws://127.0.0.1:9000/client",
    )


def test_parse_args_overrides():
    args = parse_args(["--config", "relay.yml", "--port", "9001"])
    assert args.config == "relay.yml"
    assert args.port == 9001
    assert args.host is None


def test_main_exits_on_bad_config(tmp_path):
    assert main(["--config", str(tmp_path / "missing.yml")]) == 1


class LoopWithoutSignals:
    def __init__(self):
        self.callbacks = []

    def add_signal_handler(self, sig, callback):
        raise NotImplementedError

    def call_soon_threadsafe(self, callback):
        self.callbacks.append(callback)


def test_stop_handler_falls_back_to_signal_module(monkeypatch):
    installed = {}
    monkeypatch.setattr("signal.signal", lambda sig, handler: installed.setdefault(sig, handler))
    loop = LoopWithoutSignals()
    stop_event = asyncio.Event()

    install_stop_handler(loop, stop_event)

    assert set(installed) == {signal.SIGINT, signal.SIGTERM}
    installed[signal.SIGTERM](signal.SIGTERM, None)
    for callback in loop.callbacks:
        callback()
    assert stop_event.is_set()

