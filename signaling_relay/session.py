"""
Relay Session
=============
Owns the coordinator slot, the participant registry and the node ID
counter, and relays addressed messages between them.

Message flow:
  coordinator -> hub: {"nodeID": 7, ...payload}  => participant 7 gets {...payload}
  participant 3 -> hub: {...payload}              => coordinator gets {"nodeID": 3, ...payload}

Every state change (slot assignment, registry insert/remove, counter
increment) happens without an `await` in between, so handlers running
on the same event loop never see a half-updated registry.

Messages to admitted connections go through a per-connection Outbox, so a
destination that stops reading never holds up the sender's read loop.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

import websockets

from signaling_relay.config import (
    MessageTypes,
    NODE_ID_FIELD,
    ICE_SERVER_URL_FIELD,
    COORDINATOR_NODE_ID,
)

logger = logging.getLogger(__name__)

# Longest prefix of a raw frame written to the log
PREVIEW_LENGTH = 100


def _preview(raw) -> str:
    return str(raw)[:PREVIEW_LENGTH]


def _parse_object(raw) -> Optional[Dict[str, Any]]:
    """Decode a JSON object from a text or binary frame, None if it is not one."""
    try:
        msg = json.loads(raw)
    except (ValueError, RecursionError):
        # JSONDecodeError and UnicodeDecodeError are ValueErrors;
        # deeply nested arrays exhaust the decoder's recursion limit
        return None
    if not isinstance(msg, dict):
        return None
    return msg


def _node_id(value) -> Optional[int]:
    """Integral JSON number -> node ID. 7.0 addresses participant 7, True does not."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


async def send_json(ws, data: dict) -> bool:
    """Send `data` as a JSON text frame. Returns False if the peer is gone."""
    try:
        await ws.send(json.dumps(data))
    except websockets.exceptions.ConnectionClosed as e:
        logger.info(f"Send skipped, connection already closed ({e})")
        return False
    return True


class Outbox:
    """Ordered, unbounded send queue with one writer task per connection."""

    _CLOSE = object()

    def __init__(self, ws, label: str):
        self.ws = ws
        self.label = label
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.task = asyncio.get_running_loop().create_task(self._run())

    def put(self, data: dict) -> None:
        if not self._closed:
            self._queue.put_nowait(data)

    def close(self) -> None:
        """Stop the writer once everything queued so far has been attempted."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(self._CLOSE)

    async def join(self) -> None:
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            data = await self._queue.get()
            try:
                if data is self._CLOSE:
                    return
                await send_json(self.ws, data)
            except Exception as e:
                logger.warning(f"Send to {self.label} failed: {e}")
            finally:
                self._queue.task_done()


class RelaySession:
    """One coordinator, many participants, relayed through the hub."""

    def __init__(self, ice_server_url: str):
        self.ice_server_url = ice_server_url
        self._coordinator: Optional[Outbox] = None
        self._participants: Dict[int, Outbox] = {}
        self._next_node_id = COORDINATOR_NODE_ID + 1
        # writers still running, including those of released connections
        self._outboxes: Set[Outbox] = set()

    @property
    def has_coordinator(self) -> bool:
        return self._coordinator is not None

    @property
    def participant_count(self) -> int:
        return len(self._participants)

    def _hello(self, node_id: int) -> dict:
        return {
            "type": MessageTypes.HELLO,
            NODE_ID_FIELD: node_id,
            ICE_SERVER_URL_FIELD: self.ice_server_url,
        }

    def _open_outbox(self, ws, label: str) -> Outbox:
        outbox = Outbox(ws, label)
        self._outboxes.add(outbox)
        outbox.task.add_done_callback(lambda _task: self._outboxes.discard(outbox))
        return outbox

    def close(self) -> None:
        """Stop every writer after its queue drains. Used at shutdown."""
        for outbox in list(self._outboxes):
            outbox.close()

    async def flush(self) -> None:
        """Wait until every queued message has been handed to its transport."""
        await asyncio.gather(*(outbox.join() for outbox in list(self._outboxes)))

    # ─── ADMISSION ─────────────────────────────────────────────────────────────

    async def admit_coordinator(self, ws) -> bool:
        """
        Attach `ws` as the coordinator and greet it with node ID 0.

        Only one coordinator may be attached; a second one receives an
        `error` and is otherwise left alone. Returns True on admission.
        """
        if self._coordinator is not None:
            logger.warning("Coordinator is already connected, rejecting")
            await send_json(ws, {
                "type": MessageTypes.ERROR,
                "message": "coordinator already connected",
            })
            return False

        self._coordinator = self._open_outbox(ws, "coordinator")
        logger.info("Coordinator connected")
        self._coordinator.put(self._hello(COORDINATOR_NODE_ID))
        return True

    def release_coordinator(self, ws) -> None:
        """Detach `ws` if it is the current coordinator. Participants stay registered."""
        if self._coordinator is not None and self._coordinator.ws is ws:
            self._coordinator.close()
            self._coordinator = None
            logger.info(
                f"Coordinator disconnected ({self.participant_count} participants remain)"
            )

    async def admit_participant(self, ws) -> Optional[int]:
        """
        Register `ws` under a fresh node ID, greet it and announce it to
        the coordinator. Returns the node ID, or None if there is no
        coordinator to talk to.
        """
        if self._coordinator is None:
            logger.warning("Coordinator is not ready, rejecting participant")
            await send_json(ws, {
                "type": MessageTypes.ERROR,
                "message": "coordinator not connected",
            })
            return None

        node_id = self._next_node_id
        self._next_node_id += 1
        outbox = self._open_outbox(ws, f"participant {node_id}")
        self._participants[node_id] = outbox
        logger.info(f"Participant {node_id} connected")

        outbox.put(self._hello(node_id))
        self._coordinator.put({
            "type": MessageTypes.PARTICIPANT_CONNECTED,
            NODE_ID_FIELD: node_id,
        })
        return node_id

    def release_participant(self, node_id: int) -> None:
        """Forget participant `node_id`. The coordinator is not notified."""
        outbox = self._participants.pop(node_id, None)
        if outbox is not None:
            outbox.close()
            logger.info(f"Participant {node_id} disconnected")

    # ─── RELAY ─────────────────────────────────────────────────────────────────

    async def relay_from_coordinator(self, raw) -> bool:
        """
        Queue a coordinator message for the participant named by its
        `nodeID`, with that field stripped. Malformed messages and unknown
        destinations are dropped silently. Returns True if queued.
        """
        logger.debug(f"From coordinator: {_preview(raw)}")
        msg = _parse_object(raw)
        if msg is None:
            logger.warning(f"Invalid message from coordinator. Preview: {_preview(raw)}")
            return False

        raw_node_id = msg.pop(NODE_ID_FIELD, None)
        node_id = _node_id(raw_node_id)
        if node_id is None:
            logger.warning(f"Message from coordinator has no usable {NODE_ID_FIELD}: {raw_node_id!r}")
            return False

        outbox = self._participants.get(node_id)
        if outbox is None:
            logger.info(f"Participant {node_id} not found")
            return False
        outbox.put(msg)
        return True

    async def relay_from_participant(self, node_id: int, raw) -> bool:
        """
        Queue a participant message for the coordinator, stamped with the
        sender's node ID. A `nodeID` supplied by the participant is never
        trusted. Returns True if queued.
        """
        logger.debug(f"From participant {node_id}: {_preview(raw)}")
        msg = _parse_object(raw)
        if msg is None:
            logger.warning(f"Invalid message from participant {node_id}. Preview: {_preview(raw)}")
            return False

        if NODE_ID_FIELD in msg:
            logger.warning(
                f"Message from participant {node_id} already has {NODE_ID_FIELD} "
                f"{msg[NODE_ID_FIELD]!r}. Rewriting to actual {NODE_ID_FIELD}."
            )
        msg[NODE_ID_FIELD] = node_id

        if self._coordinator is None:
            logger.info(f"No coordinator, dropping message from participant {node_id}")
            return False
        self._coordinator.put(msg)
        return True

    # ─── CONNECTION LIFECYCLE ──────────────────────────────────────────────────

    async def _ignore(self, ws, role: str) -> None:
        # Rejected connections stay open until the remote side closes them
        async for raw in ws:
            logger.debug(f"Ignoring message from rejected {role}: {_preview(raw)}")

    async def serve_coordinator(self, ws) -> None:
        """Drive a coordinator connection from admission until it closes."""
        try:
            if not await self.admit_coordinator(ws):
                await self._ignore(ws, "coordinator")
                return
            async for raw in ws:
                await self.relay_from_coordinator(raw)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Coordinator connection closed ({e})")
        except Exception as e:
            logger.warning(f"Coordinator handler error: {e!r}")
        finally:
            self.release_coordinator(ws)

    async def serve_participant(self, ws) -> None:
        """Drive a participant connection from admission until it closes."""
        node_id = None
        try:
            node_id = await self.admit_participant(ws)
            if node_id is None:
                await self._ignore(ws, "participant")
                return
            async for raw in ws:
                await self.relay_from_participant(node_id, raw)
        except websockets.exceptions.ConnectionClosed as e:
            logger.info(f"Participant connection closed: node={node_id} ({e})")
        except Exception as e:
            logger.warning(f"Participant handler error: node={node_id} ({e!r})")
        finally:
            if node_id is not None:
                self.release_participant(node_id)
