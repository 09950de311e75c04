"""
Connection Session - Per-connection state machine on the primary side.

A session owns the input buffer of one accepted socket and turns the bytes
into events. It never touches the socket; the listener feeds it data and acts
on the returned events (send an ack, notify the application).

Stages:
    AWAITING_INIT_HEADER  -> 8-byte length of the init message
    AWAITING_INIT_BODY    -> init message, validated against our identifier
    AWAITING_DATA_HEADER  -> 8-byte length of the next message
    AWAITING_DATA_BODY    -> message payload, then back to AWAITING_DATA_HEADER

Each consumed header and body produces an Ack event. A failed handshake
raises HandshakeRejected and the listener drops the connection without a
reply.

See also:
    - listener.py: Owns the sockets and the session table
    - protocol.py: Frame and init message codecs
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from soloapp.ipc.protocol import (
    HEADER_SIZE,
    ConnectionKind,
    HandshakeRejected,
    decode_header,
    decode_init_message,
)

logger = logging.getLogger(__name__)

# Identifier plus fixed fields fit easily; anything larger is not a handshake
MAX_INIT_MESSAGE_SIZE = 4096


class Stage(Enum):
    AWAITING_INIT_HEADER = 0
    AWAITING_INIT_BODY = 1
    AWAITING_DATA_HEADER = 2
    AWAITING_DATA_BODY = 3


@dataclass(frozen=True)
class Ack:
    pass


@dataclass(frozen=True)
class InstanceStarted:
    instance_id: int


@dataclass(frozen=True)
class MessageReceived:
    instance_id: int
    payload: bytes


class ConnectionSession:
    """
    Staged handshake and framing parser for one connection.

    Attributes:
        stage: Parser that runs when more data arrives
        pending_length: Body length announced by the last header
        peer_instance_id: Instance id declared in the init message
    """

    def __init__(self, server_identity: str, secondary_notification: bool = False) -> None:
        self.server_identity = server_identity.encode("latin-1")
        self.secondary_notification = secondary_notification
        self.stage = Stage.AWAITING_INIT_HEADER
        self.pending_length = 0
        self.peer_instance_id: Optional[int] = None
        self._started_signalled = False
        self._buffer = bytearray()
        self._handlers = {
            Stage.AWAITING_INIT_HEADER: self._read_init_header,
            Stage.AWAITING_INIT_BODY: self._read_init_body,
            Stage.AWAITING_DATA_HEADER: self._read_data_header,
            Stage.AWAITING_DATA_BODY: self._read_data_body,
        }

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, data: bytes) -> List[object]:
        """
        Append received bytes and run every stage that now has enough input.

        Raises:
            HandshakeRejected: The init message is invalid
        """
        self._buffer.extend(data)
        return self.drain()

    def drain(self) -> List[object]:
        """Process complete frames already buffered (also used on peer close)."""
        events: List[object] = []
        while True:
            step = self._handlers[self.stage]()
            if step is None:
                return events
            events.extend(step)

    def _take(self, count: int) -> bytes:
        chunk = bytes(self._buffer[:count])
        del self._buffer[:count]
        return chunk

    def _read_header(self, next_stage: Stage):
        if len(self._buffer) < HEADER_SIZE:
            return None
        self.pending_length = decode_header(self._take(HEADER_SIZE))
        self.stage = next_stage
        return [Ack()]

    def _read_init_header(self):
        events = self._read_header(Stage.AWAITING_INIT_BODY)
        if events is not None and self.pending_length > MAX_INIT_MESSAGE_SIZE:
            raise HandshakeRejected(f"init message of {self.pending_length} bytes exceeds limit")
        return events

    def _read_data_header(self):
        return self._read_header(Stage.AWAITING_DATA_BODY)

    def _read_init_body(self):
        if len(self._buffer) < self.pending_length:
            return None

        message = decode_init_message(self._take(self.pending_length))
        if message.server_identity != self.server_identity:
            raise HandshakeRejected("init message targets a different identifier")

        self.peer_instance_id = message.instance_id
        self.stage = Stage.AWAITING_DATA_HEADER

        events: List[object] = []
        kind = message.connection_kind
        if not self._started_signalled and (
            kind == ConnectionKind.NEW_INSTANCE
            or (kind == ConnectionKind.SECONDARY_INSTANCE and self.secondary_notification)
        ):
            self._started_signalled = True
            events.append(InstanceStarted(message.instance_id))

        events.append(Ack())
        logger.debug("Handshake completed with instance %d (kind %d)", message.instance_id, kind)
        return events

    def _read_data_body(self):
        if len(self._buffer) < self.pending_length:
            return None

        payload = self._take(self.pending_length)
        self.stage = Stage.AWAITING_DATA_HEADER
        return [MessageReceived(self.peer_instance_id, payload), Ack()]
