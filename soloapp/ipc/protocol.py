"""
Wire Protocol - Frames, init message and checksum for the local socket.

Every unit exchanged between a secondary and the primary is a frame: an
8-byte big-endian length header followed by that many body bytes. The
receiver confirms the header and the body separately with a single ack byte.

Init message body layout (big-endian):
    u32   identity length
    bytes identity (latin-1 encoded identifier)
    u8    connection kind
    u32   instance id
    u16   CRC-16 over every preceding body byte

The same CRC-16 (ISO 3309 / X.25) protects the coordination block in shared
memory.

See also:
    - connection_session.py: Consumes these frames on the primary side
    - connector.py: Produces them on the secondary side
    - coordination_block.py: Uses crc16() for the block checksum
"""

import struct
from dataclasses import dataclass
from enum import IntEnum

# Sent by the receiver after every consumed header and every consumed body
ACK = b"\n"

HEADER_FORMAT = ">Q"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

_LENGTH_FORMAT = ">I"
_TRAILER_FORMAT = ">BI"
_CHECKSUM_FORMAT = ">H"
_CHECKSUM_SIZE = struct.calcsize(_CHECKSUM_FORMAT)


class ConnectionKind(IntEnum):
    """Reason a secondary opened its connection, carried in the init message."""

    INVALID = 0
    NEW_INSTANCE = 1
    SECONDARY_INSTANCE = 2
    RECONNECT = 3


class HandshakeRejected(ValueError):
    """Raised when an init message is malformed or targets another identifier."""


def _build_crc16_table() -> tuple:
    table = []
    for byte in range(256):
        crc = byte
        for _ in range(8):
            if crc & 1:
                crc = (crc >> 1) ^ 0x8408
            else:
                crc >>= 1
        table.append(crc)
    return tuple(table)


_CRC16_TABLE = _build_crc16_table()


def crc16(data: bytes) -> int:
    """
    CRC-16/ISO-3309 (X.25) of data.

    Reflected polynomial 0x1021, initial value 0xFFFF, final xor 0xFFFF.
    crc16(b"123456789") == 0x906E.
    """
    crc = 0xFFFF
    for byte in data:
        crc = (crc >> 8) ^ _CRC16_TABLE[(crc ^ byte) & 0xFF]
    return crc ^ 0xFFFF


def encode_header(length: int) -> bytes:
    return struct.pack(HEADER_FORMAT, length)


def decode_header(data: bytes) -> int:
    """Parse the length from the first HEADER_SIZE bytes of data."""
    (length,) = struct.unpack_from(HEADER_FORMAT, data)
    return length


@dataclass(frozen=True)
class InitMessage:
    server_identity: bytes
    connection_kind: int
    instance_id: int
    checksum: int


def encode_init_message(identifier: str, connection_kind: ConnectionKind, instance_id: int) -> bytes:
    """
    Build the init message body for identifier.

    Args:
        identifier: Identifier of the primary the secondary wants to reach
        connection_kind: Reason for connecting
        instance_id: The secondary's own instance number

    Returns:
        bytes: Body ready to be sent as a confirmed message (without header)
    """
    identity = identifier.encode("latin-1")
    body = (
        struct.pack(_LENGTH_FORMAT, len(identity))
        + identity
        + struct.pack(_TRAILER_FORMAT, int(connection_kind), instance_id)
    )
    return body + struct.pack(_CHECKSUM_FORMAT, crc16(body))


def decode_init_message(body: bytes) -> InitMessage:
    """
    Parse an init message body.

    Raises:
        HandshakeRejected: Body is truncated, has trailing garbage or fails
            its checksum.
    """
    length_size = struct.calcsize(_LENGTH_FORMAT)
    trailer_size = struct.calcsize(_TRAILER_FORMAT)

    if len(body) < length_size + trailer_size + _CHECKSUM_SIZE:
        raise HandshakeRejected(f"init message too short ({len(body)} bytes)")

    (identity_length,) = struct.unpack_from(_LENGTH_FORMAT, body)
    expected = length_size + identity_length + trailer_size + _CHECKSUM_SIZE
    if len(body) != expected:
        raise HandshakeRejected(f"init message length mismatch: {len(body)} != {expected}")

    offset = length_size
    identity = bytes(body[offset:offset + identity_length])
    offset += identity_length
    kind, instance_id = struct.unpack_from(_TRAILER_FORMAT, body, offset)
    offset += trailer_size
    (checksum,) = struct.unpack_from(_CHECKSUM_FORMAT, body, offset)

    if crc16(body[:offset]) != checksum:
        raise HandshakeRejected("init message checksum mismatch")

    return InitMessage(
        server_identity=identity,
        connection_kind=kind,
        instance_id=instance_id,
        checksum=checksum,
    )
