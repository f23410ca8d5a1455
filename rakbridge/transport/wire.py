"""
Datagram wire format for the pure-software backend and for discovery.

Every frame starts with one id byte; multi-byte fields are big-endian.

    0x00 KEEPALIVE
    0x01 UNCONNECTED_PING               pingId:u64
    0x05 OPEN_CONNECTION_REQUEST        protocol:u8 clientGuid:u64
    0x06 OPEN_CONNECTION_REPLY          serverId:u64
    0x14 NO_FREE_INCOMING_CONNECTIONS   serverId:u64
    0x15 DISCONNECT
    0x19 INCOMPATIBLE_PROTOCOL          protocol:u8 serverId:u64
    0x1c UNCONNECTED_PONG               pingId:u64 serverId:u64 advertisement:utf8
    0x84 DATA                           seq:u32 payload
    0xc0 ACK                            seq:u32

The nng backend reuses the control frames and sends DATA without a sequence number.
"""

import struct
from enum import IntEnum
from typing import NamedTuple, Optional, Tuple


class PacketId(IntEnum):
    KEEPALIVE = 0x00
    UNCONNECTED_PING = 0x01
    OPEN_CONNECTION_REQUEST = 0x05
    OPEN_CONNECTION_REPLY = 0x06
    NO_FREE_INCOMING_CONNECTIONS = 0x14
    DISCONNECT = 0x15
    INCOMPATIBLE_PROTOCOL = 0x19
    UNCONNECTED_PONG = 0x1c
    DATA = 0x84
    ACK = 0xc0


class WireError(ValueError):
    """Malformed frame"""
    pass


_U64 = struct.Struct('>Q')
_U32 = struct.Struct('>I')
_REQUEST = struct.Struct('>BQ')

SEQ_MODULO = 1 << 32
GUID_MASK = (1 << 64) - 1
MAX_DATAGRAM = 65507                     # largest IPv4 UDP payload
DATA_HEADER_SIZE = 1 + _U32.size         # id byte + seq
MAX_DATA_PAYLOAD = MAX_DATAGRAM - DATA_HEADER_SIZE


class Pong(NamedTuple):
    pingId: int
    serverId: int
    advertisement: str


def packetId(frame: bytes) -> PacketId:
    if not frame:
        raise WireError('empty frame')
    try:
        return PacketId(frame[0])
    except ValueError as e:
        raise WireError(f'unknown packet id 0x{frame[0]:02x}') from e


def _body(frame: bytes, size: int) -> bytes:
    if len(frame) < 1 + size:
        raise WireError(f'{packetId(frame).name} frame too short ({len(frame)} bytes)')
    return frame[1:]


# ===== Unconnected (discovery) =====
def encodePing(pingId: int) -> bytes:
    return bytes([PacketId.UNCONNECTED_PING]) + _U64.pack(pingId & GUID_MASK)


def decodePing(frame: bytes) -> int:
    return _U64.unpack_from(_body(frame, 8))[0]


def encodePong(pingId: int, serverId: int, advertisement: bytes) -> bytes:
    return bytes([PacketId.UNCONNECTED_PONG]) + _U64.pack(pingId & GUID_MASK) + _U64.pack(serverId & GUID_MASK) + advertisement


def decodePong(frame: bytes) -> Pong:
    body = _body(frame, 16)
    pingId, = _U64.unpack_from(body, 0)
    serverId, = _U64.unpack_from(body, 8)
    try:
        advertisement = body[16:].decode('utf-8')
    except UnicodeDecodeError as e:
        raise WireError(f'advertisement is not utf-8: {e}') from e
    return Pong(pingId, serverId, advertisement)


# ===== Handshake =====
def encodeOpenRequest(protocol: int, clientGuid: int) -> bytes:
    return bytes([PacketId.OPEN_CONNECTION_REQUEST]) + _REQUEST.pack(protocol, clientGuid & GUID_MASK)


def decodeOpenRequest(frame: bytes) -> Tuple[int, int]:
    return _REQUEST.unpack_from(_body(frame, _REQUEST.size))


def encodeOpenReply(serverId: int) -> bytes:
    return bytes([PacketId.OPEN_CONNECTION_REPLY]) + _U64.pack(serverId & GUID_MASK)


def encodeNoFreeConnections(serverId: int) -> bytes:
    return bytes([PacketId.NO_FREE_INCOMING_CONNECTIONS]) + _U64.pack(serverId & GUID_MASK)


def encodeIncompatibleProtocol(protocol: int, serverId: int) -> bytes:
    return bytes([PacketId.INCOMPATIBLE_PROTOCOL]) + _REQUEST.pack(protocol, serverId & GUID_MASK)


def decodeIncompatibleProtocol(frame: bytes) -> int:
    return _REQUEST.unpack_from(_body(frame, _REQUEST.size))[0]


def encodeDisconnect() -> bytes:
    return bytes([PacketId.DISCONNECT])


def encodeKeepalive() -> bytes:
    return bytes([PacketId.KEEPALIVE])


# ===== Connected data =====
def encodeData(seq: Optional[int], payload: bytes) -> bytes:
    """DATA frame; seq=None for stream transports that are already ordered."""
    if seq is None:
        return bytes([PacketId.DATA]) + payload
    return bytes([PacketId.DATA]) + _U32.pack(seq % SEQ_MODULO) + payload


def decodeData(frame: bytes, sequenced: bool = True) -> Tuple[Optional[int], bytes]:
    if not sequenced:
        _body(frame, 0)
        return None, bytes(frame[1:])
    body = _body(frame, 4)
    return _U32.unpack_from(body)[0], bytes(body[4:])


def encodeAck(seq: int) -> bytes:
    return bytes([PacketId.ACK]) + _U32.pack(seq % SEQ_MODULO)


def decodeAck(frame: bytes) -> int:
    return _U32.unpack_from(_body(frame, 4))[0]
