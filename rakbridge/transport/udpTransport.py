"""
UDP Transport Adapter (pure software backend)

API: UdpClient (connect, sendReliable, ping, close), UdpServer (listen, updateAdvertisement, close)
Design:
    - asyncio datagram endpoints, all callbacks inline on the caller's loop
    - UdpSession adds sequence numbers, acks, resend and in-order delivery per peer
    - One payload per datagram (no fragmentation); larger payloads raise PayloadTooLarge
    - Native priority: IMMEDIATE flushes the send queue now, MEDIUM waits for the next tick

Property of Uncompromising Sensors LLC.
"""

# Imports
import asyncio, time, uuid
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Tuple

# Local Imports
from rakbridge.config import TransportConfig
from rakbridge.errors import PayloadTooLarge
from . import discovery, wire
from .reliability import ReliabilityClass, ReliabilityMapper
from .transportBase import ClientState, ClientTransport, ConnectionHandle, PeerAddress, ServerTransport
from .timeouts import Resolve


TICK_INTERVAL = 0.01                # send queue flush / resend scan
RESEND_INTERVAL = 0.1               # unacked frame retransmission
HANDSHAKE_RESEND_INTERVAL = 0.5     # open connection request retransmission
KEEPALIVE_INTERVAL = 1.0            # idle send interval that triggers a keepalive
REORDER_WINDOW = 4096               # frames accepted ahead of the next expected sequence
MAX_PAYLOAD = wire.MAX_DATA_PAYLOAD    # one DATA frame per datagram

_SEQ_HALF = wire.SEQ_MODULO // 2


class UdpPriority(IntEnum):
    IMMEDIATE = 0
    MEDIUM = 1


UDP_RELIABILITY = ReliabilityMapper({
    ReliabilityClass.IMMEDIATE: UdpPriority.IMMEDIATE,
    ReliabilityClass.RELIABLE_ORDERED: UdpPriority.MEDIUM,
})


def _unwrapSeq(wireSeq: int, reference: int) -> int:
    """Map a 32-bit wire sequence to the full sequence nearest `reference`."""
    return reference + ((wireSeq - reference + _SEQ_HALF) % wire.SEQ_MODULO) - _SEQ_HALF


class UdpSession:
    """Reliable, ordered delivery over one peer's datagrams."""

    def __init__(self, sendDatagram: Callable[[bytes], None], deliver: Callable[[bytes], None]):
        self._sendDatagram = sendDatagram
        self._deliver = deliver
        self._nextSendSeq = 0
        self._expectedSeq = 0
        self._unacked: Dict[int, List] = {}     # seq -> [frame, lastSentAt]
        self._pending: List[int] = []           # queued, not yet sent
        self._reorder: Dict[int, bytes] = {}    # seq -> payload received ahead of order
        self.lastReceived = time.monotonic()
        self.lastSent = self.lastReceived

    @property
    def unackedCount(self) -> int:
        return len(self._unacked)

    def queue(self, payload: bytes, priority: UdpPriority) -> None:
        if len(payload) > MAX_PAYLOAD:
            raise PayloadTooLarge(len(payload), MAX_PAYLOAD)
        seq = self._nextSendSeq
        self._nextSendSeq += 1
        self._unacked[seq] = [wire.encodeData(seq, bytes(payload)), 0.0]
        self._pending.append(seq)
        if priority == UdpPriority.IMMEDIATE:
            self.flush()

    def flush(self, now: Optional[float] = None) -> None:
        now = now or time.monotonic()
        for seq in self._pending:
            entry = self._unacked.get(seq)
            if entry is not None:
                entry[1] = now
                self._send(entry[0], now)
        self._pending.clear()

    def tick(self, now: float) -> None:
        self.flush(now)
        for entry in self._unacked.values():
            if now - entry[1] >= RESEND_INTERVAL:
                entry[1] = now
                self._send(entry[0], now)
        if now - self.lastSent >= KEEPALIVE_INTERVAL:
            self._send(wire.encodeKeepalive(), now)

    def touch(self) -> None:
        self.lastReceived = time.monotonic()

    def idleFor(self, now: float) -> float:
        return now - self.lastReceived

    def handleData(self, wireSeq: int, payload: bytes) -> None:
        self.touch()
        seq = _unwrapSeq(wireSeq, self._expectedSeq)
        if seq >= self._expectedSeq + REORDER_WINDOW:
            return  # Sender will resend once the window moves

        # Ack duplicates too: the first ack may have been lost
        self._send(wire.encodeAck(wireSeq))
        if seq < self._expectedSeq or seq in self._reorder:
            return

        self._reorder[seq] = payload
        while self._expectedSeq in self._reorder:
            data = self._reorder.pop(self._expectedSeq)
            self._expectedSeq += 1
            self._deliver(data)

    def handleAck(self, wireSeq: int) -> None:
        self.touch()
        self._unacked.pop(_unwrapSeq(wireSeq, self._nextSendSeq), None)

    def _send(self, frame: bytes, now: Optional[float] = None) -> None:
        self._sendDatagram(frame)
        self.lastSent = now or time.monotonic()


class _UdpEndpoint(asyncio.DatagramProtocol):
    """Forwards datagrams and socket errors to the owning adapter."""

    def __init__(self, owner):
        self._owner = owner

    def datagram_received(self, data: bytes, addr: Tuple):
        self._owner._handleDatagram(data, addr[:2])

    def error_received(self, exc):
        self._owner._handleSocketError(exc)


# Class
class UdpClient(ClientTransport):
    """Pure-software client; runs inline on the caller's event loop."""

    reliability = UDP_RELIABILITY

    def __init__(self, config: TransportConfig, versionAtLeast: Optional[Callable[[str], bool]] = None):
        super().__init__(config, versionAtLeast)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._session: Optional[UdpSession] = None
        self._tickTask: Optional[asyncio.Task] = None
        self._clientGuid = uuid.uuid4().int >> 64
        self._peer = PeerAddress(config.host, config.port)
        self._connectStartedAt = 0.0
        self._lastRequestAt = 0.0

    @property
    def transportType(self) -> str:
        return 'udp'

    async def _startConnect(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _UdpEndpoint(self),
            remote_addr=(self.config.host, self.config.port)
        )
        self._connectStartedAt = time.monotonic()
        self._sendOpenRequest()
        self._tickTask = asyncio.create_task(self._tickLoop())

    def _send(self, buffer: bytes, reliability: ReliabilityClass) -> None:
        self._session.queue(buffer, self.reliability.toNative(reliability))

    def _ping(self, generation: int, resolve: Resolve):
        return discovery.pingAdvertisement(self.config.host, self.config.port, generation, resolve)

    def _release(self) -> None:
        if self._tickTask is not None:
            self._tickTask.cancel()
            self._tickTask = None
        if self._session is not None:
            self._session.flush()
            self._sendDatagram(wire.encodeDisconnect())
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    # ===== Internal Methods =====
    def _sendDatagram(self, frame: bytes) -> None:
        if self._transport is not None and not self._transport.is_closing():
            self._transport.sendto(frame)

    def _sendOpenRequest(self) -> None:
        self._lastRequestAt = time.monotonic()
        self._sendDatagram(wire.encodeOpenRequest(self.protocolVersion, self._clientGuid))

    def _deliver(self, payload: bytes) -> None:
        self._handleEncapsulated(payload, self._peer)

    async def _tickLoop(self) -> None:
        while not self._released:
            now = time.monotonic()
            if self.state == ClientState.CONNECTING:
                if now - self._connectStartedAt >= self.config.timeout:
                    self._handleDisconnect('Connection timed out')
                    return
                if now - self._lastRequestAt >= HANDSHAKE_RESEND_INTERVAL:
                    self._sendOpenRequest()
            elif self._session is not None:
                self._session.tick(now)
                if self.state == ClientState.CONNECTED and self._session.idleFor(now) >= self.config.timeout:
                    self._handleDisconnect('Connection timed out')
                    return
            await asyncio.sleep(TICK_INTERVAL)

    def _handleDatagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            pid = wire.packetId(data)
            if pid == wire.PacketId.OPEN_CONNECTION_REPLY:
                if self.state == ClientState.CONNECTING and self._session is None:
                    self._session = UdpSession(self._sendDatagram, self._deliver)
                    self._handleConnected()
            elif pid == wire.PacketId.DATA:
                if self._session is not None:
                    seq, payload = wire.decodeData(data)
                    self._session.handleData(seq, payload)
            elif pid == wire.PacketId.ACK:
                if self._session is not None:
                    self._session.handleAck(wire.decodeAck(data))
            elif pid == wire.PacketId.KEEPALIVE:
                if self._session is not None:
                    self._session.touch()
            elif pid == wire.PacketId.DISCONNECT:
                self._handleDisconnect('Server closed connection')
            elif pid == wire.PacketId.INCOMPATIBLE_PROTOCOL:
                serverProtocol = wire.decodeIncompatibleProtocol(data)
                self._log('Server rejected protocol', level='WARNING', protocol=self.protocolVersion,
                          serverProtocol=serverProtocol)
                self._handleDisconnect(f'Incompatible protocol (server uses {serverProtocol})')
            elif pid == wire.PacketId.NO_FREE_INCOMING_CONNECTIONS:
                self._log('Server is full', level='WARNING')
                self._handleDisconnect('Server is full')
        except wire.WireError as e:
            self._log(f'Discarded datagram: {e}', level='DEBUG')

    def _handleSocketError(self, exc: Exception) -> None:
        # Refused while connecting: keep retrying until the handshake timeout
        self._log(f'Socket error: {exc!r}', level='DEBUG', state=self.state.value)


class _UdpPeer:
    __slots__ = ('clientGuid', 'session', 'handle')

    def __init__(self, clientGuid: int):
        self.clientGuid = clientGuid
        self.session: Optional[UdpSession] = None
        self.handle: Optional[ConnectionHandle] = None


class UdpServer(ServerTransport):
    """Pure-software server; one datagram socket serves discovery and every session."""

    reliability = UDP_RELIABILITY

    def __init__(self, config: TransportConfig, advertisementProvider=None, versionAtLeast=None):
        super().__init__(config, advertisementProvider, versionAtLeast)
        self._transport: Optional[asyncio.DatagramTransport] = None
        self._peers: Dict[Tuple[str, int], _UdpPeer] = {}
        self._tickTask: Optional[asyncio.Task] = None

    @property
    def transportType(self) -> str:
        return 'udp'

    @property
    def localAddress(self) -> Optional[Tuple[str, int]]:
        """Bound (host, port); useful when listening on port 0."""
        if self._transport is None:
            return None
        return self._transport.get_extra_info('sockname')[:2]

    async def _startListening(self) -> None:
        loop = asyncio.get_running_loop()
        self._transport, _ = await loop.create_datagram_endpoint(
            lambda: _UdpEndpoint(self),
            local_addr=(self.config.host, self.config.port)
        )
        self._tickTask = asyncio.create_task(self._tickLoop())

    def _release(self) -> None:
        if self._tickTask is not None:
            self._tickTask.cancel()
            self._tickTask = None
        for peer in self._peers.values():
            peer.session.flush()
        self._peers.clear()
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    # ===== Internal Methods =====
    def _sendTo(self, frame: bytes, addr: Tuple[str, int]) -> None:
        if self._transport is not None and not self._transport.is_closing():
            self._transport.sendto(frame, addr)

    async def _tickLoop(self) -> None:
        while not self._released:
            now = time.monotonic()
            for addr, peer in list(self._peers.items()):
                peer.session.tick(now)
                if peer.session.idleFor(now) >= self.config.timeout:
                    self._dropPeer(addr, peer, 'Connection timed out', notify=False)
            await asyncio.sleep(TICK_INTERVAL)

    def _handleDatagram(self, data: bytes, addr: Tuple[str, int]) -> None:
        try:
            pid = wire.packetId(data)
            if pid == wire.PacketId.UNCONNECTED_PING:
                if not self._closing:
                    self._sendTo(discovery.buildPong(self, wire.decodePing(data)), addr)
                return
            if pid == wire.PacketId.OPEN_CONNECTION_REQUEST:
                self._handleOpenRequest(data, addr)
                return

            peer = self._peers.get(addr)
            if peer is None:
                return
            if pid == wire.PacketId.DATA:
                seq, payload = wire.decodeData(data)
                peer.session.handleData(seq, payload)
            elif pid == wire.PacketId.ACK:
                peer.session.handleAck(wire.decodeAck(data))
            elif pid == wire.PacketId.KEEPALIVE:
                peer.session.touch()
            elif pid == wire.PacketId.DISCONNECT:
                self._dropPeer(addr, peer, 'Client disconnected', notify=False)
        except wire.WireError as e:
            self._log(f'Discarded datagram: {e}', level='DEBUG', peer=f'{addr[0]}/{addr[1]}')

    def _handleOpenRequest(self, data: bytes, addr: Tuple[str, int]) -> None:
        if self._closing:
            return
        protocol, clientGuid = wire.decodeOpenRequest(data)

        existing = self._peers.get(addr)
        if existing is not None and existing.clientGuid == clientGuid:
            self._sendTo(wire.encodeOpenReply(self.serverId), addr)  # Retransmitted request
            return

        if protocol != self.protocolVersion:
            self._log('Rejected incompatible protocol', level='WARNING', peer=f'{addr[0]}/{addr[1]}',
                      protocol=protocol, serverProtocol=self.protocolVersion)
            self._sendTo(wire.encodeIncompatibleProtocol(self.protocolVersion, self.serverId), addr)
            return

        # Same address, new client instance: the old connection is gone
        if existing is not None:
            self._dropPeer(addr, existing, 'Replaced by new connection', notify=False)

        if self.isFull:
            self._log('Rejected connection, server full', level='WARNING', peer=f'{addr[0]}/{addr[1]}',
                      maxConnections=self.maxConnections)
            self._sendTo(wire.encodeNoFreeConnections(self.serverId), addr)
            return

        peer = _UdpPeer(clientGuid)
        peer.session = UdpSession(lambda frame: self._sendTo(frame, addr),
                                  lambda payload: self._deliver(peer.handle, payload))
        self._peers[addr] = peer
        self._sendTo(wire.encodeOpenReply(self.serverId), addr)

        def sender(buffer: bytes, reliability: ReliabilityClass):
            peer.session.queue(buffer, self.reliability.toNative(reliability))

        peer.handle = self._openConnection(PeerAddress(addr[0], addr[1]), sender,
                                           lambda reason: self._dropPeer(addr, peer, reason, notify=True))

    def _dropPeer(self, addr: Tuple[str, int], peer: _UdpPeer, reason: str, notify: bool) -> None:
        if self._peers.get(addr) is peer:
            del self._peers[addr]
        if notify:
            peer.session.flush()
            self._sendTo(wire.encodeDisconnect(), addr)
        if peer.handle is not None:
            self._closeConnection(peer.handle, reason)

    def _handleSocketError(self, exc: Exception) -> None:
        self._log(f'Socket error: {exc!r}', level='DEBUG')
