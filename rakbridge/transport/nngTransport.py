"""
NNG Transport Adapter (native backend)

API: NngClient (connect, sendReliable, ping, close), NngServer (listen, updateAdvertisement, close)
URI: tcp://host:port for sessions; the UDP port with the same number answers discovery pings
Design:
    - pynng Pair1 sockets; the server is polyamorous and tells peers apart by pipe
    - Frames reuse the datagram control ids; DATA carries no sequence (TCP is ordered)
    - Pipe callbacks arrive on NNG threads and are marshaled onto the adapter's loop
    - Native priority: URGENT wakes the writer now, NORMAL waits for the next tick

Property of Uncompromising Sensors LLC.
"""

# Imports
import asyncio, uuid
from enum import IntEnum
from typing import Any, Awaitable, Callable, Dict, List, Optional

# Local Imports
from rakbridge.config import TransportConfig
from rakbridge.errors import BackendUnavailable
from . import discovery, wire
from .reliability import ReliabilityClass, ReliabilityMapper
from .timeouts import Resolve
from .transportBase import ClientState, ClientTransport, ConnectionHandle, PeerAddress, ServerTransport


TICK_INTERVAL = 0.01        # NORMAL frames are written at most this long after queueing
REJECT_LINGER = 0.05        # time for a rejection frame to leave before the pipe is closed

_pynng = None


def loadPynng():
    """Import pynng once; BackendUnavailable when the native library is missing."""
    global _pynng
    if _pynng is None:
        try:
            import pynng
        except ImportError as e:
            raise BackendUnavailable('nng', 'pynng not installed. Run: pip install rakbridge[native]') from e
        _pynng = pynng
    return _pynng


class NngPriority(IntEnum):
    URGENT = 0
    NORMAL = 1


NNG_RELIABILITY = ReliabilityMapper({
    ReliabilityClass.IMMEDIATE: NngPriority.URGENT,
    ReliabilityClass.RELIABLE_ORDERED: NngPriority.NORMAL,
})


def _pipeAddress(pipe) -> PeerAddress:
    """PeerAddress from a pipe's remote address ('1.2.3.4:5' or '[::1]:5')."""
    host, _, port = str(pipe.remote_address).rpartition(':')
    return PeerAddress(host.strip('[]'), int(port) if port.isdigit() else 0)


class _FrameWriter:
    """Single FIFO writer per pipe; frames leave in queue order whatever their priority."""

    def __init__(self, asend: Callable[[bytes], Awaitable[Any]], onError: Callable[[Exception], None]):
        self._asend = asend
        self._onError = onError
        self._pending: List[bytes] = []
        self._wake = asyncio.Event()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._task = asyncio.create_task(self._run())

    def queue(self, frame: bytes, priority: NngPriority) -> None:
        self._pending.append(frame)
        if priority == NngPriority.URGENT:
            self._wake.set()
        elif self._timer is None:
            self._timer = asyncio.get_running_loop().call_later(TICK_INTERVAL, self._wake.set)

    def stop(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        self._task.cancel()

    async def _run(self) -> None:
        while True:
            await self._wake.wait()
            self._wake.clear()
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            frames, self._pending = self._pending, []
            try:
                for frame in frames:
                    await self._asend(frame)
            except Exception as e:
                self._onError(e)
                return


class _NngAdapterMixin:
    """Marshals NNG-thread callbacks onto the adapter's loop."""

    def _fromNative(self, callback: Callable, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            pass  # Loop closed between the check and the call


# Class
class NngClient(_NngAdapterMixin, ClientTransport):
    """Native client over a Pair1 TCP dial."""

    reliability = NNG_RELIABILITY

    def __init__(self, config: TransportConfig, versionAtLeast: Optional[Callable[[str], bool]] = None):
        super().__init__(config, versionAtLeast)
        self._pynng = loadPynng()
        self._sock = None
        self._writer: Optional[_FrameWriter] = None
        self._recvTask: Optional[asyncio.Task] = None
        self._connectTimer: Optional[asyncio.TimerHandle] = None
        self._clientGuid = uuid.uuid4().int >> 64
        self._peer = PeerAddress(config.host, config.port)

    @property
    def transportType(self) -> str:
        return 'nng'

    @property
    def dialAddress(self) -> str:
        return f'tcp://{self.config.host}:{self.config.port}'

    async def _startConnect(self) -> None:
        self._sock = self._pynng.Pair1()
        self._sock.add_post_pipe_connect_cb(lambda pipe: self._fromNative(self._onPipeConnected))
        self._sock.add_post_pipe_remove_cb(lambda pipe: self._fromNative(self._handleDisconnect, 'Connection lost'))
        self._writer = _FrameWriter(self._sock.asend, self._onWriteError)
        self._recvTask = asyncio.create_task(self._recvLoop())
        self._connectTimer = self._loop.call_later(self.config.timeout, self._onConnectTimeout)

        # Non-blocking dial: NNG retries in the background until the listener appears
        self._sock.dial(self.dialAddress, block=False)

    def _send(self, buffer: bytes, reliability: ReliabilityClass) -> None:
        self._writer.queue(wire.encodeData(None, bytes(buffer)), self.reliability.toNative(reliability))

    def _ping(self, generation: int, resolve: Resolve):
        return discovery.pingAdvertisement(self.config.host, self.config.port, generation, resolve)

    def _release(self) -> None:
        if self._connectTimer is not None:
            self._connectTimer.cancel()
            self._connectTimer = None
        if self._writer is not None:
            self._writer.stop()
            self._writer = None
        if self._recvTask is not None:
            self._recvTask.cancel()
            self._recvTask = None
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    # ===== Internal Methods =====
    def _onPipeConnected(self) -> None:
        if self.state == ClientState.CONNECTING and self._writer is not None:
            self._writer.queue(wire.encodeOpenRequest(self.protocolVersion, self._clientGuid), NngPriority.URGENT)

    def _onConnectTimeout(self) -> None:
        self._connectTimer = None
        if self.state == ClientState.CONNECTING:
            self._handleDisconnect('Connection timed out')

    def _onWriteError(self, exc: Exception) -> None:
        if self.state != ClientState.CLOSED:
            self._log(f'Send failed: {exc!r}', level='WARNING')
            self._handleDisconnect(f'Send failed: {exc}')

    async def _recvLoop(self) -> None:
        sock = self._sock
        while not self._released:
            try:
                frame = await asyncio.to_thread(sock.recv)      # Blocking receive in a thread
            except self._pynng.Closed:
                break
            except self._pynng.NNGException as e:
                self._log(f'Receive error: {e}', level='WARNING')
                self._handleDisconnect(f'Receive error: {e}')
                break
            self._handleFrame(frame)

    def _handleFrame(self, frame: bytes) -> None:
        try:
            pid = wire.packetId(frame)
            if pid == wire.PacketId.OPEN_CONNECTION_REPLY:
                if self._connectTimer is not None:
                    self._connectTimer.cancel()
                    self._connectTimer = None
                self._handleConnected()
            elif pid == wire.PacketId.DATA:
                _, payload = wire.decodeData(frame, sequenced=False)
                self._handleEncapsulated(payload, self._peer)
            elif pid == wire.PacketId.DISCONNECT:
                self._handleDisconnect('Server closed connection')
            elif pid == wire.PacketId.INCOMPATIBLE_PROTOCOL:
                serverProtocol = wire.decodeIncompatibleProtocol(frame)
                self._log('Server rejected protocol', level='WARNING', protocol=self.protocolVersion,
                          serverProtocol=serverProtocol)
                self._handleDisconnect(f'Incompatible protocol (server uses {serverProtocol})')
            elif pid == wire.PacketId.NO_FREE_INCOMING_CONNECTIONS:
                self._log('Server is full', level='WARNING')
                self._handleDisconnect('Server is full')
        except wire.WireError as e:
            self._log(f'Discarded frame: {e}', level='DEBUG')


class _NngPeer:
    __slots__ = ('pipe', 'writer', 'handle')

    def __init__(self, pipe, writer: _FrameWriter):
        self.pipe = pipe
        self.writer = writer
        self.handle: Optional[ConnectionHandle] = None


class NngServer(_NngAdapterMixin, ServerTransport):
    """Native server: polyamorous Pair1 TCP listener plus a UDP discovery responder."""

    reliability = NNG_RELIABILITY

    def __init__(self, config: TransportConfig, advertisementProvider=None, versionAtLeast=None):
        super().__init__(config, advertisementProvider, versionAtLeast)
        self._pynng = loadPynng()
        self._sock = None
        self._discovery: Optional[asyncio.DatagramTransport] = None
        self._recvTask: Optional[asyncio.Task] = None
        self._peers: Dict[int, _NngPeer] = {}     # pipe id -> peer
        self._port = config.port

    @property
    def transportType(self) -> str:
        return 'nng'

    @property
    def listenAddress(self) -> str:
        return f'tcp://{self.config.host}:{self._port}'

    @property
    def localAddress(self):
        """Bound (host, port); the discovery socket decides the port when listening on 0."""
        return (self.config.host, self._port) if self._discovery is not None else None

    async def _startListening(self) -> None:
        loop = asyncio.get_running_loop()
        self._discovery, _ = await loop.create_datagram_endpoint(
            lambda: discovery.AdvertisementResponder(self),
            local_addr=(self.config.host, self.config.port)
        )
        self._port = self._discovery.get_extra_info('sockname')[1]

        self._sock = self._pynng.Pair1(polyamorous=True)
        self._sock.add_post_pipe_remove_cb(lambda pipe: self._fromNative(self._onPipeRemoved, pipe.id))
        try:
            self._sock.listen(self.listenAddress)
        except self._pynng.NNGException as e:
            self._discovery.close()
            self._sock.close()
            raise OSError(f'nng listen failed on {self.listenAddress}: {e}') from e
        self._recvTask = asyncio.create_task(self._recvLoop())

    def _release(self) -> None:
        if self._recvTask is not None:
            self._recvTask.cancel()
            self._recvTask = None
        for peer in self._peers.values():
            peer.writer.stop()
        self._peers.clear()
        if self._sock is not None:
            self._sock.close()
            self._sock = None
        if self._discovery is not None:
            self._discovery.close()
            self._discovery = None

    # ===== Internal Methods =====
    async def _recvLoop(self) -> None:
        sock = self._sock
        while not self._released:
            try:
                msg = await asyncio.to_thread(sock.recv_msg)    # Blocking receive in a thread
            except self._pynng.Closed:
                break
            except self._pynng.NNGException as e:
                self._log(f'Receive error: {e}', level='WARNING')
                await asyncio.sleep(0.1)  # Backoff on error
                continue
            self._handleFrame(msg.pipe, msg.bytes)

    def _handleFrame(self, pipe, frame: bytes) -> None:
        try:
            pid = wire.packetId(frame)
            if pid == wire.PacketId.OPEN_CONNECTION_REQUEST:
                self._handleOpenRequest(pipe, frame)
                return

            peer = self._peers.get(pipe.id)
            if peer is None or peer.handle is None:
                return
            if pid == wire.PacketId.DATA:
                _, payload = wire.decodeData(frame, sequenced=False)
                self._deliver(peer.handle, payload)
            elif pid == wire.PacketId.DISCONNECT:
                self._dropPeer(pipe.id, 'Client disconnected', notify=False)
        except wire.WireError as e:
            self._log(f'Discarded frame: {e}', level='DEBUG', pipe=pipe.id)

    def _handleOpenRequest(self, pipe, frame: bytes) -> None:
        if self._closing or pipe.id in self._peers:
            return
        protocol, _ = wire.decodeOpenRequest(frame)
        address = _pipeAddress(pipe)

        if protocol != self.protocolVersion:
            self._log('Rejected incompatible protocol', level='WARNING', peer=address.hash,
                      protocol=protocol, serverProtocol=self.protocolVersion)
            self._reject(pipe, wire.encodeIncompatibleProtocol(self.protocolVersion, self.serverId))
            return

        # Same address, new pipe: the old connection is gone
        existing = self.connections.get(address.hash)
        if existing is not None:
            existing.close('Replaced by new connection')

        if self.isFull:
            self._log('Rejected connection, server full', level='WARNING', peer=address.hash,
                      maxConnections=self.maxConnections)
            self._reject(pipe, wire.encodeNoFreeConnections(self.serverId))
            return

        pipeId = pipe.id
        peer = _NngPeer(pipe, _FrameWriter(pipe.asend, lambda exc: self._dropPeer(pipeId, f'Send failed: {exc}', notify=False)))
        self._peers[pipeId] = peer
        peer.writer.queue(wire.encodeOpenReply(self.serverId), NngPriority.URGENT)

        def sender(buffer: bytes, reliability: ReliabilityClass):
            peer.writer.queue(wire.encodeData(None, bytes(buffer)), self.reliability.toNative(reliability))

        peer.handle = self._openConnection(address, sender, lambda reason: self._dropPeer(pipeId, reason, notify=True))

    def _reject(self, pipe, frame: bytes) -> None:
        writer = _FrameWriter(pipe.asend, lambda exc: None)
        writer.queue(frame, NngPriority.URGENT)

        def closePipe():
            writer.stop()
            if self._sock is not None:
                pipe.close()

        self._loop.call_later(REJECT_LINGER, closePipe)

    def _dropPeer(self, pipeId: int, reason: str, notify: bool) -> None:
        peer = self._peers.pop(pipeId, None)
        if peer is None:
            return
        if peer.handle is not None:
            self._closeConnection(peer.handle, reason)
        if notify:
            # Let the DISCONNECT frame leave before the pipe goes away
            peer.writer.queue(wire.encodeDisconnect(), NngPriority.URGENT)
            self._loop.call_later(REJECT_LINGER, self._closePeer, peer)
        else:
            self._closePeer(peer)

    def _closePeer(self, peer: _NngPeer) -> None:
        peer.writer.stop()
        # Closing the socket already closed every pipe
        if self._sock is not None:
            peer.pipe.close()

    def _onPipeRemoved(self, pipeId: int) -> None:
        if pipeId in self._peers:
            self._dropPeer(pipeId, 'Connection lost', notify=False)
