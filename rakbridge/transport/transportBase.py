"""
Transport contracts shared by every backend.

ClientTransport: connect(), sendReliable(buffer, immediate), ping(timeout), close()
ServerTransport: listen(), updateAdvertisement(), close()
ConnectionHandle: one server-side peer with its own sendReliable()/close()

Backends implement the protected hooks (_startConnect, _send, _ping, _startListening, _release)
and report network events through _handleConnected/_handleEncapsulated/_handleDisconnect
(client) or _openConnection/_deliver/_closeConnection (server). The base classes own the
lifecycle rules: delivery stops the moment a client or handle is no longer connected, close()
never blocks and releases the backend exactly once after CLOSE_GRACE, and ping() is always
bounded by its timeout.

Property of Uncompromising Sensors LLC.
"""


# Imports
import asyncio, inspect, uuid
from abc import ABC, abstractmethod
import dataclasses
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

# Local imports
from rakbridge.config import TransportConfig
from rakbridge.errors import RakTimeout, TransportError, BackendUnavailable, ConfigError, PayloadTooLarge
from rakbridge.logging import getLogger
from .advertisement import Advertisement, AdvertisementProvider, selectProtocolVersion
from .reliability import ReliabilityClass, reliabilityFor
from .timeouts import Generation, Resolve, waitFor


CLOSE_GRACE = 0.040     # seconds between logical close and backend release


def _noop(*args) -> None:
    pass


@dataclass(frozen=True)
class PeerAddress:
    host: str
    port: int

    @property
    def hash(self) -> str:
        return f"{self.host}/{self.port}"

    def __str__(self) -> str:
        return self.hash


class ClientState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED = "closed"


class ConnectionHandle:
    """
    Server-side handle for one peer.

    Read-only fields:
        - address: PeerAddress of the peer
        - identifier: 'host/port', stable for the handle's lifetime
        - connected: False once closed; a closed handle never receives events again
        - owner: ServerTransport that created the handle"""

    def __init__(self, address: PeerAddress, owner: 'ServerTransport',
                 sender: Callable[[bytes, ReliabilityClass], Any], closer: Callable[[str], None]):
        self._address = address
        self._owner = owner
        self._sender = sender
        self._closer = closer
        self.connected = True

    @property
    def address(self) -> PeerAddress:
        return self._address

    @property
    def identifier(self) -> str:
        return self._address.hash

    @property
    def owner(self) -> 'ServerTransport':
        return self._owner

    def sendReliable(self, buffer: bytes, immediate: bool = False) -> None:
        if not self.connected:
            return
        self._sender(buffer, reliabilityFor(immediate))

    def close(self, reason: str = 'Closed by server') -> None:
        """Disconnect this peer (idempotent)."""
        if self.connected:
            self._closer(reason)

    def __repr__(self) -> str:
        return f"ConnectionHandle({self.identifier}, connected={self.connected})"


class TransportAdapter(ABC):
    """Lifecycle helpers shared by client and server adapters."""

    def __init__(self, config: TransportConfig):
        self.config = config
        # Named after the concrete adapter, not this module
        self.log = getLogger(f"transport.{type(self).__module__.rsplit('.', 1)[-1]}.{type(self).__name__}")
        self._instanceId = str(uuid.uuid4())[:8]
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._teardownHandle: Optional[asyncio.TimerHandle] = None
        self._released = False

    # ===== Core Properties =====
    @property
    @abstractmethod
    def transportType(self) -> str:
        pass

    @property
    def endpoint(self) -> str:
        return f"{self.config.host}:{self.config.port}"

    @property
    def released(self) -> bool:
        return self._released

    def setLogger(self, logger) -> None:
        self.log = logger

    # ===== Backend Hooks =====
    @abstractmethod
    def _release(self) -> None:
        """Free the backend's sockets/tasks. Called exactly once."""
        pass

    # ===== Helper Methods =====
    def _log(self, message: str, level: str = 'INFO', **fields):
        fields.setdefault('transport', self.transportType)
        fields.setdefault('endpoint', self.endpoint)
        fields.setdefault('instanceId', self._instanceId)
        logMethod = getattr(self.log, level.lower(), self.log.info)

        # Wrapped rakbridge loggers take fields as kwargs, plain logging.Logger needs extra=
        if getattr(self.log, '_is_wrapped', False):
            logMethod(message, **fields)
        else:
            excInfo = fields.pop('exc_info', False)
            logMethod(message, extra=fields, exc_info=excInfo)

    def _attachLoop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def _emit(self, handler: Callable, *args) -> None:
        """Invoke a consumer handler; coroutine handlers are scheduled as tasks."""
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                task.add_done_callback(self._handlerDone)
        except Exception as e:
            self._log(f'Handler error: {e!r}', level='ERROR', exc_info=True)

    def _handlerDone(self, task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            self._log(f'Handler error: {task.exception()!r}', level='ERROR')

    def _scheduleTeardown(self) -> None:
        """Schedule the one and only release, CLOSE_GRACE after the first request."""
        if self._released or self._teardownHandle is not None:
            return
        loop = self._loop
        if loop is None or loop.is_closed():
            # Never attached to a loop: nothing can be in flight
            self._runTeardown()
            return
        self._teardownHandle = loop.call_later(CLOSE_GRACE, self._runTeardown)

    def _runTeardown(self) -> None:
        if self._released:
            return
        self._released = True
        try:
            self._teardown()
        except Exception as e:
            self._log(f'Teardown error: {e!r}', level='WARNING')
        self._log('Released', level='DEBUG', event='release')

    def _teardown(self) -> None:
        self._release()

    # ===== Context Manager Support =====
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()

    @abstractmethod
    def close(self, reason: Optional[str] = None) -> None:
        pass


class ClientTransport(TransportAdapter):
    """
    Unified client contract.

    States: DISCONNECTED -> CONNECTING -> CONNECTED -> CLOSED (terminal)

    Handlers (assign callables, plain or async):
        onConnected()
        onCloseConnection(reason)
        onEncapsulated(buffer, address)"""

    def __init__(self, config: TransportConfig, versionAtLeast: Optional[Callable[[str], bool]] = None):
        super().__init__(config)
        self.protocolVersion = selectProtocolVersion(versionAtLeast, config.protocolVersion)
        self.state = ClientState.DISCONNECTED
        self.connected = False
        self.onConnected: Callable = _noop
        self.onCloseConnection: Callable = _noop
        self.onEncapsulated: Callable = _noop
        self._pingGeneration = Generation()
        self._closeFired = False
        self._closeReason: Optional[str] = None

    # ===== Backend Hooks =====
    @abstractmethod
    async def _startConnect(self) -> None:
        """Open the backend and send the handshake; completion is reported via _handleConnected."""
        pass

    @abstractmethod
    def _send(self, buffer: bytes, reliability: ReliabilityClass) -> None:
        pass

    @abstractmethod
    def _ping(self, generation: int, resolve: Resolve) -> Any:
        """Start a native ping; call resolve(str) on pong or resolve(None) on backend failure."""
        pass

    # ===== Contract =====
    async def connect(self) -> None:
        if self.state != ClientState.DISCONNECTED:
            self._log('connect() ignored', level='DEBUG', state=self.state.value)
            return

        self._attachLoop()
        self.state = ClientState.CONNECTING
        self._log('Connecting', event='connect', protocol=self.protocolVersion)

        try:
            await self._startConnect()
        except OSError as e:
            self._log(f'Connect failed: {e}', level='WARNING')
            self._handleDisconnect(f'Connect failed: {e}')
            return
        if self._released:
            self._release()

    def sendReliable(self, buffer: bytes, immediate: bool = False) -> None:
        """Dropped unless connected. The udp backends raise PayloadTooLarge past one datagram."""
        if not self.connected:
            return
        self._send(buffer, reliabilityFor(immediate))

    def close(self, reason: Optional[str] = None) -> None:
        """Stop delivery now; release the backend CLOSE_GRACE later. Never blocks."""
        self.connected = False
        if self.state != ClientState.CLOSED:
            self.state = ClientState.CLOSED
            self._closeReason = reason or 'Client closed'
            self._log('Closing', event='close', reason=self._closeReason)
        self._scheduleTeardown()

    async def ping(self, timeout: int = 1000) -> Optional[str]:
        """
        Ping the configured peer.

        Returns the advertisement string, or None when the backend reports failure
        (unreachable, refused). Raises RakTimeout when nothing arrives within `timeout` ms.
        """
        self._attachLoop()
        generation = self._pingGeneration.next()
        return await waitFor(lambda resolve: self._ping(generation, resolve), timeout / 1000,
                             lambda: self._pingTimedOut(generation))

    def _pingTimedOut(self, generation: int):
        self._log('Ping timed out', level='DEBUG', event='ping_timeout', pingId=generation)
        raise RakTimeout('Ping timed out')

    # ===== Backend Events =====
    def _handleConnected(self) -> None:
        if self.state != ClientState.CONNECTING:
            self._log('Late handshake discarded', level='DEBUG', state=self.state.value)
            return
        self.state = ClientState.CONNECTED
        self.connected = True
        self._log('Connected', event='connected')
        self._emit(self.onConnected)

    def _handleEncapsulated(self, buffer: bytes, address: Any) -> None:
        # Discard data queued to us after close
        if not self.connected:
            return
        self._emit(self.onEncapsulated, buffer, address)

    def _handleDisconnect(self, reason: str) -> None:
        self.connected = False
        self.state = ClientState.CLOSED
        self._fireClose(reason)
        self._scheduleTeardown()

    def _fireClose(self, reason: str) -> None:
        if self._closeFired:
            return
        self._closeFired = True
        self._log('Connection closed', event='disconnect', reason=reason)
        self._emit(self.onCloseConnection, reason)

    def _teardown(self) -> None:
        self._release()
        self._fireClose(self._closeReason or 'Client closed')


class ServerTransport(TransportAdapter):
    """
    Unified server contract.

    Handlers (assign callables, plain or async):
        onOpenConnection(handle)
        onCloseConnection(handle)
        onEncapsulated(buffer, address)
        onClose(reason)"""

    def __init__(self, config: TransportConfig, advertisementProvider: Optional[AdvertisementProvider] = None,
                 versionAtLeast: Optional[Callable[[str], bool]] = None):
        super().__init__(config)
        self.protocolVersion = selectProtocolVersion(versionAtLeast, config.protocolVersion)
        self._advertisementProvider = advertisementProvider or self._defaultAdvertisement
        self._fallbackServerId = uuid.uuid4().int >> 64
        self._adopt(self._advertisementProvider())
        self.connections: Dict[str, ConnectionHandle] = {}
        self.listening = False
        self._closing = False
        self._closeReason: Optional[str] = None
        self.onOpenConnection: Callable = _noop
        self.onCloseConnection: Callable = _noop
        self.onEncapsulated: Callable = _noop
        self.onClose: Callable = _noop

    # ===== Backend Hooks =====
    @abstractmethod
    async def _startListening(self) -> None:
        pass

    # ===== Contract =====
    async def listen(self) -> None:
        if self.listening or self._closing:
            self._log('listen() ignored', level='DEBUG', listening=self.listening)
            return

        self._attachLoop()
        if self.config.useWorkers:
            self._log('Worker offload is not supported for servers, listening inline', level='WARNING')

        await self._startListening()
        if self._released:
            # close() finished its teardown while the bind was pending
            self._release()
            return
        self.listening = True
        self._log('Listening', event='listen', protocol=self.protocolVersion, maxConnections=self.maxConnections)

    def updateAdvertisement(self) -> None:
        """
        Re-read the consumer's advertisement and publish it; connections are untouched.

        The new playersMax becomes the admission limit (config.maxConnections when it is None).
        Peers already admitted stay connected even if the limit drops below their count.
        """
        self._adopt(self._advertisementProvider())
        self._log('Advertisement updated', level='DEBUG', motd=self.advertisement.motd,
                  levelName=self.advertisement.levelName, maxConnections=self.maxConnections)

    def close(self, reason: Optional[str] = None) -> None:
        """Stop delivery now; disconnect peers and release the socket CLOSE_GRACE later."""
        if not self._closing:
            self._closing = True
            self._closeReason = reason or 'Server closed'
            self._log('Closing', event='close', reason=self._closeReason, connections=len(self.connections))
        self._scheduleTeardown()

    @property
    def isFull(self) -> bool:
        return len(self.connections) >= self.maxConnections

    # ===== Connection Management =====
    def _openConnection(self, address: PeerAddress, sender: Callable[[bytes, ReliabilityClass], Any],
                        closer: Callable[[str], None]) -> ConnectionHandle:
        existing = self.connections.get(address.hash)
        if existing is not None:
            self._closeConnection(existing, 'Replaced by new connection')

        handle = ConnectionHandle(address, self, sender, closer)
        self.connections[handle.identifier] = handle
        self._log('Connection opened', event='open_connection', peer=handle.identifier,
                  connections=len(self.connections))
        self._emit(self.onOpenConnection, handle)
        return handle

    def _closeConnection(self, handle: ConnectionHandle, reason: str) -> None:
        if not handle.connected:
            return
        handle.connected = False
        if self.connections.get(handle.identifier) is handle:
            del self.connections[handle.identifier]
        self._log('Connection closed', event='close_connection', peer=handle.identifier, reason=reason)
        self._emit(self.onCloseConnection, handle)

    def _deliver(self, handle: ConnectionHandle, buffer: bytes) -> None:
        if self._closing or not handle.connected:
            return
        self._emit(self.onEncapsulated, buffer, handle.address)

    def _teardown(self) -> None:
        for handle in list(self.connections.values()):
            handle.close(self._closeReason or 'Server closed')
        self._release()
        self.listening = False
        self._log('Server closed', event='server_closed', reason=self._closeReason)
        self._emit(self.onClose, self._closeReason or 'Server closed')

    def _adopt(self, advertisement: Advertisement) -> None:
        if advertisement.playersMax is None:
            advertisement = dataclasses.replace(advertisement, playersMax=self.config.maxConnections)
        self.advertisement = advertisement
        self.serverId = advertisement.serverId or self._fallbackServerId
        self.maxConnections = advertisement.playersMax

    def _defaultAdvertisement(self) -> Advertisement:
        return Advertisement(playersMax=self.config.maxConnections, portV4=self.config.port)


__all__ = [
    'CLOSE_GRACE', 'PeerAddress', 'ClientState', 'ConnectionHandle', 'TransportAdapter',
    'ClientTransport', 'ServerTransport', 'TransportError', 'RakTimeout', 'BackendUnavailable', 'ConfigError',
    'PayloadTooLarge'
]
