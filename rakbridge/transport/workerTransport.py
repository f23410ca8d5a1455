"""
UDP client offloaded to a worker process.

The adapter keeps the ClientTransport contract on the caller's loop and forwards every
operation over a WorkerBridge; the worker owns the socket and runs an inline UdpClient.

Only one ping can be pending: a second ping() takes over the pong slot and the first
one runs out its timeout.

Property of Uncompromising Sensors LLC.
"""

# Imports
from typing import Any, Callable, Dict, Optional, Tuple

# Local Imports
from rakbridge.config import TransportConfig
from rakbridge.errors import PayloadTooLarge
from .reliability import ReliabilityClass, ReliabilityMapper
from .timeouts import Resolve
from .transportBase import ClientState, ClientTransport
from .udpTransport import MAX_PAYLOAD
from .workerBridge import WorkerBridge, WorkerCommand, WorkerEvent


# Native form on the bridge is the queueEncapsulated 'immediate' flag
WORKER_RELIABILITY = ReliabilityMapper({
    ReliabilityClass.IMMEDIATE: True,
    ReliabilityClass.RELIABLE_ORDERED: False,
})


class UdpWorkerClient(ClientTransport):
    """udp client whose socket lives in a worker process."""

    reliability = WORKER_RELIABILITY

    def __init__(self, config: TransportConfig, versionAtLeast: Optional[Callable[[str], bool]] = None,
                 bridgeFactory: Callable[[TransportConfig, int], Any] = WorkerBridge):
        super().__init__(config, versionAtLeast)
        self._bridgeFactory = bridgeFactory
        self.worker = None
        self._pongSlot: Optional[Tuple[int, Resolve]] = None

    @property
    def transportType(self) -> str:
        return 'udp'

    # ===== Backend Hooks =====
    async def _startConnect(self) -> None:
        self._post(WorkerCommand.CONNECT, host=self.config.host, port=self.config.port)

    def _send(self, buffer: bytes, reliability: ReliabilityClass) -> None:
        # Checked here so the caller sees the error, not the worker
        if len(buffer) > MAX_PAYLOAD:
            raise PayloadTooLarge(len(buffer), MAX_PAYLOAD)
        self._post(WorkerCommand.QUEUE_ENCAPSULATED, packet=bytes(buffer),
                   immediate=self.reliability.toNative(reliability))

    def _ping(self, generation: int, resolve: Resolve) -> None:
        self._pongSlot = (generation, resolve)
        self._post(WorkerCommand.PING)

    def _pingTimedOut(self, generation: int):
        if self._pongSlot is not None and self._pongSlot[0] == generation:
            self._pongSlot = None
        return super()._pingTimedOut(generation)

    def close(self, reason: Optional[str] = None) -> None:
        if self.worker is not None and self.state != ClientState.CLOSED:
            self._post(WorkerCommand.CLOSE, reason=reason or 'Client closed')
        super().close(reason)

    def _release(self) -> None:
        if self.worker is not None:
            self.worker.stop()

    # ===== Internal Methods =====
    def _ensureWorker(self):
        if self.worker is None:
            self.worker = self._bridgeFactory(self.config, self.protocolVersion)
            self.worker.onMessage = self._handleWorkerMessage
            self.worker.start()
            self._log('Worker bridge started', level='DEBUG')
        return self.worker

    def _post(self, command: WorkerCommand, **fields) -> None:
        self._ensureWorker().postMessage({'type': command.value, **fields})

    def _handleWorkerMessage(self, message: Dict[str, Any]) -> None:
        eventType = message.get('type')
        if eventType == WorkerEvent.CONNECTED.value:
            self._handleConnected()
        elif eventType == WorkerEvent.ENCAPSULATED.value:
            self._handleEncapsulated(message['buffer'], message.get('address'))
        elif eventType == WorkerEvent.PONG.value:
            slot, self._pongSlot = self._pongSlot, None
            if slot is not None:
                slot[1](message.get('payload'))
        elif eventType == WorkerEvent.DISCONNECT.value:
            self._handleDisconnect(message.get('reason') or 'Worker disconnected')
        else:
            self._log(f'Unknown worker event: {eventType}', level='DEBUG')
