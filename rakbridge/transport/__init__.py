"""rakbridge.transport - Backend-agnostic reliable-datagram client/server layer.

Public API:
    - ClientTransport / ServerTransport: Unified adapter contracts
    - ConnectionHandle: Server-side peer handle
    - selectBackend: Pick a BackendPair by identifier, with fallback
    - registerBackend: Register custom backend loaders
    - waitFor: Timeout race primitive
    - Advertisement / selectProtocolVersion: Discovery metadata and protocol gating

Default Backends:
    - 'nng': NngClient / NngServer (native, needs pynng; preferred)
    - 'udp': UdpClient / UdpServer (pure software; UdpWorkerClient when useWorkers is set)

Usage:
    from rakbridge.config import TransportConfig
    from rakbridge.transport import Advertisement, selectBackend

    backend = selectBackend()                       # nng, or udp with a warning
    config = TransportConfig(host='127.0.0.1', port=19132)

    # Server
    server = backend.createServer(config, lambda: Advertisement(motd='Hello'))
    server.onOpenConnection = lambda handle: print('open', handle.identifier)
    server.onEncapsulated = lambda buffer, address: server.connections[address.hash].sendReliable(buffer)
    await server.listen()

    # Client
    client = backend.createClient(config)
    client.onEncapsulated = lambda buffer, address: print(buffer)
    await client.connect()
    client.sendReliable(b'payload', immediate=True)

    try:
        print(await client.ping(timeout=500))
    except backend.timeoutError:
        print('no answer')

    # Cleanup (non-blocking; release happens 40 ms later)
    client.close()
    server.close()

Property of Uncompromising Sensors LLC.
"""

from .advertisement import (
    Advertisement,
    selectProtocolVersion,
    PROTOCOL_VERSION_THRESHOLD,
    LEGACY_PROTOCOL,
    CURRENT_PROTOCOL
)
from .reliability import ReliabilityClass, ReliabilityMapper, reliabilityFor
from .timeouts import waitFor, Generation
from .transportBase import (
    CLOSE_GRACE,
    PeerAddress,
    ClientState,
    ConnectionHandle,
    ClientTransport,
    ServerTransport,
    TransportError,
    RakTimeout,
    BackendUnavailable,
    PayloadTooLarge
)
from .transportFactory import (
    BackendPair,
    BackendRegistry,
    registerBackend,
    selectBackend,
    getDefaultRegistry,
    DEFAULT_BACKEND,
    FALLBACK_BACKEND
)
from .udpTransport import UdpClient, UdpServer
from .workerTransport import UdpWorkerClient

__all__ = [
    'Advertisement',
    'selectProtocolVersion',
    'PROTOCOL_VERSION_THRESHOLD',
    'LEGACY_PROTOCOL',
    'CURRENT_PROTOCOL',
    'ReliabilityClass',
    'ReliabilityMapper',
    'reliabilityFor',
    'waitFor',
    'Generation',
    'CLOSE_GRACE',
    'PeerAddress',
    'ClientState',
    'ConnectionHandle',
    'ClientTransport',
    'ServerTransport',
    'TransportError',
    'PayloadTooLarge',
    'RakTimeout',
    'BackendUnavailable',
    'BackendPair',
    'BackendRegistry',
    'registerBackend',
    'selectBackend',
    'getDefaultRegistry',
    'DEFAULT_BACKEND',
    'FALLBACK_BACKEND',
    'UdpClient',
    'UdpServer',
    'UdpWorkerClient'
]
