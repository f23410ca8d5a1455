"""
NNG Transport Adapter Tests (requires pynng)

Tests:
1. Loopback connect, send, echo over Pair1/TCP
2. Discovery ping via the UDP responder on the same port
3. Admission (protocol mismatch, server full) and close semantics

Property of Uncompromising Sensors LLC.
"""

import asyncio
import time

import pytest

pytest.importorskip("pynng")

from unittest.mock import MagicMock

from rakbridge.config import TransportConfig
from rakbridge.transport.advertisement import Advertisement
from rakbridge.transport.nngTransport import NNG_RELIABILITY, NngClient, NngPriority, NngServer
from rakbridge.transport.reliability import ReliabilityClass
from rakbridge.transport.transportBase import CLOSE_GRACE, ClientState
from rakbridge.transport.transportFactory import selectBackend


LOCALHOST = '127.0.0.1'


async def waitUntil(predicate, timeout: float = 3.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError('condition not met in time')
        await asyncio.sleep(0.01)


async def startServer(provider=None, **configFields):
    server = NngServer(TransportConfig(host=LOCALHOST, port=0, **configFields), provider)
    await server.listen()
    return server


class TestNngBackend:
    """Registry and native mapping"""

    def test_registry_selects_native(self):
        assert selectBackend().name == 'nng'

    def test_priority_table(self):
        assert NNG_RELIABILITY.toNative(ReliabilityClass.IMMEDIATE) == NngPriority.URGENT
        assert NNG_RELIABILITY.toNative(ReliabilityClass.RELIABLE_ORDERED) == NngPriority.NORMAL


class TestNngLoopback:
    """Client and server in one loop over tcp://127.0.0.1"""

    @pytest.mark.asyncio
    async def test_connect_send_and_echo(self):
        server = await startServer()
        port = server.localAddress[1]
        serverReceived, clientReceived = [], []

        def onEncapsulated(buffer, address):
            serverReceived.append(buffer)
            server.connections[address.hash].sendReliable(b'echo:' + buffer)

        server.onEncapsulated = onEncapsulated
        server.onOpenConnection = MagicMock()

        client = NngClient(TransportConfig(host=LOCALHOST, port=port))
        client.onEncapsulated = lambda buffer, address: clientReceived.append(buffer)
        await client.connect()
        await waitUntil(lambda: client.connected)

        server.onOpenConnection.assert_called_once()
        handle = server.onOpenConnection.call_args[0][0]
        assert handle.address.host == LOCALHOST

        for i in range(10):
            client.sendReliable(f'msg{i}'.encode(), immediate=(i % 2 == 0))
        await waitUntil(lambda: len(clientReceived) == 10)

        assert serverReceived == [f'msg{i}'.encode() for i in range(10)]
        assert clientReceived == [f'echo:msg{i}'.encode() for i in range(10)]

        client.close()
        await waitUntil(lambda: server.connections == {})
        server.close()
        await asyncio.sleep(CLOSE_GRACE * 3)

    @pytest.mark.asyncio
    async def test_ping_uses_discovery_port(self):
        server = await startServer(provider=lambda: Advertisement(motd='Native'))
        client = NngClient(TransportConfig(host=LOCALHOST, port=server.localAddress[1]))

        assert await client.ping(1000) == server.advertisement.toString()

        server.close()
        await asyncio.sleep(CLOSE_GRACE * 2)

    @pytest.mark.asyncio
    async def test_incompatible_protocol(self):
        server = await startServer()
        reasons = []
        client = NngClient(TransportConfig(host=LOCALHOST, port=server.localAddress[1], protocolVersion=11))
        client.onCloseConnection = reasons.append

        await client.connect()
        await waitUntil(lambda: reasons)

        assert 'Incompatible protocol' in reasons[0]
        assert server.connections == {}
        server.close()
        await asyncio.sleep(CLOSE_GRACE * 3)

    @pytest.mark.asyncio
    async def test_server_full(self):
        server = await startServer(maxConnections=1)
        port = server.localAddress[1]

        first = NngClient(TransportConfig(host=LOCALHOST, port=port))
        await first.connect()
        await waitUntil(lambda: first.connected)

        reasons = []
        second = NngClient(TransportConfig(host=LOCALHOST, port=port))
        second.onCloseConnection = reasons.append
        await second.connect()
        await waitUntil(lambda: reasons)

        assert reasons[0] == 'Server is full'
        assert len(server.connections) == 1
        first.close()
        server.close()
        await asyncio.sleep(CLOSE_GRACE * 3)

    @pytest.mark.asyncio
    async def test_server_close_disconnects_client(self):
        server = await startServer()
        onClose = MagicMock()
        server.onClose = onClose

        client = NngClient(TransportConfig(host=LOCALHOST, port=server.localAddress[1]))
        client.onCloseConnection = MagicMock()
        await client.connect()
        await waitUntil(lambda: client.connected)

        server.close()
        await waitUntil(lambda: client.state == ClientState.CLOSED)
        await asyncio.sleep(CLOSE_GRACE * 3)

        onClose.assert_called_once()
        client.onCloseConnection.assert_called_once()
