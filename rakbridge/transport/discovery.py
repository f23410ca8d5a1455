"""
Discovery: unconnected ping/pong over UDP.

Clients of every backend ping a server's UDP port and receive its current advertisement.
The udp backend answers on its session socket; the nng backend runs an AdvertisementResponder
on the UDP port with the same number as its TCP listener.

Property of Uncompromising Sensors LLC.
"""

import asyncio
from typing import Optional, Tuple

from rakbridge.logging import getLogger
from . import wire
from .timeouts import Resolve


PING_RESEND_INTERVAL = 0.25     # seconds between ping retransmissions while waiting

log = getLogger()


def buildPong(server, pingId: int) -> bytes:
    """Pong for `server` (a ServerTransport) carrying its current advertisement."""
    return wire.encodePong(pingId, server.serverId, server.advertisement.toBuffer())


class _PingProtocol(asyncio.DatagramProtocol):
    """Accepts the first pong that echoes our ping id; socket errors resolve as failure."""

    def __init__(self, pingId: int, resolve: Resolve):
        self.pingId = pingId
        self.resolve = resolve

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        try:
            if wire.packetId(data) != wire.PacketId.UNCONNECTED_PONG:
                return
            pong = wire.decodePong(data)
        except wire.WireError as e:
            log.debug(f'Discarded malformed pong: {e}', peer=f'{addr[0]}/{addr[1]}')
            return

        # Stale pong from an earlier ping
        if pong.pingId != self.pingId:
            return
        self.resolve(pong.advertisement)

    def error_received(self, exc):
        log.debug(f'Ping socket error: {exc!r}')
        self.resolve(None)


async def pingAdvertisement(host: str, port: int, pingId: int, resolve: Resolve) -> None:
    """Send unconnected pings to host:port until cancelled; resolve(advertisement) or resolve(None)."""
    loop = asyncio.get_running_loop()
    try:
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _PingProtocol(pingId, resolve),
            remote_addr=(host, port)
        )
    except OSError as e:
        log.debug(f'Ping endpoint failed: {e}', peer=f'{host}/{port}')
        resolve(None)
        return

    try:
        ping = wire.encodePing(pingId)
        while True:
            transport.sendto(ping)
            await asyncio.sleep(PING_RESEND_INTERVAL)
    finally:
        transport.close()


class AdvertisementResponder(asyncio.DatagramProtocol):
    """Answers unconnected pings on behalf of a server that has no UDP session socket."""

    def __init__(self, server):
        self._server = server
        self._transport: Optional[asyncio.DatagramTransport] = None

    def connection_made(self, transport):
        self._transport = transport

    def datagram_received(self, data: bytes, addr: Tuple[str, int]):
        try:
            if wire.packetId(data) != wire.PacketId.UNCONNECTED_PING:
                return
            pingId = wire.decodePing(data)
        except wire.WireError:
            return
        self._transport.sendto(buildPong(self._server, pingId), addr)

    def error_received(self, exc):
        pass
