"""
rakbridge command-line entry point.

Commands:
    ping HOST [PORT]    Print a server's advertisement string
    serve               Run an echo server: every payload goes back to its sender

Usage:
    rakbridge ping 127.0.0.1 19132 --timeout 500
    rakbridge serve --port 19132 --motd "Hello" [--backend udp] [--config transport.json]

Exit codes (ping): 0 answered, 1 no response, 2 timed out.

Property of Uncompromising Sensors LLC.
"""

import argparse
import asyncio
import signal
import sys
from typing import Optional

from rakbridge.config import DEFAULT_PORT, TransportConfig, loadTransportConfig
from rakbridge.errors import BackendUnavailable, ConfigError
from rakbridge.logging import configureLogging, getLogger
from rakbridge.transport import CLOSE_GRACE, Advertisement, BackendPair, selectBackend


def _selectOrExit(identifier: Optional[str]) -> BackendPair:
    log = getLogger()
    try:
        backend = selectBackend(identifier)
    except BackendUnavailable as e:
        log.error(str(e))
        sys.exit(1)
    if backend is None:
        log.error(f"Unknown backend '{identifier}'")
        sys.exit(1)
    return backend


async def runPing(backend: BackendPair, host: str, port: int, timeoutMs: int) -> int:
    """Ping once; returns the process exit code."""
    client = backend.createClient(TransportConfig(host=host, port=port, backend=backend.name))
    try:
        advertisement = await client.ping(timeoutMs)
    except backend.timeoutError:
        print('timed out')
        return 2
    finally:
        client.close()

    if advertisement is None:
        print('no response')
        return 1
    print(advertisement)
    return 0


async def runServe(backend: BackendPair, config: TransportConfig, motd: str) -> None:
    """Echo server until SIGINT/SIGTERM."""
    log = getLogger()
    server = None

    def advertise() -> Advertisement:
        online = len(server.connections) if server is not None else 0
        return Advertisement(motd=motd, playersOnline=online, playersMax=config.maxConnections,
                             portV4=config.port)

    server = backend.createServer(config, advertise)

    def onOpenConnection(handle):
        log.info('Client connected', peer=handle.identifier)
        server.updateAdvertisement()

    def onCloseConnection(handle):
        log.info('Client disconnected', peer=handle.identifier)
        server.updateAdvertisement()

    def onEncapsulated(buffer: bytes, address):
        handle = server.connections.get(address.hash)
        if handle is not None:
            handle.sendReliable(buffer)

    server.onOpenConnection = onOpenConnection
    server.onCloseConnection = onCloseConnection
    server.onEncapsulated = onEncapsulated

    stopEvent = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stopEvent.set)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt still ends asyncio.run

    await server.listen()
    log.info(f'Serving on {config.host}:{config.port} via {backend.name} (Ctrl+C to stop)')
    try:
        await stopEvent.wait()
        log.info('Shutdown signal received')
    finally:
        server.close('Server shutting down')
        await asyncio.sleep(CLOSE_GRACE * 2)
        log.info('Server stopped')


def buildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='rakbridge', description='RakNet-style transport adapter tools')
    parser.add_argument('--log-level', default='INFO', help='Minimum log level (default: INFO)')
    parser.add_argument('--log-dir', default=None, help='Also write rotating log files here')
    sub = parser.add_subparsers(dest='command', required=True)

    ping = sub.add_parser('ping', help="Print a server's advertisement")
    ping.add_argument('host')
    ping.add_argument('port', nargs='?', type=int, default=DEFAULT_PORT)
    ping.add_argument('--backend', default=None, help='Backend identifier (default: nng, falling back to udp)')
    ping.add_argument('--timeout', type=int, default=1000, help='Timeout in milliseconds (default: 1000)')

    serve = sub.add_parser('serve', help='Run an echo server')
    serve.add_argument('--config', default=None, help='TransportConfig JSON file')
    serve.add_argument('--host', default=None)
    serve.add_argument('--port', type=int, default=None)
    serve.add_argument('--backend', default=None)
    serve.add_argument('--motd', default='rakbridge')
    serve.add_argument('--max-connections', type=int, default=None)
    return parser


def serveConfig(args: argparse.Namespace) -> TransportConfig:
    """Config file (if any) first, then command-line overrides."""
    config = loadTransportConfig(args.config) if args.config else TransportConfig()
    overrides = {'host': args.host, 'port': args.port, 'backend': args.backend,
                 'maxConnections': args.max_connections}
    return config.replace(**{key: value for key, value in overrides.items() if value is not None})


def main(argv=None) -> int:
    """Main entry point"""
    parser = buildParser()
    args = parser.parse_args(argv)

    configureLogging(logDir=args.log_dir, level=args.log_level)
    log = getLogger()

    if args.command == 'ping':
        backend = _selectOrExit(args.backend)
        return asyncio.run(runPing(backend, args.host, args.port, args.timeout))

    try:
        config = serveConfig(args)
    except ConfigError as e:
        log.error(f'Invalid configuration: {e}')
        return 1

    try:
        asyncio.run(runServe(_selectOrExit(config.backend), config, args.motd))
    except KeyboardInterrupt:
        log.info('Shutdown signal received')
    return 0


if __name__ == '__main__':
    sys.exit(main())
