"""
Worker Bridge: message channel to a worker process that owns the socket.

Parent -> worker commands:
    connect{host, port}, close{reason}, queueEncapsulated{packet, immediate}, ping{}
Worker -> parent events:
    connected{}, encapsulated{buffer, address}, pong{payload}, disconnect{reason}

Architecture invariants:
- Two multiprocessing.Queue instances, one per direction; FIFO within a direction only
- Messages are plain dicts with a 'type' key; no shared memory
- The worker runs an inline UdpClient on its own asyncio loop and exits after close{}
  or once that client has disconnected on its own
- The parent polls events from a thread and dispatches them on its loop

Property of Uncompromising Sensors LLC.
"""

import asyncio
import multiprocessing
import queue
from enum import Enum
from typing import Any, Callable, Dict, Optional

from rakbridge.config import TransportConfig
from rakbridge.errors import RakTimeout, TransportError
from rakbridge.logging import configureLogging, getLogger
from .transportBase import CLOSE_GRACE


EVENT_POLL_INTERVAL = 0.1       # seconds per blocking queue read
WORKER_EXIT_TIMEOUT = 2.0       # seconds to wait for the worker to exit before terminating it


class WorkerCommand(str, Enum):
    """Parent -> worker"""
    CONNECT = "connect"
    CLOSE = "close"
    QUEUE_ENCAPSULATED = "queueEncapsulated"
    PING = "ping"


class WorkerEvent(str, Enum):
    """Worker -> parent"""
    CONNECTED = "connected"
    ENCAPSULATED = "encapsulated"
    PONG = "pong"
    DISCONNECT = "disconnect"


def _getMessage(source, timeout: float) -> Optional[Dict[str, Any]]:
    try:
        return source.get(timeout=timeout)
    except queue.Empty:
        return None


class WorkerBridge:
    """
    Parent side of the worker channel.

    Usage:
        bridge = WorkerBridge(config, protocolVersion)
        bridge.onMessage = handleEvent        # called on the event loop with each event dict
        bridge.start()                        # spawns the worker, starts the event reader
        bridge.postMessage({'type': 'connect', 'host': host, 'port': port})
        bridge.stop()                         # non-blocking; the worker is reaped in the background
    """

    def __init__(self, config: TransportConfig, protocolVersion: int, context=None):
        self.config = config
        self.protocolVersion = protocolVersion
        self.log = getLogger()
        self._ctx = context or multiprocessing.get_context('spawn')
        self._commands = self._ctx.Queue()
        self._events = self._ctx.Queue()
        self._process = None
        self._readerTask: Optional[asyncio.Task] = None
        self.running = False
        self._stopped = False
        self.onMessage: Callable[[Dict[str, Any]], None] = lambda message: None

    @property
    def alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def start(self) -> None:
        if self._process is not None:
            return

        self._process = self._ctx.Process(
            target=runWorker,
            args=(self._commands, self._events, self.config.toDict(), self.protocolVersion),
            name=f'rakbridge-worker-{self.config.host}:{self.config.port}',
            daemon=True
        )
        self._process.start()
        self.running = True
        self._readerTask = asyncio.create_task(self._readEvents())
        self.log.info('Worker started', pid=self._process.pid, endpoint=f'{self.config.host}:{self.config.port}')

    def postMessage(self, message: Dict[str, Any]) -> None:
        if not self.running:
            return
        self._commands.put(message)

    def stop(self) -> None:
        """Stop reading events and reap the worker without blocking the caller."""
        if self._stopped or self._process is None:
            return
        self._stopped = True
        self.running = False
        if self._readerTask is not None:
            self._readerTask.cancel()
            self._readerTask = None
        asyncio.get_running_loop().run_in_executor(None, self._reap)

    # ===== Internal Methods =====
    async def _readEvents(self) -> None:
        while self.running:
            event = await asyncio.to_thread(_getMessage, self._events, EVENT_POLL_INTERVAL)
            if event is None:
                if not self.alive:
                    self.log.warning('Worker exited unexpectedly')
                    self.running = False
                    self.onMessage({'type': WorkerEvent.DISCONNECT.value, 'reason': 'Worker exited'})
                    return
                continue
            if not self.running:
                return
            try:
                self.onMessage(event)
            except Exception as e:
                self.log.error(f'Worker event handler error: {e!r}', exc_info=True)
            if event.get('type') == WorkerEvent.DISCONNECT.value:
                return  # The worker exits after reporting its disconnect

    def _reap(self) -> None:
        process = self._process
        if process is None:
            return
        process.join(WORKER_EXIT_TIMEOUT)
        if process.is_alive():
            self.log.warning('Worker did not exit, terminating', pid=process.pid)
            process.terminate()
            process.join(WORKER_EXIT_TIMEOUT)
        self._commands.close()
        self._events.close()


# ===== Worker Process =====
def runWorker(commands, events, configDict: Dict[str, Any], protocolVersion: int) -> None:
    """Worker process entry point."""
    configureLogging()
    config = TransportConfig.fromDict(configDict).replace(useWorkers=False, protocolVersion=protocolVersion)
    asyncio.run(_WorkerLoop(commands, events, config).run())


class _WorkerLoop:
    """Executes bridge commands against an inline UdpClient."""

    def __init__(self, commands, events, config: TransportConfig):
        self.commands = commands
        self.events = events
        self.config = config
        self.log = getLogger()
        self.client = None
        self._pinger = None
        self._tasks = set()
        self._clientClosed = False

    async def run(self) -> None:
        parent = multiprocessing.parent_process()
        while not self._clientClosed:
            command = await asyncio.to_thread(_getMessage, self.commands, EVENT_POLL_INTERVAL)
            if command is None:
                if parent is not None and not parent.is_alive():
                    self.log.warning('Parent process gone, worker exiting')
                    break
                continue

            commandType = command.get('type')
            if commandType == WorkerCommand.CONNECT.value:
                await self._connect(command)
            elif commandType == WorkerCommand.QUEUE_ENCAPSULATED.value:
                if self.client is not None:
                    try:
                        self.client.sendReliable(command['packet'], command.get('immediate', False))
                    except TransportError as e:
                        self.log.warning(f'Dropped packet: {e}')
            elif commandType == WorkerCommand.PING.value:
                self._spawn(self._ping())
            elif commandType == WorkerCommand.CLOSE.value:
                if self.client is not None:
                    self.client.close(command.get('reason'))
                break
            else:
                self.log.warning(f'Unknown worker command: {commandType}')

        if self.client is not None:
            # Let the client's own grace period flush and release
            self.client.close()
            await asyncio.sleep(CLOSE_GRACE * 2)

        for task in self._tasks:
            task.cancel()

    def _post(self, eventType: WorkerEvent, **fields) -> None:
        self.events.put({'type': eventType.value, **fields})

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _newClient(self, config: TransportConfig):
        from .udpTransport import UdpClient
        return UdpClient(config)

    async def _connect(self, command: Dict[str, Any]) -> None:
        if self.client is not None:
            return
        config = self.config.replace(host=command.get('host', self.config.host),
                                     port=command.get('port', self.config.port))
        self.client = self._newClient(config)
        self.client.onConnected = lambda: self._post(WorkerEvent.CONNECTED)
        self.client.onEncapsulated = lambda buffer, address: self._post(WorkerEvent.ENCAPSULATED, buffer=buffer, address=address)
        self.client.onCloseConnection = self._handleClientClosed
        await self.client.connect()

    def _handleClientClosed(self, reason: str) -> None:
        self._clientClosed = True
        self._post(WorkerEvent.DISCONNECT, reason=reason)

    async def _ping(self) -> None:
        if self._pinger is None:
            self._pinger = self.client or self._newClient(self.config)
        try:
            payload = await self._pinger.ping(int(self.config.timeout * 1000))
        except RakTimeout:
            return  # The parent times out on its own
        self._post(WorkerEvent.PONG, payload=payload)
