"""
TransportFactory: Selects backend pairs by identifier.
Purpose: Central registry of loader callables for every backend, with fallback to the pure-software one.
Usage: selectBackend(identifier=None, fallback=False) -> BackendPair | None

Property of Uncompromising Sensors LLC.
"""


# Imports
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Type

# Local imports
from rakbridge.config import TransportConfig
from rakbridge.errors import BackendUnavailable
from rakbridge.logging import getLogger
from .transportBase import ClientTransport, RakTimeout, ServerTransport


DEFAULT_BACKEND = 'nng'         # preferred native backend
FALLBACK_BACKEND = 'udp'        # pure software, always loadable

log = getLogger()


@dataclass(frozen=True)
class BackendPair:
    """What a backend hands the consumer: adapter constructors plus its timeout error kind."""
    name: str
    client: Callable[..., ClientTransport]
    server: Callable[..., ServerTransport]
    timeoutError: Type[Exception] = RakTimeout

    def createClient(self, config: TransportConfig, versionAtLeast=None) -> ClientTransport:
        return self.client(config, versionAtLeast)

    def createServer(self, config: TransportConfig, advertisementProvider=None, versionAtLeast=None) -> ServerTransport:
        return self.server(config, advertisementProvider, versionAtLeast)


# Class
class BackendRegistry:
    """BackendRegistry() -> registry for backend identifier -> loader"""

    def __init__(self, default: str = DEFAULT_BACKEND, fallback: str = FALLBACK_BACKEND):
        self._loaders: Dict[str, Callable[[], BackendPair]] = {}
        self.default = default
        self.fallback = fallback

    def register(self, identifier: str, loader: Callable[[], BackendPair]) -> None:
        if not callable(loader):
            raise TypeError(f"Loader {loader!r} for backend '{identifier}' must be callable")
        self._loaders[identifier.lower()] = loader

    def identifiers(self) -> list:
        return list(self._loaders.keys())

    def load(self, identifier: str) -> BackendPair:
        """Run one loader; KeyError if unknown, BackendUnavailable if it cannot load."""
        return self._loaders[identifier.lower()]()

    def select(self, identifier: Optional[str] = None, fallback: bool = False) -> Optional[BackendPair]:

        # Explicit request, no fallback: unknown is None, unloadable propagates
        if identifier is not None and not fallback:
            if identifier.lower() not in self._loaders:
                log.debug(f"No backend registered for '{identifier}'", available=', '.join(self.identifiers()) or 'none')
                return None
            return self.load(identifier)

        preferred = (identifier or self.default).lower()
        if preferred not in self._loaders:
            log.warning(f"Unknown backend '{preferred}', falling back to '{self.fallback}'")
        else:
            try:
                return self.load(preferred)
            except BackendUnavailable as e:
                log.warning(f"Backend '{preferred}' unavailable, falling back to '{self.fallback}': {e.reason}")
        return self.load(self.fallback)


# ===== Default Loaders =====
def _loadNng() -> BackendPair:
    from .nngTransport import NngClient, NngServer, loadPynng
    loadPynng()
    return BackendPair('nng', NngClient, NngServer)


def _udpClient(config: TransportConfig, versionAtLeast=None) -> ClientTransport:
    if config.useWorkers:
        from .workerTransport import UdpWorkerClient
        return UdpWorkerClient(config, versionAtLeast)
    from .udpTransport import UdpClient
    return UdpClient(config, versionAtLeast)


def _loadUdp() -> BackendPair:
    from .udpTransport import UdpServer
    return BackendPair('udp', _udpClient, UdpServer)


# Global default registry (can be replaced/injected for testing)
_defaultRegistry = BackendRegistry()
_defaultRegistry.register('nng', _loadNng)
_defaultRegistry.register('udp', _loadUdp)


def registerBackend(identifier: str, loader: Callable[[], BackendPair]) -> None:
    _defaultRegistry.register(identifier, loader)


def selectBackend(identifier: Optional[str] = None, fallback: bool = False,
                  registry: Optional[BackendRegistry] = None) -> Optional[BackendPair]:
    return (registry or _defaultRegistry).select(identifier, fallback)


def getDefaultRegistry() -> BackendRegistry:
    return _defaultRegistry
