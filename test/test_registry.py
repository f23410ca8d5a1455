"""
Backend Registry Tests

Tests:
1. Explicit selection (known, unknown, unloadable)
2. Default selection falls back to the pure-software backend and never raises
3. udp client factory honors useWorkers

Property of Uncompromising Sensors LLC.
"""

import pytest
from unittest.mock import MagicMock

from rakbridge.config import TransportConfig
from rakbridge.errors import BackendUnavailable, RakTimeout
from rakbridge.transport import transportFactory
from rakbridge.transport.transportFactory import BackendPair, BackendRegistry, getDefaultRegistry, selectBackend
from rakbridge.transport.udpTransport import UdpClient, UdpServer
from rakbridge.transport.workerTransport import UdpWorkerClient


def _unavailable():
    raise BackendUnavailable('nng', 'pynng not installed')


def _fakePair(name):
    return lambda: BackendPair(name, MagicMock(name=f'{name}Client'), MagicMock(name=f'{name}Server'))


@pytest.fixture
def registry():
    reg = BackendRegistry()
    reg.register('nng', _fakePair('nng'))
    reg.register('udp', _fakePair('udp'))
    return reg


@pytest.fixture
def mock_log(monkeypatch):
    log = MagicMock()
    monkeypatch.setattr(transportFactory, 'log', log)
    return log


class TestExplicitSelection:
    """select(identifier) without fallback"""

    def test_known_identifier(self, registry):
        assert registry.select('nng').name == 'nng'
        assert registry.select('UDP').name == 'udp'

    def test_unknown_identifier_returns_none(self, registry):
        assert registry.select('raknet-native') is None

    def test_unloadable_identifier_propagates(self, registry):
        """Explicitly asking for a broken backend is the caller's error"""
        registry.register('nng', _unavailable)
        with pytest.raises(BackendUnavailable):
            registry.select('nng')

    def test_non_callable_loader_rejected(self, registry):
        with pytest.raises(TypeError):
            registry.register('bad', 'not a loader')

    def test_identifiers(self, registry):
        assert set(registry.identifiers()) == {'nng', 'udp'}

    def test_default_timeout_error(self, registry):
        assert registry.select('udp').timeoutError is RakTimeout


class TestFallbackSelection:
    """Default and fallback=True selection"""

    def test_default_prefers_native(self, registry, mock_log):
        assert registry.select().name == 'nng'
        mock_log.warning.assert_not_called()

    def test_default_falls_back_with_warning(self, registry, mock_log):
        registry.register('nng', _unavailable)

        pair = registry.select()

        assert pair.name == 'udp'
        mock_log.warning.assert_called_once()
        assert "falling back to 'udp'" in mock_log.warning.call_args[0][0]

    def test_fallback_for_unknown_identifier(self, registry, mock_log):
        assert registry.select('raknet-native', fallback=True).name == 'udp'
        mock_log.warning.assert_called_once()

    def test_fallback_for_unloadable_identifier(self, registry, mock_log):
        registry.register('nng', _unavailable)
        assert registry.select('nng', fallback=True).name == 'udp'

    def test_fallback_with_loadable_identifier(self, registry, mock_log):
        assert registry.select('nng', fallback=True).name == 'nng'


class TestDefaultRegistry:
    """Module-level registry with the shipped backends"""

    def test_shipped_identifiers(self):
        assert {'nng', 'udp'} <= set(getDefaultRegistry().identifiers())

    def test_default_selection_never_raises(self):
        """Works whether or not pynng is installed"""
        pair = selectBackend()
        assert pair.name in ('nng', 'udp')

    def test_udp_pair(self):
        pair = selectBackend('udp')
        config = TransportConfig(host='127.0.0.1', port=19132)

        assert isinstance(pair.createClient(config), UdpClient)
        assert isinstance(pair.createServer(config), UdpServer)

    def test_udp_pair_with_workers(self):
        pair = selectBackend('udp')
        client = pair.createClient(TransportConfig(host='127.0.0.1', port=19132, useWorkers=True))
        assert isinstance(client, UdpWorkerClient)

    def test_register_custom_backend(self):
        transportFactory.registerBackend('loopback-test', _fakePair('loopback-test'))
        assert selectBackend('loopback-test').name == 'loopback-test'
