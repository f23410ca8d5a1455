"""
Command-line Entry Point Tests

Property of Uncompromising Sensors LLC.
"""

import socket

import orjson
import pytest

from rakbridge import main as cli


@pytest.fixture
def silentPort():
    """A bound UDP socket that never answers"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(('127.0.0.1', 0))
    yield sock.getsockname()[1]
    sock.close()


class TestPingCommand:
    """rakbridge ping exit codes"""

    def test_timeout_exit_code(self, silentPort, capsys):
        code = cli.main(['ping', '127.0.0.1', str(silentPort), '--backend', 'udp', '--timeout', '200'])
        assert code == 2
        assert capsys.readouterr().out.strip() == 'timed out'

    def test_unknown_backend_exits(self):
        with pytest.raises(SystemExit) as exc:
            cli.main(['ping', '127.0.0.1', '--backend', 'carrier-pigeon'])
        assert exc.value.code == 1


class TestServeConfig:
    """Config file first, flags override"""

    def test_defaults(self):
        args = cli.buildParser().parse_args(['serve'])
        config = cli.serveConfig(args)
        assert config.port == 19132
        assert config.maxConnections == 3

    def test_file_then_flags(self, tmp_path):
        path = tmp_path / 'transport.json'
        path.write_bytes(orjson.dumps({'host': '127.0.0.1', 'port': 19150, 'maxConnections': 4}))

        args = cli.buildParser().parse_args(['serve', '--config', str(path), '--port', '19151', '--backend', 'UDP'])
        config = cli.serveConfig(args)

        assert config.host == '127.0.0.1'
        assert config.port == 19151
        assert config.maxConnections == 4
        assert config.backend == 'udp'

    def test_invalid_config_returns_error(self, tmp_path):
        path = tmp_path / 'bad.json'
        path.write_bytes(orjson.dumps({'port': 'not a port'}))
        assert cli.main(['serve', '--config', str(path)]) == 1
