"""
TransportConfig: Immutable per-session settings shared by every backend.

Fields:
    host, port          Remote address (client) or bind address (server)
    protocolVersion     Explicit protocol id override (None = derive from consumer version)
    maxConnections      Server admission limit (default: DEFAULT_MAX_CONNECTIONS)
    timeout             Handshake / idle timeout in seconds
    backend             Backend identifier ('nng', 'udp') or None for default selection
    useWorkers          Offload socket I/O to a worker process where the backend supports it

Property of Uncompromising Sensors LLC.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import orjson

from rakbridge.errors import ConfigError


DEFAULT_HOST = '0.0.0.0'
DEFAULT_PORT = 19132
DEFAULT_MAX_CONNECTIONS = 3
DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class TransportConfig:
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    protocolVersion: Optional[int] = None
    maxConnections: int = DEFAULT_MAX_CONNECTIONS
    timeout: float = DEFAULT_TIMEOUT
    backend: Optional[str] = None
    useWorkers: bool = False

    def __post_init__(self):
        if not isinstance(self.host, str) or not self.host:
            raise ConfigError(f"host must be a non-empty string, got {self.host!r}")
        if not isinstance(self.port, int) or isinstance(self.port, bool) or not 0 <= self.port <= 65535:
            raise ConfigError(f"port must be an integer in [0, 65535], got {self.port!r}")
        if self.protocolVersion is not None and not (isinstance(self.protocolVersion, int) and 0 <= self.protocolVersion <= 255):
            raise ConfigError(f"protocolVersion must fit in one byte, got {self.protocolVersion!r}")
        if not isinstance(self.maxConnections, int) or self.maxConnections < 1:
            raise ConfigError(f"maxConnections must be a positive integer, got {self.maxConnections!r}")
        if not isinstance(self.timeout, (int, float)) or self.timeout <= 0:
            raise ConfigError(f"timeout must be a positive number of seconds, got {self.timeout!r}")
        if self.backend is not None:
            if not isinstance(self.backend, str):
                raise ConfigError(f"backend must be a string, got {self.backend!r}")
            object.__setattr__(self, 'backend', self.backend.lower())

    @classmethod
    def fromDict(cls, data: Dict[str, Any]) -> 'TransportConfig':
        """Create from dict, rejecting unknown keys"""
        if not isinstance(data, dict):
            raise ConfigError('transport config is not a JSON object')
        validKeys = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data.keys()) - validKeys
        if unknown:
            raise ConfigError(f"Unknown transport config keys: {sorted(unknown)}. Valid keys: {sorted(validKeys)}")
        return cls(**data)

    def toDict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def replace(self, **changes) -> 'TransportConfig':
        return dataclasses.replace(self, **changes)


def loadTransportConfig(path: str | Path) -> TransportConfig:
    """Load a TransportConfig from a JSON file."""
    cfgPath = Path(path)
    try:
        data = orjson.loads(cfgPath.read_bytes())
    except (OSError, orjson.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read transport config '{cfgPath}': {e}") from e
    return TransportConfig.fromDict(data)
