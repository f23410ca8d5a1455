"""
Transport error taxonomy.

    TransportError          Base for everything raised by rakbridge
    RakTimeout              ping() exceeded its deadline (raised to the caller)
    BackendUnavailable      A backend failed to load (recovered by fallback selection)
    ConfigError             Invalid transport configuration
    PayloadTooLarge         sendReliable() payload does not fit in one udp datagram

Ping failures and refused connections are not errors at this layer: ping() returns None.
"""


class TransportError(Exception):
    """Base transport error"""
    pass


class RakTimeout(TransportError, TimeoutError):
    """Ping timed out"""
    pass


class BackendUnavailable(TransportError):
    """Backend library could not be loaded"""

    def __init__(self, backend: str, reason: str = ''):
        self.backend = backend
        self.reason = reason
        super().__init__(f"Backend '{backend}' unavailable" + (f": {reason}" if reason else ''))


class ConfigError(TransportError, ValueError):
    """Invalid transport configuration"""
    pass


class PayloadTooLarge(TransportError, ValueError):
    """Payload exceeds what one datagram can carry"""

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload of {size} bytes exceeds the {limit} byte datagram limit")
