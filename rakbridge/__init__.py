"""rakbridge - Transport adapter layer for RakNet-style game servers and clients

Contains:
    - transport: Backend registry, client/server adapters (nng, udp), worker bridge
    - config: TransportConfig and JSON config loading
    - logging: Hierarchical structured logging
"""

__version__ = "1.0-beta"
