"""
Server advertisement (discovery metadata) and protocol-version gating.

Advertisement is a full snapshot produced by the consumer; servers take one at construction
and replace it wholesale on updateAdvertisement(). playersMax is also the admission limit;
left as None, the server fills in its configured maxConnections. It is rendered as the semicolon-separated
discovery string returned to unconnected pings.

Property of Uncompromising Sensors LLC.
"""

from dataclasses import dataclass
from typing import Callable, Optional


PROTOCOL_VERSION_THRESHOLD = '1.19.30'
LEGACY_PROTOCOL = 10
CURRENT_PROTOCOL = 11


def selectProtocolVersion(versionAtLeast: Optional[Callable[[str], bool]] = None,
                          override: Optional[int] = None) -> int:
    """
    Pick the wire protocol id for a consumer.

    Args:
        versionAtLeast: Consumer's comparator, versionAtLeast('1.19.30') -> bool
        override: Explicit protocol id (TransportConfig.protocolVersion) that wins when set
    """
    if override is not None:
        return override
    if versionAtLeast is not None and versionAtLeast(PROTOCOL_VERSION_THRESHOLD):
        return CURRENT_PROTOCOL
    return LEGACY_PROTOCOL


@dataclass
class Advertisement:
    motd: str = 'rakbridge'
    levelName: str = 'world'
    serverId: int = 0
    version: str = '1.21.50'
    protocol: int = 766
    playersOnline: int = 0
    playersMax: Optional[int] = None
    gamemode: str = 'Creative'
    gamemodeId: int = 1
    portV4: int = 19132
    portV6: int = 19133
    header: str = 'MCPE'

    def toString(self) -> str:
        return ';'.join(str(part) for part in (
            self.header, self.motd, self.protocol, self.version, self.playersOnline,
            self.playersMax, self.serverId, self.levelName, self.gamemode, self.gamemodeId,
            self.portV4, self.portV6)) + ';'

    def toBuffer(self) -> bytes:
        return self.toString().encode('utf-8')


AdvertisementProvider = Callable[[], Advertisement]
