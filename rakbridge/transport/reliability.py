"""
Reliability/priority mapping between the contract boundary and backend-native codes.

Only two classes are observable to consumers:
    IMMEDIATE          Bypass the backend's send queue / flush now
    RELIABLE_ORDERED   Normal reliable, ordered delivery

Each backend declares a ReliabilityMapper with its own native code for both classes.
"""

from enum import Enum
from typing import Generic, Mapping, TypeVar


NativeCode = TypeVar('NativeCode')


class ReliabilityClass(str, Enum):
    IMMEDIATE = "immediate"
    RELIABLE_ORDERED = "reliableOrdered"


def reliabilityFor(immediate: bool) -> ReliabilityClass:
    return ReliabilityClass.IMMEDIATE if immediate else ReliabilityClass.RELIABLE_ORDERED


class ReliabilityMapper(Generic[NativeCode]):
    """ReliabilityMapper({ReliabilityClass: nativeCode}) -> maps contract classes to native codes"""

    def __init__(self, table: Mapping[ReliabilityClass, NativeCode]):
        missing = set(ReliabilityClass) - set(table.keys())
        if missing:
            raise ValueError(f"Reliability table missing classes: {sorted(m.value for m in missing)}")
        self._table = dict(table)

    def toNative(self, reliability: ReliabilityClass) -> NativeCode:
        return self._table[reliability]

    def forImmediate(self, immediate: bool) -> NativeCode:
        return self._table[reliabilityFor(immediate)]
