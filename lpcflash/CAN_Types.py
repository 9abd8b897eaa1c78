"""
CAN Types
=========
Frame, filter and channel-mode types shared by the CAN transports and the
SDO client.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, List


class OpenMode(Enum):
    """CAN channel modes"""
    ACTIVE = "active"
    LISTEN_ONLY = "listen_only"


class CANBaudRate(Enum):
    """Standard CAN baud rates"""
    BAUD_1M = 1000000
    BAUD_800K = 800000
    BAUD_500K = 500000
    BAUD_250K = 250000
    BAUD_125K = 125000
    BAUD_100K = 100000
    BAUD_50K = 50000
    BAUD_20K = 20000
    BAUD_10K = 10000


@dataclass
class CANMessage:
    """
    Represents a CAN message with all relevant information.
    """
    id: int
    data: bytes
    timestamp: float = 0.0
    is_extended: bool = False
    is_remote: bool = False
    dlc: int = 0

    def __post_init__(self):
        self.data = bytes(self.data)
        if len(self.data) > 8:
            raise ValueError(f"CAN frame carries at most 8 data bytes, got {len(self.data)}")
        if self.dlc == 0:
            self.dlc = len(self.data)

    def __str__(self):
        data_hex = ' '.join(f'{b:02X}' for b in self.data)
        return f"ID=0x{self.id:03X}, Data=[{data_hex}]"


@dataclass(frozen=True)
class FilterRule:
    """Acceptance rule: a frame passes when (id & mask) == (accept_id & mask)"""
    mask: int
    accept_id: int
    extended: bool = False

    def matches(self, msg: CANMessage) -> bool:
        if msg.is_extended != self.extended:
            return False
        return (msg.id & self.mask) == (self.accept_id & self.mask)


def accepts(rules: List[FilterRule], msg: CANMessage) -> bool:
    """True when no rules are installed or at least one rule matches"""
    return not rules or any(rule.matches(msg) for rule in rules)


MessageCallback = Callable[[CANMessage], None]
