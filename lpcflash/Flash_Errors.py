"""
Flash Errors
============
Exception hierarchy shared by the hex parser, the SDO client, the CAN
transports and the LPC flasher.
"""

from typing import Optional


class FlashError(Exception):
    """Base class for every error raised while preparing or flashing a device"""


# ============================================================================
# Hex File Errors
# ============================================================================

class HexFormatError(FlashError):
    """Malformed Intel HEX input"""

    def __init__(self, message: str, line_number: Optional[int] = None):
        self.line_number = line_number
        if line_number is not None:
            message = f"{message} in line {line_number}"
        super().__init__(message)


class HexChecksumError(HexFormatError):
    """Record checksum does not sum to zero"""

    def __init__(self, line_number: int):
        super().__init__("invalid checksum", line_number)


# ============================================================================
# SDO Errors
# ============================================================================

class SDOError(FlashError):
    """Base class for CANopen SDO failures"""


class SDOProtocolError(SDOError):
    """Response frame violates the SDO protocol"""


class SDOUnexpectedResponseError(SDOProtocolError):
    """First response byte does not match the expected command code"""

    def __init__(self, expected: int, actual: int, message: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        if message is None:
            message = f"sdo_transmit: not expected answer (is: 0x{actual:02X}, expected: 0x{expected:02X})"
        super().__init__(message)


class SDOAbortError(SDOUnexpectedResponseError):
    """Server answered with an SDO abort transfer frame"""

    def __init__(self, expected: int, index: int, subindex: int, abort_code: int, description: str):
        self.index = index
        self.subindex = subindex
        self.abort_code = abort_code
        self.description = description
        super().__init__(
            expected, 0x80,
            f"SDO abort 0x{abort_code:08X} on 0x{index:04X}/0x{subindex:02X}: {description}"
        )


class SDOTimeoutError(SDOError, TimeoutError):
    """No response arrived within the request timeout"""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"sdo_transmit: timeout ({timeout * 1000:.0f} ms)")


class FlashVerifyError(SDOProtocolError):
    """Device reported a RAM/flash mismatch after programming a sector"""

    def __init__(self, sector: int, abort_code: Optional[int] = None):
        self.sector = sector
        self.abort_code = abort_code
        message = f"Verification failed for sector {sector}"
        if abort_code is not None:
            message += f" (abort 0x{abort_code:08X})"
        super().__init__(message)


# ============================================================================
# Transport Errors
# ============================================================================

class TransportError(FlashError):
    """Connect, open, close or send failure reported by a CAN transport"""
