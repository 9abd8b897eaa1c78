"""
CANopen SDO Client
==================
Service Data Object client for the LPC11Cxx CAN boot ROM. Implements
expedited upload/download, segmented download and segmented upload over a
CAN frame transport, with exactly one request in flight at a time.

The transport delivers frames asynchronously through on_frame(); the
requesting thread waits on a single-slot channel (lock + condition) bounded
by the response timeout.
"""

import struct
import threading
import time
from typing import Dict, Optional

from .CAN_Types import CANMessage
from .Flash_Errors import (
    SDOAbortError,
    SDOProtocolError,
    SDOTimeoutError,
    SDOUnexpectedResponseError,
)


# ============================================================================
# SDO Protocol Constants
# ============================================================================

# CAN IDs - 11-bit, boot ROM node 0x7D
SDO_REQUEST_ID = 0x67D       # Client -> server (0x600 + node)
SDO_RESPONSE_ID = 0x5FD      # Server -> client (0x580 + node)

# Client command specifiers
CMD_UPLOAD_INITIATE = 0x40
CMD_UPLOAD_SEGMENT = 0x60
CMD_DOWNLOAD_SEGMENTED = 0x21    # Initiate download, size indicated
EXPEDITED_DOWNLOAD_COMMANDS = {
    1: 0x2F,
    2: 0x2B,
    4: 0x23,
}
CMD_DOWNLOAD_EXPEDITED_UNSPECIFIED = 0x22

# Server responses
RESP_UPLOAD_EXPEDITED = 0x43
RESP_UPLOAD_INITIATE = 0x40      # Matched against the upper 3 bits
RESP_DOWNLOAD_ACK = 0x60
RESP_SEGMENT_ACK = 0x20
RESP_SEGMENT_ACK_TOGGLED = 0x30
RESP_ABORT = 0x80

TOGGLE_BIT = 0x10
SEGMENT_SIZE = 7
FRAME_SIZE = 8

# Timing
RESPONSE_TIMEOUT = 1.0       # seconds
WAIT_TICK = 0.05             # re-check interval while waiting


# ============================================================================
# Abort Code Descriptions
# ============================================================================

ABORT_DESCRIPTIONS: Dict[int, str] = {
    0x05030000: "Toggle bit not alternated",
    0x05040000: "SDO protocol timed out",
    0x05040001: "Client/server command specifier not valid or unknown",
    0x05040005: "Out of memory",
    0x06010000: "Unsupported access to an object",
    0x06010001: "Attempt to read a write only object",
    0x06010002: "Attempt to write a read only object",
    0x06020000: "Object does not exist in the object dictionary",
    0x06040043: "General parameter incompatibility",
    0x06060000: "Access failed due to a hardware error",
    0x06070010: "Data type does not match, length of service parameter does not match",
    0x06090011: "Sub-index does not exist",
    0x06090030: "Invalid value for parameter",
    0x08000000: "General error",
    0x08000020: "Data cannot be transferred or stored to the application",
    0x08000022: "Data cannot be transferred because of the present device state",
}

# LPC11Cxx boot ROM reports ISP status codes as 0x0F0000xx
ISP_STATUS_DESCRIPTIONS: Dict[int, str] = {
    0x01: "INVALID_COMMAND",
    0x02: "SRC_ADDR_ERROR",
    0x03: "DST_ADDR_ERROR",
    0x04: "SRC_ADDR_NOT_MAPPED",
    0x05: "DST_ADDR_NOT_MAPPED",
    0x06: "COUNT_ERROR",
    0x07: "INVALID_SECTOR",
    0x08: "SECTOR_NOT_BLANK",
    0x09: "SECTOR_NOT_PREPARED_FOR_WRITE_OPERATION",
    0x0A: "COMPARE_ERROR",
    0x0B: "BUSY",
    0x0C: "PARAM_ERROR",
    0x0D: "ADDR_ERROR",
    0x0E: "ADDR_NOT_MAPPED",
    0x0F: "CMD_LOCKED",
    0x10: "INVALID_CODE",
    0x11: "INVALID_BAUD_RATE",
    0x12: "INVALID_STOP_BIT",
    0x13: "CODE_READ_PROTECTION_ENABLED",
}
ISP_ABORT_BASE = 0x0F000000
ABORT_COMPARE_ERROR = ISP_ABORT_BASE | 0x0A


def describe_abort(abort_code: int) -> str:
    """Human readable text for an SDO abort code"""
    if abort_code in ABORT_DESCRIPTIONS:
        return ABORT_DESCRIPTIONS[abort_code]
    if abort_code & 0xFFFFFF00 == ISP_ABORT_BASE:
        status = abort_code & 0xFF
        return f"ISP {ISP_STATUS_DESCRIPTIONS.get(status, f'status {status}')}"
    return "Unknown abort code"


def segment_command(remaining: int, toggle: bool) -> int:
    """
    Command byte of a download segment.

    0x00 while more than 7 bytes remain, otherwise the last-segment flag
    with the number of unused bytes in bits 1..3.
    """
    if remaining > SEGMENT_SIZE:
        command = 0x00
    else:
        command = ((SEGMENT_SIZE - remaining) << 1) | 0x01
    if toggle:
        command |= TOGGLE_BIT
    return command


# ============================================================================
# SDO Client
# ============================================================================

class SDOClient:
    """
    Single-outstanding-request SDO client over a CAN frame transport.
    """

    def __init__(self, transport, request_id: int = SDO_REQUEST_ID,
                 response_id: int = SDO_RESPONSE_ID, timeout: float = RESPONSE_TIMEOUT,
                 tick: float = WAIT_TICK, verbose: bool = False):
        """
        Initialize the SDO client and register for received frames.

        Args:
            transport: Frame transport (PythonCANDriver, NetworkCANDriver, ...)
            request_id: CAN ID of request frames
            response_id: CAN ID of server responses
            timeout: Response timeout in seconds
            tick: Maximum wait between re-checks of the response slot
            verbose: Print every frame sent and received
        """
        self.transport = transport
        self.request_id = request_id
        self.response_id = response_id
        self.timeout = timeout
        self.tick = tick
        self.verbose = verbose

        self._received: Optional[CANMessage] = None
        self._condition = threading.Condition()
        self._request_lock = threading.Lock()

        transport.add_message_listener(self.on_frame)

    def _debug(self, text: str):
        if self.verbose:
            print(f"[SDO] {text}")

    # ------------------------------------------------------------------------
    # Request / response correlation
    # ------------------------------------------------------------------------

    def on_frame(self, msg: CANMessage):
        """Called by the transport for every received frame"""
        if msg.id != self.response_id or msg.is_extended:
            return
        with self._condition:
            self._received = msg
            self._condition.notify()

    def transmit(self, data: bytes, expected: int, mask: int = 0xFF) -> CANMessage:
        """
        Send a request frame and wait for the matching response.

        Args:
            data: Request payload, padded to 8 bytes
            expected: Expected first response byte
            mask: Bits of the first response byte compared against expected

        Returns:
            Response frame

        Raises:
            SDOTimeoutError: no response within the timeout
            SDOAbortError: server aborted the transfer
            SDOUnexpectedResponseError: first response byte does not match
        """
        frame = CANMessage(id=self.request_id, data=bytes(data).ljust(FRAME_SIZE, b'\x00'))

        with self._request_lock:
            with self._condition:
                self._received = None

            self._debug(f"TX {frame}")
            self.transport.send(frame)

            return self._wait_response(frame, expected, mask)

    def _wait_response(self, request: CANMessage, expected: int, mask: int) -> CANMessage:
        deadline = time.monotonic() + self.timeout

        with self._condition:
            while True:
                msg = self._received
                if msg is not None and len(msg.data) >= 1:
                    self._debug(f"RX {msg}")
                    actual = msg.data[0]
                    if (actual & mask) == (expected & mask):
                        return msg
                    if actual == RESP_ABORT:
                        raise self._abort_error(request, msg, expected)
                    raise SDOUnexpectedResponseError(expected, actual)

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    self._debug(f"timeout after {self.timeout}s waiting for 0x{expected:02X}")
                    raise SDOTimeoutError(self.timeout)

                self._condition.wait(min(self.tick, remaining))

    @staticmethod
    def _abort_error(request: CANMessage, msg: CANMessage, expected: int) -> SDOAbortError:
        index = request.data[1] | (request.data[2] << 8)
        subindex = request.data[3]
        abort_code = 0
        if len(msg.data) >= FRAME_SIZE:
            abort_code = struct.unpack_from('<I', msg.data, 4)[0]
        return SDOAbortError(expected, index, subindex, abort_code, describe_abort(abort_code))

    @staticmethod
    def _header(command: int, index: int, subindex: int) -> bytes:
        return bytes([command, index & 0xFF, (index >> 8) & 0xFF, subindex & 0xFF])

    # ------------------------------------------------------------------------
    # Expedited transfers
    # ------------------------------------------------------------------------

    def read(self, index: int, subindex: int) -> bytes:
        """
        Read object at given index (expedited upload).

        Returns:
            The 4 data bytes of the response
        """
        msg = self.transmit(self._header(CMD_UPLOAD_INITIATE, index, subindex), RESP_UPLOAD_EXPEDITED)
        if len(msg.data) < FRAME_SIZE:
            raise SDOProtocolError(f"Short upload response ({len(msg.data)} bytes) for 0x{index:04X}/0x{subindex:02X}")
        return bytes(msg.data[4:8])

    def write_expedited(self, index: int, subindex: int, data: bytes):
        """
        Write up to 4 bytes to an object in expedited mode.
        """
        data = bytes(data)
        if len(data) > 4:
            raise ValueError(f"Expedited write carries at most 4 bytes, got {len(data)}")

        command = EXPEDITED_DOWNLOAD_COMMANDS.get(len(data), CMD_DOWNLOAD_EXPEDITED_UNSPECIFIED)
        self.transmit(self._header(command, index, subindex) + data, RESP_DOWNLOAD_ACK)

    # ------------------------------------------------------------------------
    # Segmented transfers
    # ------------------------------------------------------------------------

    def write_segmented(self, index: int, subindex: int, data: bytes):
        """
        Write data of arbitrary length to an object in segmented mode.
        """
        data = bytes(data)
        bytes_left = len(data)

        self._debug(f"segmented write of {bytes_left} bytes to 0x{index:04X}/0x{subindex:02X}")
        self.transmit(self._header(CMD_DOWNLOAD_SEGMENTED, index, subindex) + struct.pack('<I', bytes_left),
                      RESP_DOWNLOAD_ACK)

        toggle = False
        position = 0
        while bytes_left > 0:
            chunk = data[position:position + SEGMENT_SIZE]
            command = segment_command(bytes_left, toggle)
            expected = RESP_SEGMENT_ACK_TOGGLED if toggle else RESP_SEGMENT_ACK

            self.transmit(bytes([command]) + chunk, expected)

            position += len(chunk)
            bytes_left -= len(chunk)
            toggle = not toggle

    def read_segmented(self, index: int, subindex: int) -> bytes:
        """
        Read an object of arbitrary length (segmented upload).

        Falls back to the inline data when the server answers with an
        expedited upload response.
        """
        msg = self.transmit(self._header(CMD_UPLOAD_INITIATE, index, subindex), RESP_UPLOAD_INITIATE, mask=0xE0)
        command = msg.data[0]

        expedited = bool(command & 0x02)
        size_indicated = bool(command & 0x01)

        if expedited:
            unused = (command >> 2) & 0x03 if size_indicated else 0
            return bytes(msg.data[4:FRAME_SIZE - unused])

        size = None
        if size_indicated:
            if len(msg.data) < FRAME_SIZE:
                raise SDOProtocolError("Short upload initiate response")
            size = struct.unpack_from('<I', msg.data, 4)[0]

        self._debug(f"segmented read of 0x{index:04X}/0x{subindex:02X}, size {size}")

        output = bytearray()
        toggle = False
        while True:
            toggle_bits = TOGGLE_BIT if toggle else 0
            msg = self.transmit(bytes([CMD_UPLOAD_SEGMENT | toggle_bits]), toggle_bits, mask=0xF0)
            command = msg.data[0]

            unused = (command >> 1) & 0x07
            output += msg.data[1:FRAME_SIZE - unused]

            if command & 0x01:
                break
            toggle = not toggle

        if size is not None and len(output) != size:
            raise SDOProtocolError(f"Segmented upload returned {len(output)} bytes, expected {size}")

        return bytes(output)
