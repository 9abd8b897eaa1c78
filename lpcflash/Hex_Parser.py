"""
Intel HEX Parser
================
Streams Intel HEX records (:LLAAAATT[data...]CC) into a DeviceMemory image.

Usage:
    memory = DeviceMemory(32 * 1024, 4 * 1024)
    end = read_file("firmware.hex", memory)
"""

from dataclasses import dataclass
from enum import IntEnum
from pathlib import Path
from typing import Iterable, Optional, Union

from .Device_Memory import DeviceMemory
from .Flash_Errors import HexChecksumError, HexFormatError


# ============================================================================
# Record Definitions
# ============================================================================

class RecordType(IntEnum):
    """Intel HEX record types"""
    DATA = 0x00
    EOF = 0x01
    EXT_SEGMENT_ADDRESS = 0x02
    START_SEGMENT_ADDRESS = 0x03
    EXT_LINEAR_ADDRESS = 0x04
    START_LINEAR_ADDRESS = 0x05


HEX_DIGITS = set("0123456789abcdefABCDEF")
MIN_RECORD_LENGTH = 11  # ':' + length(2) + address(4) + type(2) + checksum(2)


@dataclass
class HexRecord:
    """One decoded line of an Intel HEX file"""
    length: int
    address: int
    record_type: int
    data: bytes
    checksum: int

    @property
    def value16(self) -> int:
        """Big-endian 16-bit payload used by the address extension records"""
        return (self.data[0] << 8) | self.data[1]


# ============================================================================
# Record Decoding
# ============================================================================

def parse_record(line: str, line_number: int) -> HexRecord:
    """
    Decode and checksum-verify a single record.

    Args:
        line: Record text without line terminator
        line_number: 1-based line number used in error messages

    Returns:
        HexRecord

    Raises:
        HexFormatError: malformed field
        HexChecksumError: checksum byte does not zero the record sum
    """
    if not line.startswith(':'):
        raise HexFormatError("missing start code ':'", line_number)
    if len(line) < MIN_RECORD_LENGTH:
        raise HexFormatError("record too short", line_number)
    if not set(line[1:]) <= HEX_DIGITS:
        raise HexFormatError("invalid hex digit", line_number)

    length = int(line[1:3], 16)
    if len(line) != MIN_RECORD_LENGTH + length * 2:
        raise HexFormatError(f"record length mismatch (expected {length} data bytes)", line_number)

    raw = bytes.fromhex(line[1:])
    if sum(raw) & 0xFF != 0:
        raise HexChecksumError(line_number)

    return HexRecord(
        length=length,
        address=(raw[1] << 8) | raw[2],
        record_type=raw[3],
        data=raw[4:4 + length],
        checksum=raw[-1],
    )


def read(lines: Iterable[str], memory: DeviceMemory, sink=None) -> int:
    """
    Read HEX records and write their data into device memory.

    Args:
        lines: Iterable of text lines (open file, list, StringIO)
        memory: Target device memory
        sink: Optional message sink, receives unknown record type notices

    Returns:
        End address (exclusive) of the highest data range, 0 without data
    """
    extended_address = 0
    segment_address = 0
    end_address = 0

    for line_number, line in enumerate(lines, start=1):
        line = line.strip()
        if not line:
            continue

        record = parse_record(line, line_number)

        if record.record_type == RecordType.DATA:
            address = record.address
            for value in record.data:
                target = address + extended_address + segment_address
                try:
                    memory.write_byte(target, value)
                except IndexError:
                    raise HexFormatError(f"address 0x{target:X} outside device memory", line_number)
                end_address = max(end_address, target + 1)
                address += 1

        elif record.record_type == RecordType.EOF:
            break

        elif record.record_type == RecordType.EXT_LINEAR_ADDRESS:
            if record.length != 2:
                raise HexFormatError("extended linear address needs 2 data bytes", line_number)
            extended_address = record.value16 << 16

        elif record.record_type == RecordType.EXT_SEGMENT_ADDRESS:
            if record.length != 2:
                raise HexFormatError("extended segment address needs 2 data bytes", line_number)
            segment_address = record.value16 << 4

        elif record.record_type in (RecordType.START_SEGMENT_ADDRESS, RecordType.START_LINEAR_ADDRESS):
            # Execution start address is chosen on the command line
            pass

        else:
            if sink is not None:
                sink.report(f"Unknown record type in line {line_number}: {record.record_type:02x}\n")

    return end_address


def read_file(path: Union[str, Path], memory: DeviceMemory, sink=None) -> int:
    """Open a HEX file and read it into device memory"""
    with open(path, 'r', encoding='ascii', errors='replace') as f:
        return read(f, memory, sink)


# ============================================================================
# Record Encoding
# ============================================================================

def format_record(record_type: int, address: int, data: bytes = b'') -> str:
    """Build one Intel HEX record line (without line terminator)"""
    body = bytes([len(data), (address >> 8) & 0xFF, address & 0xFF, record_type]) + bytes(data)
    checksum = (-sum(body)) & 0xFF
    return ':' + (body + bytes([checksum])).hex().upper()


def write_records(data: bytes, base_address: int = 0, record_size: int = 16) -> list:
    """
    Encode a contiguous byte range as HEX records ending with an EOF record.

    Emits an extended linear address record whenever the upper 16 address
    bits change.

    Returns:
        List of record lines
    """
    lines = []
    upper = None
    for offset in range(0, len(data), record_size):
        address = base_address + offset
        if address >> 16 != upper:
            upper = address >> 16
            lines.append(format_record(RecordType.EXT_LINEAR_ADDRESS, 0, upper.to_bytes(2, 'big')))
        chunk = data[offset:offset + record_size]
        # Keep each record inside one 64 KiB page
        room = 0x10000 - (address & 0xFFFF)
        if len(chunk) > room:
            lines.append(format_record(RecordType.DATA, address & 0xFFFF, chunk[:room]))
            upper = (address + room) >> 16
            lines.append(format_record(RecordType.EXT_LINEAR_ADDRESS, 0, upper.to_bytes(2, 'big')))
            lines.append(format_record(RecordType.DATA, 0, chunk[room:]))
        else:
            lines.append(format_record(RecordType.DATA, address & 0xFFFF, chunk))
    lines.append(format_record(RecordType.EOF, 0))
    return lines
