"""
LPC Flasher
===========
Flashes Intel HEX firmware into NXP LPC11C22/LPC11C24 devices through the
CANopen boot ROM (node 0x7D, 100 kbit/s).

Sequence: load hex -> optional reset routine -> vector checksum -> open CAN ->
read device type -> unlock -> prepare/erase sectors -> per sector: RAM
address, segmented transfer, prepare, copy RAM to flash, compare -> optional
GO -> close CAN.
"""

import struct
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from .CAN_Types import FilterRule, OpenMode
from .Device_Memory import DeviceMemory
from .Flash_Errors import FlashError, FlashVerifyError, HexFormatError, SDOAbortError
from . import Hex_Parser
from .SDO_Client import ABORT_COMPARE_ERROR, RESPONSE_TIMEOUT, SDO_REQUEST_ID, SDO_RESPONSE_ID, SDOClient


# ============================================================================
# Object Dictionary
# ============================================================================

OBJ_IDX_DEVICE_TYPE = 0x1000
OBJ_IDX_IDENTITY_OBJECT = 0x1018
OBJ_SUB_PART_ID = 0x02
OBJ_SUB_BOOTLOADER_VERSION = 0x03
OBJ_IDX_PROGRAM_DATA = 0x1F50
OBJ_SUB_PROGRAM_AREA = 0x01
OBJ_IDX_PROGRAM_CONTROL = 0x1F51
OBJ_SUB_PROGRAM_CONTROL = 0x01
OBJ_IDX_UNLOCK_CODE = 0x5000
OBJ_IDX_MEMORY_READ_ADDRESS = 0x5010
OBJ_IDX_MEMORY_READ_LENGTH = 0x5011
OBJ_IDX_RAM_WRITE_ADDRESS = 0x5015
OBJ_IDX_PREPARE_SECTORS_FOR_WRITE = 0x5020
OBJ_IDX_ERASE_SECTORS = 0x5030
OBJ_IDX_COPY_RAM_TO_FLASH = 0x5050
OBJ_SUB_FLASH_ADDRESS = 0x01
OBJ_SUB_RAM_ADDRESS = 0x02
OBJ_SUB_NUMBER_OF_BYTES = 0x03
OBJ_IDX_COMPARE_MEMORY = 0x5060
OBJ_SUB_ADDRESS1 = 0x01
OBJ_SUB_ADDRESS2 = 0x02
OBJ_IDX_EXECUTION_ADDRESS = 0x5070
OBJ_SUB_EXECUTION_ADDRESS = 0x01
OBJ_IDX_SERIAL_NUMBER = 0x5100

UNLOCK_CODE = bytes([0x5A, 0x5A])
PROGRAM_CONTROL_START = bytes([0x01])

# Boot ROM answers from 0x580 + node 0x7D only
RESPONSE_FILTER = [FilterRule(mask=0x7FF, accept_id=SDO_RESPONSE_ID)]


# ============================================================================
# Reset Routine
# ============================================================================

# Thumb code: DSB; write SYSRESETREQ to AIRCR (0xE000ED0C); DSB; loop
RESET_SEQUENCE = bytes([
    0xBF, 0xF3, 0x4F, 0x8F, 0x02, 0x4A, 0x03, 0x4B,
    0xDA, 0x60, 0xBF, 0xF3, 0x4F, 0x8F, 0xFE, 0xE7,
    0x04, 0x00, 0xFA, 0x05, 0x00, 0xED, 0x00, 0xE0,
])
RESET_ROUTINE_MIN_ADDRESS = 0x200    # Below this the boot ROM vectors are mapped


# ============================================================================
# Configuration
# ============================================================================

@dataclass(frozen=True)
class DeviceProfile:
    """Target device and bus parameters"""
    name: str
    image_size: int
    sector_size: int = 4 * 1024
    ram_address: int = 0x10000800
    bitrate: int = 100000
    request_id: int = SDO_REQUEST_ID
    response_id: int = SDO_RESPONSE_ID
    timeout: float = RESPONSE_TIMEOUT


LPC11C24 = DeviceProfile(name="LPC11C24", image_size=32 * 1024)
LPC11C22 = DeviceProfile(name="LPC11C22", image_size=16 * 1024)

DEVICE_PROFILES = {
    "lpc11c24": LPC11C24,
    "lpc11c22": LPC11C22,
}


class GoMode(Enum):
    """What to do after programming"""
    NO = "no"
    ADDRESS = "address"
    INSERT_RESET = "reset"


@dataclass
class DeviceInfo:
    """Identification objects of the boot ROM"""
    device_type: str
    part_id: int
    bootloader_version: int
    serial_number: bytes

    def __str__(self):
        return (f"Device type: {self.device_type}, Part ID: 0x{self.part_id:08X}, "
                f"Boot ROM version: 0x{self.bootloader_version:08X}, "
                f"Serial: {self.serial_number.hex().upper()}")


def reset_routine_address(wrote_max: int) -> int:
    """
    Placement of the injected reset routine: the first 4-byte aligned
    address after the written range, but not below 0x200.
    """
    if wrote_max < RESET_ROUTINE_MIN_ADDRESS:
        return RESET_ROUTINE_MIN_ADDRESS
    return wrote_max + (4 - wrote_max % 4)


def insert_reset_routine(memory: DeviceMemory) -> int:
    """
    Append the reset routine to the image.

    Returns:
        Address of the routine, to be used as execution address
    """
    address = reset_routine_address(memory.wrote_max)
    if address + len(RESET_SEQUENCE) > memory.size:
        raise FlashError(f"No room for reset routine at 0x{address:X}")
    memory.write_data(address, RESET_SEQUENCE)
    return address


# ============================================================================
# LPC Flasher
# ============================================================================

class LPCFlasher:
    """
    Drives the LPC11Cxx CAN boot ROM over a frame transport.
    """

    def __init__(self, transport, sink=None, profile: DeviceProfile = LPC11C24, verbose: bool = False):
        """
        Args:
            transport: Frame transport (PythonCANDriver or NetworkCANDriver)
            sink: Message sink with a report(text) method
            profile: Target device parameters
            verbose: Print SDO frame diagnostics
        """
        self.transport = transport
        self.sink = sink
        self.profile = profile
        self.verbose = verbose
        self.sdo = SDOClient(transport, request_id=profile.request_id, response_id=profile.response_id,
                             timeout=profile.timeout, verbose=verbose)
        self.last_error: Optional[Exception] = None

    def _report(self, text: str):
        if self.sink is not None:
            self.sink.report(text)

    # ------------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------------

    def open(self, channel):
        """Connect, install the response filter and open the CAN channel."""
        self.transport.connect(channel)
        try:
            self.transport.set_filter(RESPONSE_FILTER)
            self.transport.open_channel(self.profile.bitrate, OpenMode.ACTIVE)
        except Exception:
            self.transport.disconnect()
            raise

    def close(self):
        """Close the CAN channel and disconnect."""
        try:
            if self.transport.is_open:
                self.transport.close_channel()
        finally:
            self.transport.disconnect()

    def _close_after_error(self):
        # The session error is what gets reported, not the close failure
        try:
            self.close()
        except Exception as e:
            if self.verbose:
                print(f"[LPCFlasher] Close after error failed: {e}")

    @contextmanager
    def session(self, channel):
        """Open the bus for the duration of a with-block; always closes it."""
        self.open(channel)
        try:
            yield self
        except BaseException:
            self._close_after_error()
            raise
        self.close()

    # ------------------------------------------------------------------------
    # Image preparation
    # ------------------------------------------------------------------------

    def load_image(self, hex_file: Union[str, Path]) -> DeviceMemory:
        """Read a HEX file into a fresh device memory image."""
        memory = DeviceMemory(self.profile.image_size, self.profile.sector_size)

        self._report("Load HEX file... ")
        Hex_Parser.read_file(hex_file, memory, self.sink)
        if memory.is_empty:
            raise HexFormatError(f"No data records in {hex_file}")

        self._report(memory.describe_range() + "\n")
        return memory

    # ------------------------------------------------------------------------
    # Boot ROM operations
    # ------------------------------------------------------------------------

    def read_device_type(self) -> str:
        return self.sdo.read(OBJ_IDX_DEVICE_TYPE, 0x00).decode('latin-1')

    def read_u32(self, index: int, subindex: int) -> int:
        return struct.unpack('<I', self.sdo.read(index, subindex))[0]

    def unlock(self):
        self.sdo.write_expedited(OBJ_IDX_UNLOCK_CODE, 0x00, UNLOCK_CODE)

    def prepare_sectors(self, start: int, end: int):
        self.sdo.write_expedited(OBJ_IDX_PREPARE_SECTORS_FOR_WRITE, 0x00, bytes([start, end]))

    def erase_sectors(self, start: int, end: int):
        self.sdo.write_expedited(OBJ_IDX_ERASE_SECTORS, 0x00, bytes([start, end]))

    def write_sector(self, memory: DeviceMemory, sector: int):
        """
        Program one sector: stage it in RAM, copy RAM to flash, compare.

        Raises:
            FlashVerifyError: RAM and flash contents differ
            SDOAbortError: any other boot ROM rejection
        """
        data = memory.get_sector(sector)
        ram_address = struct.pack('<I', self.profile.ram_address)
        flash_address = struct.pack('<I', memory.get_sector_start_address(sector))
        count = struct.pack('<H', len(data))

        self._report(f"Write sector {sector}\n")

        self._report("  Set RAM address...\n")
        self.sdo.write_expedited(OBJ_IDX_RAM_WRITE_ADDRESS, 0x00, ram_address)

        self._report("  Transfer data...\n")
        self.sdo.write_segmented(OBJ_IDX_PROGRAM_DATA, OBJ_SUB_PROGRAM_AREA, data)

        self._report("  Prepare write...\n")
        self.prepare_sectors(sector, sector)

        self._report("  Copy RAM to flash...\n")
        self.sdo.write_expedited(OBJ_IDX_COPY_RAM_TO_FLASH, OBJ_SUB_FLASH_ADDRESS, flash_address)
        self.sdo.write_expedited(OBJ_IDX_COPY_RAM_TO_FLASH, OBJ_SUB_RAM_ADDRESS, ram_address)
        self.sdo.write_expedited(OBJ_IDX_COPY_RAM_TO_FLASH, OBJ_SUB_NUMBER_OF_BYTES, count)

        self._report("  Compare...\n")
        try:
            self.sdo.write_expedited(OBJ_IDX_COMPARE_MEMORY, OBJ_SUB_ADDRESS1, ram_address)
            self.sdo.write_expedited(OBJ_IDX_COMPARE_MEMORY, OBJ_SUB_ADDRESS2, flash_address)
            self.sdo.write_expedited(OBJ_IDX_COMPARE_MEMORY, OBJ_SUB_NUMBER_OF_BYTES, count)
        except SDOAbortError as e:
            if e.abort_code != ABORT_COMPARE_ERROR:
                raise
            raise FlashVerifyError(sector, e.abort_code) from e

    def go(self, address: int):
        """Set the execution address and start it."""
        self._report(f"GO to 0x{address:X} ...\n")
        self.sdo.write_expedited(OBJ_IDX_EXECUTION_ADDRESS, OBJ_SUB_EXECUTION_ADDRESS, struct.pack('<I', address))
        self.sdo.write_expedited(OBJ_IDX_PROGRAM_CONTROL, OBJ_SUB_PROGRAM_CONTROL, PROGRAM_CONTROL_START)

    def program(self, memory: DeviceMemory):
        """Unlock, erase the written sector range and program it sector by sector."""
        sector_min = memory.wrote_sector_min
        sector_max = memory.wrote_sector_max

        self._report("Read device type... ")
        self._report(f" {self.read_device_type()}\n")

        self._report("Unlock device...\n")
        self.unlock()

        self._report("Prepare erase...\n")
        self.prepare_sectors(sector_min, sector_max)

        self._report("Erase sectors...\n")
        self.erase_sectors(sector_min, sector_max)

        for sector in range(sector_min, sector_max + 1):
            self.write_sector(memory, sector)

    # ------------------------------------------------------------------------
    # High level operations
    # ------------------------------------------------------------------------

    def flash(self, channel, hex_file: Union[str, Path], go_mode: GoMode = GoMode.NO,
              execution_address: int = 0) -> bool:
        """
        Complete flashing process.

        Args:
            channel: Transport channel (serial port, device index, server address)
            hex_file: Path to Intel HEX firmware
            go_mode: Execution after programming
            execution_address: Address to jump to for GoMode.ADDRESS

        Returns:
            True if flashing succeeded. On failure the error is reported to
            the sink and kept in last_error.
        """
        self.last_error = None

        try:
            memory = self.load_image(hex_file)

            if go_mode == GoMode.INSERT_RESET:
                execution_address = reset_routine_address(memory.wrote_max)
                self._report(f"Place reset function at 0x{execution_address:X}... ")
                insert_reset_routine(memory)
                self._report("new " + memory.describe_range() + "\n")

            memory.insert_checksum()

            self._report("Open CAN interface... ")
            with self.session(channel):
                self._report(f"{self.profile.bitrate // 1000} kbit/s\n")
                self.program(memory)
                if go_mode != GoMode.NO:
                    self.go(execution_address)

        except Exception as e:
            self.last_error = e
            self._report(f"ERROR: {e}")
            return False

        self._report("Finished.\n")
        return True

    def read_device_info(self, channel) -> DeviceInfo:
        """Read identification objects of the connected boot ROM."""
        with self.session(channel):
            device_type = self.read_device_type()
            part_id = self.read_u32(OBJ_IDX_IDENTITY_OBJECT, OBJ_SUB_PART_ID)
            version = self.read_u32(OBJ_IDX_IDENTITY_OBJECT, OBJ_SUB_BOOTLOADER_VERSION)
            serial = b''.join(self.sdo.read(OBJ_IDX_SERIAL_NUMBER, sub) for sub in range(1, 5))
        return DeviceInfo(device_type, part_id, version, serial)

    def read_memory(self, channel, address: int, length: int) -> bytes:
        """
        Read target memory through the program data object.

        The boot ROM transfers whole words, so the request is rounded up to a
        multiple of 4 and the result trimmed to length.
        """
        if length <= 0:
            raise ValueError("length must be positive")
        aligned_length = (length + 3) & ~0x3

        with self.session(channel):
            self._report(f"Read {length} bytes at 0x{address:X}...\n")
            self.sdo.write_expedited(OBJ_IDX_MEMORY_READ_ADDRESS, 0x00, struct.pack('<I', address))
            self.sdo.write_expedited(OBJ_IDX_MEMORY_READ_LENGTH, 0x00, struct.pack('<I', aligned_length))
            data = self.sdo.read_segmented(OBJ_IDX_PROGRAM_DATA, OBJ_SUB_PROGRAM_AREA)

        return data[:length]
