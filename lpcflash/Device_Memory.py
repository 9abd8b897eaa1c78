"""
Device Memory
=============
In-memory image of the target's flash. Tracks which addresses were written so
only the touched sectors get erased and programmed, and patches the vector
table checksum the LPC11Cxx boot ROM checks for valid user code.
"""

import struct
from typing import Tuple


# ============================================================================
# Memory Constants
# ============================================================================

ERASED_VALUE = 0xFF
CHECKSUM_OFFSET = 0x1C      # Vector table slot 7 (reserved)
CHECKSUM_VECTORS = 7        # Vectors 0..6 are summed


class DeviceMemory:
    """
    Flash image of a target device with a fixed size and sector size.
    """

    def __init__(self, size: int, sector_size: int):
        """
        Allocate an erased image.

        Args:
            size: Size of the target memory in bytes
            sector_size: Size of one erase/program sector in bytes
        """
        if size <= 0 or sector_size <= 0:
            raise ValueError("size and sector_size must be positive")

        self.data = bytearray([ERASED_VALUE] * size)
        self.size = size
        self.sector_size = sector_size
        self.wrote_min = size
        self.wrote_max = -1

    def __len__(self) -> int:
        return self.size

    @property
    def is_empty(self) -> bool:
        """True until the first byte is written"""
        return self.wrote_max < self.wrote_min

    @property
    def wrote_sector_min(self) -> int:
        return self.wrote_min // self.sector_size

    @property
    def wrote_sector_max(self) -> int:
        return self.wrote_max // self.sector_size

    def get_sector_start_address(self, sector: int) -> int:
        return sector * self.sector_size

    def sector_range(self, sector: int) -> Tuple[int, int]:
        """Half-open address range [start, end) covered by a sector"""
        start = self.get_sector_start_address(sector)
        return start, start + self.sector_size

    def write_byte(self, address: int, value: int):
        """
        Write one byte and widen the written range.

        Raises:
            IndexError: address lies outside the image
        """
        if not 0 <= address < self.size:
            raise IndexError(f"address 0x{address:X} outside device memory (size 0x{self.size:X})")

        self.data[address] = value & 0xFF

        if self.wrote_min > address:
            self.wrote_min = address
        if self.wrote_max < address:
            self.wrote_max = address

    def write_data(self, address: int, data: bytes):
        for offset, value in enumerate(data):
            self.write_byte(address + offset, value)

    def read_byte(self, address: int) -> int:
        return self.data[address]

    def get_sector(self, sector: int) -> bytes:
        """
        Full contents of a sector.

        The boot ROM copies whole sectors, so the slice is never trimmed to
        the written range.
        """
        start, end = self.sector_range(sector)
        return bytes(self.data[start:end])

    def insert_checksum(self) -> int:
        """
        Calculate and store the vector table checksum.

        The boot ROM treats user code as valid when the first 8 vectors sum
        to zero, so slot 7 gets the two's complement of vectors 0..6.

        Returns:
            The 32-bit checksum written at offset 0x1C
        """
        vectors = struct.unpack_from(f'<{CHECKSUM_VECTORS}I', self.data, 0)
        checksum = (-sum(vectors)) & 0xFFFFFFFF
        struct.pack_into('<I', self.data, CHECKSUM_OFFSET, checksum)
        return checksum

    def describe_range(self) -> str:
        """Human readable summary of the written range"""
        return (f"range: {self.wrote_min}-{self.wrote_max} "
                f"(sectors {self.wrote_sector_min}-{self.wrote_sector_max})")
