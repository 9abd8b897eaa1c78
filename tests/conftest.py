"""
Shared fixtures for the LPC CAN flasher tests.
"""
import sys
from pathlib import Path

import pytest

# Ensure the project root is on sys.path so lpcflash and Flash_Application import
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from lpcflash import Hex_Parser
from lpcflash.Message_Sink import CallbackSink

from fake_bootrom import FakeBootROM


@pytest.fixture
def messages() -> list:
    """Collected sink output."""
    return []


@pytest.fixture
def sink(messages) -> CallbackSink:
    return CallbackSink(messages.append)


@pytest.fixture
def bootrom() -> FakeBootROM:
    """Simulated LPC11C24 boot ROM answering synchronously."""
    return FakeBootROM()


@pytest.fixture
def firmware() -> bytes:
    """5000 bytes of firmware spanning sectors 0 and 1."""
    return bytes((i * 7 + 3) & 0xFF for i in range(5000))


@pytest.fixture
def hex_file(tmp_path, firmware) -> Path:
    """Firmware written as an Intel HEX file."""
    path = tmp_path / "firmware.hex"
    path.write_text('\r\n'.join(Hex_Parser.write_records(firmware)) + '\r\n', encoding='ascii')
    return path
