"""
Tests for the CANopen SDO client.
"""
import struct
import time

import pytest

from lpcflash.CAN_Types import CANMessage
from lpcflash.Flash_Errors import (
    SDOAbortError,
    SDOProtocolError,
    SDOTimeoutError,
    SDOUnexpectedResponseError,
)
from lpcflash.SDO_Client import (
    SDO_REQUEST_ID,
    SDO_RESPONSE_ID,
    WAIT_TICK,
    SDOClient,
    describe_abort,
    segment_command,
)

from fake_bootrom import FakeBootROM


class ScriptedTransport:
    """Answers each request with whatever the responder returns."""

    def __init__(self, responder=None):
        self.responder = responder
        self.sent = []
        self.listeners = []

    def add_message_listener(self, callback):
        self.listeners.append(callback)

    def send(self, frame):
        assert frame.id == SDO_REQUEST_ID
        assert len(frame.data) == 8
        self.sent.append(bytes(frame.data))
        if self.responder is None:
            return
        reply = self.responder(bytes(frame.data))
        if reply is None:
            return
        if not isinstance(reply, CANMessage):
            reply = CANMessage(id=SDO_RESPONSE_ID, data=bytes(reply).ljust(8, b'\x00'))
        for callback in self.listeners:
            callback(reply)


def download_acks(data):
    command = data[0]
    if command == 0x21 or command in (0x2F, 0x2B, 0x23, 0x22):
        return bytes([0x60]) + data[1:4]
    return bytes([0x30 if command & 0x10 else 0x20])


def abort_frame(index, subindex, code):
    return bytes([0x80, index & 0xFF, index >> 8, subindex]) + struct.pack('<I', code)


# ============================================================================
# Frame encoding
# ============================================================================

@pytest.mark.parametrize("remaining, toggle, command", [
    (20, False, 0x00),
    (8, True, 0x10),
    (7, False, 0x01),
    (6, True, 0x13),
    (1, False, 0x0D),
])
def test_segment_command(remaining, toggle, command):
    assert segment_command(remaining, toggle) == command


def test_describe_abort():
    assert describe_abort(0x0F00000A) == "ISP COMPARE_ERROR"
    assert describe_abort(0x06020000) == "Object does not exist in the object dictionary"
    assert describe_abort(0x12345678) == "Unknown abort code"


def test_expedited_write_frame():
    transport = ScriptedTransport(download_acks)
    client = SDOClient(transport)

    client.write_expedited(0x5000, 0x00, bytes([0x5A, 0x5A]))

    assert transport.sent == [bytes([0x2B, 0x00, 0x50, 0x00, 0x5A, 0x5A, 0x00, 0x00])]


@pytest.mark.parametrize("data, command", [
    (b'\x01', 0x2F),
    (b'\x01\x02', 0x2B),
    (b'\x01\x02\x03\x04', 0x23),
])
def test_expedited_write_command_by_size(data, command):
    transport = ScriptedTransport(download_acks)
    SDOClient(transport).write_expedited(0x1F51, 0x01, data)
    assert transport.sent[0][0] == command
    assert transport.sent[0][1:4] == bytes([0x51, 0x1F, 0x01])


def test_expedited_write_rejects_long_data():
    client = SDOClient(ScriptedTransport(download_acks))
    with pytest.raises(ValueError):
        client.write_expedited(0x5015, 0x00, bytes(5))


def test_expedited_write_unexpected_response():
    transport = ScriptedTransport(lambda data: bytes([0x43]) + data[1:4])
    client = SDOClient(transport)

    with pytest.raises(SDOUnexpectedResponseError) as excinfo:
        client.write_expedited(0x5000, 0x00, b'\x5A\x5A')

    assert not isinstance(excinfo.value, SDOAbortError)
    assert excinfo.value.expected == 0x60
    assert excinfo.value.actual == 0x43


def test_expedited_read():
    transport = ScriptedTransport(lambda data: bytes([0x43]) + data[1:4] + b'LPC\x11')
    client = SDOClient(transport)

    assert client.read(0x1000, 0x00) == b'LPC\x11'
    assert transport.sent == [bytes([0x40, 0x00, 0x10, 0x00, 0, 0, 0, 0])]


def test_read_rejects_download_ack():
    client = SDOClient(ScriptedTransport(lambda data: bytes([0x60]) + data[1:4]))
    with pytest.raises(SDOUnexpectedResponseError):
        client.read(0x1018, 0x02)


def test_abort_carries_code_and_object():
    client = SDOClient(ScriptedTransport(lambda data: abort_frame(0x5030, 0x00, 0x0F000009)))

    with pytest.raises(SDOAbortError) as excinfo:
        client.write_expedited(0x5030, 0x00, b'\x00\x01')

    error = excinfo.value
    assert error.abort_code == 0x0F000009
    assert error.index == 0x5030
    assert error.subindex == 0x00
    assert error.actual == 0x80
    assert "SECTOR_NOT_PREPARED" in str(error)


# ============================================================================
# Timeouts and correlation
# ============================================================================

def test_timeout_is_bounded():
    client = SDOClient(ScriptedTransport(), timeout=1.0)

    start = time.monotonic()
    with pytest.raises(SDOTimeoutError) as excinfo:
        client.read(0x1000, 0x00)
    elapsed = time.monotonic() - start

    assert isinstance(excinfo.value, TimeoutError)
    assert elapsed >= 1.0
    assert elapsed <= 1.0 + WAIT_TICK + 0.05


def test_frames_from_other_ids_are_ignored():
    def foreign(data):
        return CANMessage(id=0x123, data=bytes([0x43]) + data[1:4] + b'\x00' * 4)

    client = SDOClient(ScriptedTransport(foreign), timeout=0.2)
    with pytest.raises(SDOTimeoutError):
        client.read(0x1000, 0x00)


def test_stale_response_is_discarded():
    transport = ScriptedTransport()
    client = SDOClient(transport, timeout=0.2)

    # Late answer to an earlier request sits in the slot before the next one
    client.on_frame(CANMessage(id=SDO_RESPONSE_ID, data=bytes([0x60, 0, 0x50, 0, 0, 0, 0, 0])))

    with pytest.raises(SDOTimeoutError):
        client.write_expedited(0x5000, 0x00, b'\x5A\x5A')


def test_response_from_receive_thread():
    bootrom = FakeBootROM(response_delay=0.02)
    bootrom.open_channel(100000)
    client = SDOClient(bootrom)

    assert client.read(0x1000, 0x00) == b'LPC\x11'


def test_verbose_prints_frames(capsys):
    client = SDOClient(ScriptedTransport(download_acks), verbose=True)
    client.write_expedited(0x5000, 0x00, b'\x5A\x5A')

    out = capsys.readouterr().out
    assert "[SDO] TX ID=0x67D, Data=[2B 00 50 00 5A 5A 00 00]" in out
    assert "[SDO] RX ID=0x5FD" in out


# ============================================================================
# Segmented transfers
# ============================================================================

def test_segmented_write_toggles():
    transport = ScriptedTransport(download_acks)
    data = bytes(range(20))

    SDOClient(transport).write_segmented(0x1F50, 0x01, data)

    assert transport.sent[0] == bytes([0x21, 0x50, 0x1F, 0x01]) + struct.pack('<I', 20)
    assert [frame[0] for frame in transport.sent[1:]] == [0x00, 0x10, 0x03]
    assert transport.sent[1][1:] == data[0:7]
    assert transport.sent[2][1:] == data[7:14]
    assert transport.sent[3][1:7] == data[14:20]


def test_segmented_write_of_seven_bytes_is_one_segment():
    transport = ScriptedTransport(download_acks)
    SDOClient(transport).write_segmented(0x1F50, 0x01, b'ABCDEFG')

    assert len(transport.sent) == 2
    assert transport.sent[1] == bytes([0x01]) + b'ABCDEFG'


def test_segmented_write_of_eight_bytes():
    transport = ScriptedTransport(download_acks)
    SDOClient(transport).write_segmented(0x1F50, 0x01, b'ABCDEFGH')

    assert [frame[0] for frame in transport.sent[1:]] == [0x00, 0x1D]
    assert transport.sent[2][1] == ord('H')


def test_segmented_write_rejects_wrong_toggle_ack():
    def no_toggle(data):
        if data[0] == 0x21:
            return bytes([0x60]) + data[1:4]
        return bytes([0x20])

    with pytest.raises(SDOUnexpectedResponseError) as excinfo:
        SDOClient(ScriptedTransport(no_toggle)).write_segmented(0x1F50, 0x01, bytes(20))
    assert excinfo.value.expected == 0x30


def test_segmented_write_into_bootrom():
    bootrom = FakeBootROM()
    bootrom.open_channel(100000)
    client = SDOClient(bootrom)
    data = bytes((i * 3) & 0xFF for i in range(4096))

    client.write_expedited(0x5015, 0x00, struct.pack('<I', 0x10000800))
    client.write_segmented(0x1F50, 0x01, data)

    assert bootrom.ram[0x800:0x800 + 4096] == data


def test_segmented_read_from_bootrom():
    bootrom = FakeBootROM()
    bootrom.flash[0x100:0x100 + 40] = bytes(range(40))
    bootrom.open_channel(100000)
    client = SDOClient(bootrom)

    client.write_expedited(0x5010, 0x00, struct.pack('<I', 0x100))
    client.write_expedited(0x5011, 0x00, struct.pack('<I', 40))

    assert client.read_segmented(0x1F50, 0x01) == bytes(range(40))


def test_segmented_read_expedited_fallback():
    # 0x4B: expedited, size indicated, 2 unused bytes
    client = SDOClient(ScriptedTransport(lambda data: bytes([0x4B]) + data[1:4] + b'\x12\x34'))
    assert client.read_segmented(0x1018, 0x02) == b'\x12\x34'


def test_segmented_read_size_mismatch():
    def short_upload(data):
        if data[0] == 0x40:
            return bytes([0x41]) + data[1:4] + struct.pack('<I', 10)
        return bytes([0x01]) + b'ABCDEFG'

    with pytest.raises(SDOProtocolError, match="expected 10"):
        SDOClient(ScriptedTransport(short_upload)).read_segmented(0x1F50, 0x01)
