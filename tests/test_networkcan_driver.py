"""
Tests for the network CAN transport with a mocked HTTP session.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from lpcflash.CAN_Types import CANMessage, FilterRule, OpenMode
from lpcflash.Flash_Errors import TransportError
from lpcflash.NetworkCAN_Driver import NetworkCANDriver, parse_server_address


def json_response(body, status_code=200):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = body
    return response


class FakeServer:
    """Routes session.request(method, url) to canned JSON answers."""

    def __init__(self, base_url="http://10.0.0.5:8080"):
        self.base_url = base_url
        self.calls = []
        self.can_connected = False
        self.can_baudrate = None
        self.messages = []
        self.routes = {}

    def request(self, method, url, timeout=None, **kwargs):
        path = url[len(self.base_url):]
        self.calls.append((method, path, kwargs))

        if (method, path) in self.routes:
            answer = self.routes[(method, path)]
            if isinstance(answer, Exception):
                raise answer
            return answer

        if (method, path) == ('GET', '/'):
            return json_response({'name': 'CAN Server', 'version': '1.0'})
        if (method, path) == ('GET', '/api/status'):
            return json_response({'success': True, 'status': {'connected': self.can_connected,
                                                              'baudrate': self.can_baudrate}})
        if (method, path) == ('POST', '/api/connect'):
            self.can_connected = True
            self.can_baudrate = kwargs['json']['baudrate']
            return json_response({'success': True, 'message': 'Connected'})
        if (method, path) == ('DELETE', '/api/messages'):
            return json_response({'success': True})
        if (method, path) == ('GET', '/api/messages'):
            return json_response({'success': True, 'messages': list(self.messages)})
        if (method, path) == ('POST', '/api/messages'):
            return json_response({'success': True})
        if (method, path) == ('GET', '/api/devices'):
            return json_response({'success': True, 'devices': [{'channel': 0, 'name': 'CANable'}]})
        return json_response({'detail': 'Not Found'}, status_code=404)


@pytest.fixture
def server():
    fake = FakeServer()
    session = MagicMock()
    session.request.side_effect = fake.request
    with patch('lpcflash.NetworkCAN_Driver.requests.Session', return_value=session):
        fake.session = session
        yield fake


@pytest.fixture
def driver(server):
    driver = NetworkCANDriver(poll_interval=0.01)
    yield driver
    if driver.is_connected:
        driver.disconnect()


@pytest.mark.parametrize("address, url", [
    ("10.0.0.5", "http://10.0.0.5:8080"),
    ("10.0.0.5:9000", "http://10.0.0.5:9000"),
    ("https://can.example.org/", "https://can.example.org"),
])
def test_parse_server_address(address, url):
    assert parse_server_address(address) == url


def test_parse_empty_server_address():
    with pytest.raises(TransportError):
        parse_server_address("  ")


def test_connect(driver, server):
    driver.connect("10.0.0.5")
    assert driver.is_connected
    assert driver.server_url == "http://10.0.0.5:8080"
    assert server.calls[0][:2] == ('GET', '/')


def test_connect_failure(driver, server):
    server.routes[('GET', '/')] = requests.exceptions.ConnectionError("refused")
    with pytest.raises(TransportError, match="refused"):
        driver.connect("10.0.0.5")
    assert not driver.is_connected
    server.session.close.assert_called_once()


def test_open_channel_connects_server_bus(driver, server):
    driver.connect("10.0.0.5")
    driver.open_channel(100000)
    try:
        assert driver.is_open
        connect_call = next(c for c in server.calls if c[:2] == ('POST', '/api/connect'))
        assert connect_call[2]['json'] == {'channel': 0, 'baudrate': 'BAUD_100K'}
        assert ('DELETE', '/api/messages') in [c[:2] for c in server.calls]
    finally:
        driver.close_channel()
    assert not driver.is_open


def test_open_channel_reuses_connected_server(driver, server):
    server.can_connected = True
    server.can_baudrate = 'BAUD_100K'
    driver.connect("10.0.0.5")
    driver.open_channel(100000)
    driver.close_channel()
    assert ('POST', '/api/connect') not in [c[:2] for c in server.calls]


def test_open_channel_rejects_other_bitrate_on_server(driver, server):
    server.can_connected = True
    server.can_baudrate = 'BAUD_500K'
    driver.connect("10.0.0.5")
    with pytest.raises(TransportError, match="BAUD_500K"):
        driver.open_channel(100000)
    assert not driver.is_open


def test_open_channel_unsupported_settings(driver):
    driver.connect("10.0.0.5")
    with pytest.raises(TransportError, match="bit rate"):
        driver.open_channel(123456)
    with pytest.raises(TransportError, match="listen_only"):
        driver.open_channel(100000, OpenMode.LISTEN_ONLY)


def test_open_channel_requires_connect(driver):
    with pytest.raises(TransportError, match="Not connected"):
        driver.open_channel(100000)


def test_send(driver, server):
    driver.connect("10.0.0.5")
    driver.open_channel(100000)
    try:
        driver.send(CANMessage(id=0x67D, data=b'\x2B\x00\x50\x00\x5A\x5A\x00\x00'))
    finally:
        driver.close_channel()

    post = next(c for c in server.calls if c[:2] == ('POST', '/api/messages'))
    assert post[2]['json'] == {'id': '0x67D', 'data': [0x2B, 0x00, 0x50, 0x00, 0x5A, 0x5A, 0x00, 0x00],
                               'is_extended': False}


def test_send_requires_open_channel(driver):
    driver.connect("10.0.0.5")
    with pytest.raises(TransportError, match="not open"):
        driver.send(CANMessage(id=0x67D, data=bytes(8)))


def test_send_failure_reported_by_server(driver, server):
    driver.connect("10.0.0.5")
    driver.open_channel(100000)
    server.routes[('POST', '/api/messages')] = json_response({'success': False, 'error': 'bus off'})
    try:
        with pytest.raises(TransportError, match="bus off"):
            driver.send(CANMessage(id=0x67D, data=bytes(8)))
    finally:
        driver.close_channel()


def test_poll_once_delivers_new_accepted_frames(driver, server):
    received = []
    driver.add_message_listener(received.append)
    driver.set_filter([FilterRule(mask=0x7FF, accept_id=0x5FD)])
    driver.connect("10.0.0.5")

    server.messages = [
        {'id': '0x5FD', 'data': [0x60, 0x00, 0x50, 0x00], 'timestamp': 2.0},
        {'id': '0x123', 'data': [0x01], 'timestamp': 1.5},
        {'id': '0x5FD', 'data_hex': '43 00 10 00 4C 50 43 11', 'data': [], 'timestamp': 1.0},
    ]
    assert driver.poll_once() == 2
    assert [frame.data[0] for frame in received] == [0x43, 0x60]
    assert received[0].data == b'\x43\x00\x10\x00LPC\x11'

    # Frames already seen are not delivered twice
    assert driver.poll_once() == 0
    assert len(received) == 2


def test_poll_once_keeps_frames_sharing_a_timestamp(driver, server):
    received = []
    driver.add_message_listener(received.append)
    driver.connect("10.0.0.5")

    server.messages = [
        {'id': '0x5FD', 'data': [0x60, 0x00, 0x50, 0x00], 'timestamp': 3.0},
        {'id': '0x5FD', 'data': [0x60, 0x20, 0x50, 0x00], 'timestamp': 3.0},
    ]
    assert driver.poll_once() == 2
    assert [frame.data[1] for frame in received] == [0x00, 0x20]

    assert driver.poll_once() == 0

    # A frame stamped like the last batch but not seen before still arrives
    server.messages.append({'id': '0x5FD', 'data': [0x60, 0x30, 0x50, 0x00], 'timestamp': 3.0})
    assert driver.poll_once() == 1
    assert received[-1].data[1] == 0x30
    assert len(received) == 3


def test_non_200_status(driver, server):
    driver.connect("10.0.0.5")
    server.routes[('GET', '/api/messages')] = json_response({}, status_code=500)
    with pytest.raises(TransportError, match="status 500"):
        driver.poll_once()


def test_get_server_devices(driver):
    driver.connect("10.0.0.5")
    assert driver.get_server_devices() == [{'channel': 0, 'name': 'CANable'}]


def test_disconnect_closes_channel(driver, server):
    driver.connect("10.0.0.5")
    driver.open_channel(100000)
    driver.disconnect()
    assert not driver.is_open
    assert not driver.is_connected
    server.session.close.assert_called_once()
