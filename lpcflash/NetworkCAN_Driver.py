"""
Network CAN Driver Module
=========================
CAN frame transport that reaches the bus through a remote HTTP CAN server
(TREVCAN-Explorer-Server or compatible). Frames are sent with POST
/api/messages and received by a background thread polling GET /api/messages.

Acceptance filters are applied on the client side since the server forwards
every frame it sees.
"""

import threading
from collections import Counter
from typing import Any, Dict, List, Optional

import requests

from .CAN_Types import CANBaudRate, CANMessage, FilterRule, MessageCallback, OpenMode, accepts
from .Flash_Errors import TransportError


DEFAULT_PORT = 8080
REQUEST_TIMEOUT = 5.0
CONNECT_TIMEOUT = 10.0
POLL_INTERVAL = 0.02          # Poll interval while a channel is open (seconds)
POLL_BATCH = 200
MAX_POLL_ERRORS = 10


def parse_server_address(address: str) -> str:
    """
    Turn 'host', 'host:port' or a full URL into a base URL.
    """
    address = address.strip().rstrip('/')
    if not address:
        raise TransportError("No server address given")
    if address.startswith(('http://', 'https://')):
        return address
    if ':' not in address:
        address = f"{address}:{DEFAULT_PORT}"
    return f"http://{address}"


class NetworkCANDriver:
    """
    Network CAN Driver for connecting to remote CAN HTTP servers.
    """

    def __init__(self, server_channel: int = 0, poll_interval: float = POLL_INTERVAL,
                 verbose: bool = False):
        """
        Args:
            server_channel: CAN channel index on the remote server
            poll_interval: Delay between message polls in seconds
            verbose: Print connection and polling diagnostics
        """
        self.server_channel = server_channel
        self.verbose = verbose
        self._poll_interval = max(0.005, poll_interval)

        self._base_url: Optional[str] = None
        self._session: Optional[requests.Session] = None
        self._connected: bool = False
        self._open: bool = False
        self._server_info: Dict[str, Any] = {}

        self._filters: List[FilterRule] = []
        self._listeners: List[MessageCallback] = []
        self._receive_thread: Optional[threading.Thread] = None
        self._stop_receive = threading.Event()
        self._last_timestamp: float = 0.0
        self._seen_at_timestamp: Counter = Counter()

    def _debug(self, text: str):
        if self.verbose:
            print(f"[NetworkCAN] {text}")

    def _request(self, method: str, path: str, timeout: float = REQUEST_TIMEOUT, **kwargs) -> Dict[str, Any]:
        """Issue an API request and return the decoded JSON body."""
        if self._session is None:
            raise TransportError("Not connected")
        try:
            response = self._session.request(method, f"{self._base_url}{path}", timeout=timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if response.status_code != 200:
            raise TransportError(f"{method} {path} returned status {response.status_code}")
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"{method} {path} returned invalid JSON") from e

    # ------------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------------

    def connect(self, address: str):
        """
        Connect to the remote CAN server.

        Args:
            address: 'host', 'host:port' or base URL of the server
        """
        if self._connected:
            raise TransportError(f"Already connected to {self._base_url}")

        self._base_url = parse_server_address(address)
        self._session = requests.Session()

        try:
            self._server_info = self._request('GET', '/')
        except TransportError:
            self._session.close()
            self._session = None
            raise

        self._connected = True
        self._debug(f"Connected to server: {self._server_info.get('name', 'Unknown')}")

    def disconnect(self):
        """Close the channel if still open and drop the HTTP session."""
        if self._open:
            self.close_channel()
        if self._session is not None:
            self._session.close()
            self._session = None
        self._connected = False
        self._debug("Disconnected from server")

    def get_server_devices(self) -> List[Dict]:
        """List CAN devices available on the remote server."""
        data = self._request('GET', '/api/devices')
        return data.get('devices', []) if data.get('success') else []

    def set_filter(self, rules: List[FilterRule]):
        self._filters = list(rules)

    def open_channel(self, bitrate: int, mode: OpenMode = OpenMode.ACTIVE):
        """
        Connect the server to its CAN hardware and start polling frames.
        """
        if not self._connected:
            raise TransportError("Not connected")
        if self._open:
            raise TransportError("CAN channel already open")
        if mode != OpenMode.ACTIVE:
            raise TransportError(f"Mode {mode.value} not supported by network server")

        baudrate = next((b for b in CANBaudRate if b.value == bitrate), None)
        if baudrate is None:
            raise TransportError(f"Unsupported bit rate: {bitrate}")

        status = self._request('GET', '/api/status')
        server_status = status.get('status', {})
        if status.get('success') and server_status.get('connected'):
            self._debug("Server already connected to CAN bus")
            if server_status.get('baudrate') not in (None, baudrate.name):
                raise TransportError(f"Server bus runs at {server_status.get('baudrate')}, need {baudrate.name}")
        else:
            result = self._request('POST', '/api/connect', timeout=CONNECT_TIMEOUT,
                                   json={'channel': self.server_channel, 'baudrate': baudrate.name})
            if not result.get('success'):
                raise TransportError(f"Server connect failed: {result.get('error', 'Unknown error')}")
            self._debug(f"Server connected to CAN bus: {result.get('message', '')}")

        # Drop frames buffered before this session
        try:
            self._request('DELETE', '/api/messages')
        except TransportError as e:
            self._debug(f"Buffer clear failed (may not be supported): {e}")

        self._last_timestamp = 0.0
        self._seen_at_timestamp = Counter()
        self._stop_receive.clear()
        self._receive_thread = threading.Thread(target=self._receive_loop, daemon=True)
        self._receive_thread.start()
        self._open = True

    def close_channel(self):
        """Stop polling. The server keeps its own CAN connection."""
        if not self._open:
            raise TransportError("CAN channel not open")
        self._stop_receive.set()
        if self._receive_thread is not None and self._receive_thread.is_alive():
            self._receive_thread.join(timeout=2.0)
        self._receive_thread = None
        self._open = False

    # ------------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------------

    def add_message_listener(self, callback: MessageCallback):
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_message_listener(self, callback: MessageCallback):
        if callback in self._listeners:
            self._listeners.remove(callback)

    def send(self, frame: CANMessage):
        """Send a CAN message through the remote server."""
        if not self._open:
            raise TransportError("CAN channel not open")

        result = self._request('POST', '/api/messages', json={
            'id': f"0x{frame.id:X}",
            'data': list(frame.data),
            'is_extended': frame.is_extended,
        })
        if not result.get('success', False):
            raise TransportError(f"Send failed: {result.get('error', 'Unknown error')}")

    @staticmethod
    def _parse_message(msg_data: Dict[str, Any]) -> CANMessage:
        """Build a CANMessage from one server message entry."""
        msg_id = msg_data.get('id', 0)
        if isinstance(msg_id, str):
            msg_id = int(msg_id, 16)

        raw_data = msg_data.get('data', [])
        if isinstance(raw_data, str):
            raw_data = bytes.fromhex(raw_data.replace(' ', ''))
        else:
            raw_data = bytes(raw_data)
        if not raw_data and msg_data.get('data_hex'):
            raw_data = bytes.fromhex(msg_data['data_hex'].replace(' ', ''))

        return CANMessage(
            id=msg_id,
            data=raw_data,
            timestamp=msg_data.get('timestamp', 0.0),
            is_extended=msg_data.get('is_extended', msg_id > 0x7FF),
            is_remote=msg_data.get('is_remote', False),
            dlc=msg_data.get('dlc', len(raw_data)),
        )

    def poll_once(self) -> int:
        """
        Fetch new frames from the server and deliver accepted ones.

        Returns:
            Number of frames delivered
        """
        data = self._request('GET', '/api/messages', params={'count': POLL_BATCH})
        if not data.get('success'):
            return 0

        delivered = 0
        batch_counts = Counter()
        messages = sorted(data.get('messages', []), key=lambda m: m.get('timestamp', 0))
        for msg_data in messages:
            timestamp = msg_data.get('timestamp', 0)
            if timestamp < self._last_timestamp:
                continue
            if timestamp > self._last_timestamp:
                self._last_timestamp = timestamp
                self._seen_at_timestamp = Counter()
                batch_counts = Counter()

            # Frames sharing the newest timestamp come back in the next poll
            key = (msg_data.get('id'), repr(msg_data.get('data')), msg_data.get('data_hex'))
            batch_counts[key] += 1
            if batch_counts[key] <= self._seen_at_timestamp[key]:
                continue
            self._seen_at_timestamp[key] = batch_counts[key]

            frame = self._parse_message(msg_data)
            if not accepts(self._filters, frame):
                continue

            delivered += 1
            for callback in list(self._listeners):
                try:
                    callback(frame)
                except Exception as e:
                    print(f"[NetworkCAN] Callback error: {e}")
        return delivered

    def _receive_loop(self):
        """Background thread polling messages from the server."""
        self._debug(f"Receive thread started (poll interval: {self._poll_interval}s)")
        error_count = 0

        while not self._stop_receive.is_set():
            try:
                self.poll_once()
                error_count = 0
            except TransportError as e:
                error_count += 1
                self._debug(f"Receive error: {e}")
                if error_count >= MAX_POLL_ERRORS:
                    print(f"[NetworkCAN] Too many errors ({error_count}), stopping receive")
                    break

            self._stop_receive.wait(self._poll_interval)

        self._debug("Receive thread stopped")

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_open(self) -> bool:
        return self._open

    @property
    def server_url(self) -> Optional[str]:
        return self._base_url
