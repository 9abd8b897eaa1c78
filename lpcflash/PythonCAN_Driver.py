"""
PythonCAN Driver Module
=======================
CAN frame transport on top of python-can. Works with any python-can
interface; the flasher defaults to 'slcan' which drives USBtin and other
serial-line CAN adapters.

    interface='slcan'     channel='/dev/ttyACM0' or 'COM3'   (USBtin, CANable slcan)
    interface='gs_usb'    channel=0                          (CANable candleLight)
    interface='socketcan' channel='can0'
    interface='pcan'      channel='PCAN_USBBUS1'
    interface='virtual'   channel=<any name>                 (tests)

Received frames are delivered asynchronously from a can.Notifier thread to
every registered listener.
"""

from typing import Any, Dict, List, Optional

import can

from .CAN_Types import CANMessage, FilterRule, MessageCallback, OpenMode
from .Flash_Errors import TransportError


DEFAULT_INTERFACE = 'slcan'
NOTIFIER_TIMEOUT = 0.1       # Notifier read timeout (seconds)
SEND_TIMEOUT = 1.0


class PythonCANDriver:
    """
    Frame transport wrapping a python-can bus.
    """

    def __init__(self, interface: str = DEFAULT_INTERFACE, verbose: bool = False, **bus_kwargs):
        """
        Args:
            interface: python-can interface name
            verbose: Print connection and frame diagnostics
            **bus_kwargs: Extra keyword arguments for can.Bus (e.g. tty_baudrate for slcan)
        """
        self.interface = interface
        self.verbose = verbose
        self._bus_kwargs = bus_kwargs

        self._channel: Optional[Any] = None
        self._connected: bool = False
        self._bus: Optional[can.BusABC] = None
        self._notifier: Optional[can.Notifier] = None
        self._filters: List[FilterRule] = []
        self._listeners: List[MessageCallback] = []

    def _debug(self, text: str):
        if self.verbose:
            print(f"[PythonCAN] {text}")

    @staticmethod
    def list_devices(interface: str = DEFAULT_INTERFACE) -> List[Dict[str, Any]]:
        """
        Detect available channels for an interface.

        Returns:
            List of python-can config dictionaries (interface, channel, ...)
        """
        try:
            return can.detect_available_configs(interfaces=[interface])
        except Exception as e:
            raise TransportError(f"Device scan failed for {interface}: {e}") from e

    # ------------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------------

    def connect(self, channel: Any):
        """
        Select the adapter channel (serial port, device index, interface name).

        The bus itself is opened by open_channel() since most adapters need
        the bit rate at open time.
        """
        if self._connected:
            raise TransportError(f"Already connected to {self._channel}")
        if channel is None or channel == '':
            raise TransportError("No CAN channel given")

        self._channel = channel
        self._connected = True
        self._debug(f"Using {self.interface} channel {channel}")

    def disconnect(self):
        """Close the channel if still open and release the adapter."""
        if self._bus is not None:
            self.close_channel()
        self._connected = False
        self._channel = None
        self._debug("Disconnected")

    def set_filter(self, rules: List[FilterRule]):
        """
        Install acceptance filters. Applied immediately when the channel is
        open, otherwise when it gets opened.
        """
        self._filters = list(rules)
        if self._bus is not None:
            try:
                self._bus.set_filters(self._can_filters())
            except can.CanError as e:
                raise TransportError(f"Failed to set filters: {e}") from e

    def _can_filters(self) -> Optional[List[Dict[str, Any]]]:
        if not self._filters:
            return None
        return [
            {"can_id": rule.accept_id, "can_mask": rule.mask, "extended": rule.extended}
            for rule in self._filters
        ]

    def open_channel(self, bitrate: int, mode: OpenMode = OpenMode.ACTIVE):
        """
        Open the CAN bus at the given bit rate and start frame delivery.

        Raises:
            TransportError: not connected, already open, or the adapter failed
        """
        if not self._connected:
            raise TransportError("Not connected")
        if self._bus is not None:
            raise TransportError("CAN channel already open")

        self._debug(f"Opening {self.interface}:{self._channel} at {bitrate} bit/s ({mode.value})")

        try:
            self._bus = can.Bus(
                interface=self.interface,
                channel=self._channel,
                bitrate=bitrate,
                can_filters=self._can_filters(),
                **self._bus_kwargs
            )
        except (can.CanError, OSError, ValueError, ImportError) as e:
            self._bus = None
            raise TransportError(f"Failed to open {self.interface} channel {self._channel}: {e}") from e

        if mode == OpenMode.LISTEN_ONLY:
            try:
                self._bus.state = can.BusState.PASSIVE
            except (NotImplementedError, can.CanError) as e:
                self._shutdown_bus()
                raise TransportError(f"Listen-only mode not supported by {self.interface}: {e}") from e

        self._notifier = can.Notifier(self._bus, [self._dispatch], timeout=NOTIFIER_TIMEOUT)

    def close_channel(self):
        """Stop frame delivery and shut the bus down."""
        if self._bus is None:
            raise TransportError("CAN channel not open")
        self._shutdown_bus()
        self._debug("Channel closed")

    def _shutdown_bus(self):
        if self._notifier is not None:
            self._notifier.stop()
            self._notifier = None
        try:
            self._bus.shutdown()
        except can.CanError as e:
            raise TransportError(f"Failed to close CAN channel: {e}") from e
        finally:
            self._bus = None

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
        """Transmit one frame."""
        if self._bus is None:
            raise TransportError("CAN channel not open")

        msg = can.Message(
            arbitration_id=frame.id,
            data=frame.data,
            is_extended_id=frame.is_extended,
            is_remote_frame=frame.is_remote,
        )
        try:
            self._bus.send(msg, timeout=SEND_TIMEOUT)
        except can.CanError as e:
            raise TransportError(f"Send failed: {e}") from e

    def _dispatch(self, msg: can.Message):
        """Notifier callback: convert and hand the frame to the listeners."""
        if msg.is_error_frame:
            self._debug(f"Error frame at {msg.timestamp:.3f}")
            return

        frame = CANMessage(
            id=msg.arbitration_id,
            data=bytes(msg.data),
            timestamp=msg.timestamp,
            is_extended=msg.is_extended_id,
            is_remote=msg.is_remote_frame,
            dlc=msg.dlc,
        )

        for callback in list(self._listeners):
            try:
                callback(frame)
            except Exception as e:
                print(f"[PythonCAN] Callback error: {e}")

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_open(self) -> bool:
        return self._bus is not None
