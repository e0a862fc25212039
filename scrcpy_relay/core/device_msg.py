"""
Device message deserialization and receiver for scrcpy.

This module provides functionality to:
1. Deserialize device messages received from the Android device
2. Run a receiver thread that reads them from the control socket
3. Republish clipboard, ACK, and UHID messages on broadcast points

Based on official scrcpy receiver implementation (app/src/receiver.c)
"""

import json
import struct
import logging
import threading
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .protocol import DeviceMessageType, DEVICE_MSG_MAX_SIZE
from .channel import Mailbox
from .socket import ScrcpySocket, SocketError

logger = logging.getLogger(__name__)


class DeviceMessageError(Exception):
    """Raised when a device message cannot be read completely"""

    pass


class UnknownDeviceMessageError(DeviceMessageError):
    """Raised when the device sends a message type this client does not know"""

    def __init__(self, msg_type: int):
        super().__init__(f"Unknown device message type: {msg_type}")
        self.msg_type = msg_type


@dataclass(frozen=True)
class ClipboardMessage:
    """
    Clipboard content pushed by the device.

    Attributes:
        text: New clipboard text
    """
    text: str

    def serialize(self) -> bytes:
        data = self.text.encode("utf-8")
        return struct.pack(">BI", DeviceMessageType.CLIPBOARD, len(data)) + data

    def to_line(self) -> str:
        """Render as a JSON-quoted string"""
        return json.dumps(self.text, ensure_ascii=False)


@dataclass(frozen=True)
class AckClipboardMessage:
    """
    Acknowledgment of a SET_CLIPBOARD request.

    Attributes:
        sequence: Sequence number of the acknowledged request
    """
    sequence: int

    def serialize(self) -> bytes:
        return struct.pack(">BQ", DeviceMessageType.ACK_CLIPBOARD, self.sequence)

    def to_line(self) -> str:
        """Render as a bare decimal"""
        return str(self.sequence)


@dataclass(frozen=True)
class UhidOutputMessage:
    """
    Output report for a virtual HID device.

    Attributes:
        id: UHID device ID
        data: Raw output report
    """
    id: int
    data: bytes

    def serialize(self) -> bytes:
        return struct.pack(">BHH", DeviceMessageType.UHID_OUTPUT, self.id, len(self.data)) + self.data

    def to_line(self) -> str:
        """Render as lowercase hex"""
        return self.data.hex()


DeviceMessage = Union[ClipboardMessage, AckClipboardMessage, UhidOutputMessage]


def read_device_message(read_exactly: Callable[[int], bytes]) -> DeviceMessage:
    """
    Read one device message.

    Args:
        read_exactly: Blocking reader returning exactly the requested number
            of bytes or raising on a short read

    Returns:
        The decoded message

    Raises:
        UnknownDeviceMessageError: If the type tag is unknown
        DeviceMessageError: If a length field is out of range
    """
    tag = read_exactly(1)[0]

    if tag == DeviceMessageType.CLIPBOARD:
        (length,) = struct.unpack(">I", read_exactly(4))
        if length > DEVICE_MSG_MAX_SIZE:
            raise DeviceMessageError(f"Clipboard text too large: {length} bytes")
        text = read_exactly(length).decode("utf-8", errors="replace")
        return ClipboardMessage(text)

    if tag == DeviceMessageType.ACK_CLIPBOARD:
        (sequence,) = struct.unpack(">Q", read_exactly(8))
        return AckClipboardMessage(sequence)

    if tag == DeviceMessageType.UHID_OUTPUT:
        id, size = struct.unpack(">HH", read_exactly(4))
        return UhidOutputMessage(id, read_exactly(size))

    raise UnknownDeviceMessageError(tag)


def decode_device_message(data: bytes) -> DeviceMessage:
    """
    Decode one device message from a complete buffer.

    Raises:
        DeviceMessageError: If the buffer is short or has trailing bytes
    """
    offset = 0

    def read_exactly(size: int) -> bytes:
        nonlocal offset
        if offset + size > len(data):
            raise DeviceMessageError(
                f"Truncated device message: need {offset + size} bytes, have {len(data)}"
            )
        chunk = bytes(data[offset:offset + size])
        offset += size
        return chunk

    msg = read_device_message(read_exactly)
    if offset != len(data):
        raise DeviceMessageError(f"{len(data) - offset} trailing bytes after device message")
    return msg


class DeviceMessageReceiver:
    """
    Receiver thread for processing device messages from scrcpy server.

    Reads the control socket in arrival order and republishes each message:
    clipboard text and clipboard ACKs on the clipboard broadcast point, UHID
    output reports on the UHID broadcast point. With the stdout options set,
    the rendered lines are printed instead.

    The loop ends on the first read error, end of stream, or unknown type.
    It never closes the socket; teardown belongs to the session manager.

    Example:
        >>> receiver = DeviceMessageReceiver(control_socket, clipboard, uhid_output)
        >>> receiver.start()
        >>> clipboard.receive(timeout=2.0)
        '"copied text"'
    """

    def __init__(
        self,
        socket: ScrcpySocket,
        clipboard_channel: Mailbox,
        uhid_output_channel: Mailbox,
        stdout_clipboard: bool = False,
        stdout_uhid_output: bool = False,
    ):
        """
        Initialize device message receiver.

        Args:
            socket: Control socket to read messages from
            clipboard_channel: Broadcast point for clipboard and ACK lines
            uhid_output_channel: Broadcast point for UHID output lines
            stdout_clipboard: Print clipboard lines instead of publishing them
            stdout_uhid_output: Print UHID output lines instead of publishing them
        """
        self._socket = socket
        self._clipboard_channel = clipboard_channel
        self._uhid_output_channel = uhid_output_channel
        self._stdout_clipboard = stdout_clipboard
        self._stdout_uhid_output = stdout_uhid_output

        self._thread: Optional[threading.Thread] = None

        # Statistics
        self.messages_received = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the receiver thread."""
        if self._thread is not None:
            logger.warning("Receiver thread already running")
            return

        self._thread = threading.Thread(
            target=self._run_receiver_loop,
            name="DeviceReceiver",
            daemon=True
        )
        self._thread.start()
        logger.debug("Device message receiver thread started")

    def join(self, timeout: Optional[float] = 5.0) -> None:
        """Wait for the receiver loop to end (after the socket was closed)."""
        if self._thread is None:
            return

        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("Receiver thread did not stop gracefully")

    def _run_receiver_loop(self) -> None:
        """Main receiver loop (runs in dedicated thread)."""
        try:
            while True:
                msg = read_device_message(self._socket.recv_exactly)
                self.messages_received += 1
                self._dispatch(msg)
        except UnknownDeviceMessageError as e:
            logger.warning(f"{e}, stopping receiver")
        except (SocketError, DeviceMessageError) as e:
            logger.debug(f"Device receiver stopped: {e}")
        finally:
            logger.info(f"Device receiver loop ended ({self.messages_received} messages)")

    def _dispatch(self, msg: DeviceMessage) -> None:
        line = msg.to_line()

        if isinstance(msg, UhidOutputMessage):
            logger.debug(f"UHID output for device {msg.id}: {len(msg.data)} bytes")
            if self._stdout_uhid_output:
                print(line, flush=True)
            else:
                self._uhid_output_channel.publish(line)
            return

        if isinstance(msg, AckClipboardMessage):
            logger.debug(f"Clipboard ACK: sequence={msg.sequence}")
        else:
            logger.debug(f"Clipboard from device: {len(msg.text)} chars")

        if self._stdout_clipboard:
            print(line, flush=True)
        else:
            self._clipboard_channel.publish(line)
