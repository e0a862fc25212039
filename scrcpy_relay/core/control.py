"""
Control message serialization for scrcpy.

This module provides functionality to serialize control messages that are sent
to the Android device during a scrcpy session, to parse them back, and to write
them to the session's control socket with a verified byte count.
"""

import struct
import threading
import logging
from typing import Callable, Optional, Tuple

from .protocol import (
    ControlMessageType,
    CopyKey,
    ScreenPowerMode,
    ScrollDirection,
    AndroidKeyEventAction as KeyEventAction,
    AndroidMotionEventAction as MotionEventAction,
    POINTER_ID_GENERIC_FINGER,
    SCROLL_POSITIVE,
    SCROLL_NEGATIVE,
    TOUCH_PRESSURE_FULL,
    UHID_NAME_MAX_LENGTH,
    START_APP_NAME_MAX_LENGTH,
)
from .socket import ScrcpySocket, SocketWriteError

logger = logging.getLogger(__name__)


class ControlMessageError(ValueError):
    """Raised when a control message cannot be serialized or parsed."""

    pass


class ControlWriteError(Exception):
    """Raised when a control message could not be written completely."""

    pass


class ControlNotConnectedError(ControlWriteError):
    """Raised when no control socket is available."""

    pass


# Message kinds that carry nothing but the opcode byte
_EMPTY_MESSAGES = frozenset(
    [
        ControlMessageType.EXPAND_NOTIFICATION_PANEL,
        ControlMessageType.EXPAND_SETTINGS_PANEL,
        ControlMessageType.COLLAPSE_PANELS,
        ControlMessageType.ROTATE_DEVICE,
        ControlMessageType.OPEN_HARD_KEYBOARD_SETTINGS,
        ControlMessageType.RESET_VIDEO,
    ]
)

_U8_MAX = 0xFF
_U16_MAX = 0xFFFF
_U32_MAX = 0xFFFFFFFF
_U64_MASK = 0xFFFFFFFFFFFFFFFF


def scroll_amounts(direction: ScrollDirection) -> Tuple[int, int]:
    """
    Map a discrete scroll direction to (hscroll, vscroll).

    Left and down use the most negative 16-bit value, right and up the
    most positive one.
    """
    if direction == ScrollDirection.LEFT:
        return SCROLL_NEGATIVE, 0
    if direction == ScrollDirection.RIGHT:
        return SCROLL_POSITIVE, 0
    if direction == ScrollDirection.UP:
        return 0, SCROLL_POSITIVE
    if direction == ScrollDirection.DOWN:
        return 0, SCROLL_NEGATIVE
    raise ControlMessageError(f"Unknown scroll direction: {direction}")


def _check_length(field: str, length: int, limit: int) -> None:
    if length > limit:
        raise ControlMessageError(
            f"{field} too long: {length} bytes (max {limit})"
        )


class ControlMessage:
    """
    Represents a control message to be sent to the Android device.

    This class provides methods to create different types of control messages
    and serialize them to bytes for transmission.

    Example:
        >>> msg = ControlMessage(ControlMessageType.INJECT_KEYCODE)
        >>> msg.set_keycode(KeyEventAction.DOWN, 29)
        >>> msg.serialize().hex()
        '00000000001d0000000000000000'
    """

    def __init__(self, msg_type: ControlMessageType):
        """
        Initialize a control message.

        Args:
            msg_type: The type of control message
        """
        self.type = ControlMessageType(msg_type)
        self._data = {}

    def __eq__(self, other) -> bool:
        if not isinstance(other, ControlMessage):
            return NotImplemented
        return self.type == other.type and self._data == other._data

    def set_keycode(
        self, action: KeyEventAction, keycode: int, repeat: int = 0, metastate: int = 0
    ):
        """
        Set keycode injection parameters.

        Args:
            action: Key event action (DOWN or UP)
            keycode: Android keycode constant
            repeat: Repeat count (0 for no repeat)
            metastate: Meta key state bitmask
        """
        self._data["action"] = KeyEventAction(action)
        self._data["keycode"] = keycode
        self._data["repeat"] = repeat
        self._data["metastate"] = metastate

    def set_text(self, text: str):
        """
        Set text to inject.

        Args:
            text: Text string to inject, sent as UTF-8
        """
        self._data["text"] = text

    def set_touch_event(
        self,
        action: MotionEventAction,
        position_x: int,
        position_y: int,
        screen_width: int,
        screen_height: int,
        buttons: int = 0,
        pointer_id: int = POINTER_ID_GENERIC_FINGER,
    ):
        """
        Set touch event parameters.

        Pressure and the released button mask are derived from the action:
        an UP event carries zero pressure and no buttons.

        Args:
            action: Motion event action
            position_x: X coordinate in screen pixels
            position_y: Y coordinate in screen pixels
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            buttons: Button state bitmask
            pointer_id: Pointer identifier (defaults to the synthetic finger)
        """
        self._data["action"] = MotionEventAction(action)
        self._data["pointer_id"] = pointer_id
        self._data["position_x"] = position_x
        self._data["position_y"] = position_y
        self._data["screen_width"] = screen_width
        self._data["screen_height"] = screen_height
        self._data["buttons"] = buttons

    def set_scroll_event(
        self,
        position_x: int,
        position_y: int,
        screen_width: int,
        screen_height: int,
        hscroll: int = 0,
        vscroll: int = 0,
    ):
        """
        Set scroll event parameters.

        Args:
            position_x: X coordinate in screen pixels
            position_y: Y coordinate in screen pixels
            screen_width: Screen width in pixels
            screen_height: Screen height in pixels
            hscroll: Signed 16-bit horizontal scroll amount
            vscroll: Signed 16-bit vertical scroll amount
        """
        self._data["position_x"] = position_x
        self._data["position_y"] = position_y
        self._data["screen_width"] = screen_width
        self._data["screen_height"] = screen_height
        self._data["hscroll"] = hscroll
        self._data["vscroll"] = vscroll

    def set_scroll_direction(
        self,
        position_x: int,
        position_y: int,
        screen_width: int,
        screen_height: int,
        direction: ScrollDirection,
    ):
        """Set a discrete one-notch scroll in the given direction."""
        hscroll, vscroll = scroll_amounts(ScrollDirection(direction))
        self.set_scroll_event(
            position_x, position_y, screen_width, screen_height, hscroll, vscroll
        )

    def set_back_or_screen_on(self, action: KeyEventAction):
        """
        Set back-or-screen-on parameters.

        Args:
            action: Key event action (DOWN or UP)
        """
        self._data["action"] = KeyEventAction(action)

    def set_copy_key(self, copy_key: CopyKey):
        """
        Set copy key for GET_CLIPBOARD.

        Args:
            copy_key: COPY or CUT
        """
        self._data["copy_key"] = CopyKey(copy_key)

    def set_clipboard(self, sequence: int, text: str, paste: bool = False):
        """
        Set clipboard parameters.

        Args:
            sequence: Sequence number echoed back by the device (0 for no ack)
            text: Text to set in clipboard
            paste: Whether to paste after setting
        """
        self._data["sequence"] = sequence
        self._data["text"] = text
        self._data["paste"] = bool(paste)

    def set_display_power(self, on: bool):
        """
        Set display power mode.

        Args:
            on: True to turn the display on, False to turn it off
        """
        self._data["mode"] = ScreenPowerMode.NORMAL if on else ScreenPowerMode.OFF

    def set_uhid_create(
        self,
        id: int,
        report_desc: bytes,
        name: str = "",
        vendor_id: int = 0,
        product_id: int = 0,
    ) -> None:
        """
        Set UHID device creation parameters.

        Args:
            id: Device ID
            report_desc: HID report descriptor
            name: Device name
            vendor_id: USB vendor ID
            product_id: USB product ID
        """
        self._data["id"] = id
        self._data["report_desc"] = bytes(report_desc)
        self._data["name"] = name
        self._data["vendor_id"] = vendor_id
        self._data["product_id"] = product_id

    def set_uhid_input(self, id: int, data: bytes) -> None:
        """
        Set UHID input report.

        Args:
            id: Device ID
            data: Raw HID input report
        """
        self._data["id"] = id
        self._data["data"] = bytes(data)

    def set_uhid_destroy(self, id: int) -> None:
        """Set the ID of the UHID device to destroy."""
        self._data["id"] = id

    def set_start_app(self, name: str) -> None:
        """
        Set the application to start.

        Args:
            name: Package name, optionally prefixed with '+' to force-stop first
        """
        self._data["name"] = name

    def serialize(self) -> bytes:
        """
        Serialize control message to bytes.

        Returns:
            Serialized message as bytes

        Raises:
            ControlMessageError: If message data is invalid
        """
        buf = bytearray()
        buf.append(self.type)

        try:
            self._serialize_payload(buf)
        except struct.error as e:
            raise ControlMessageError(f"Invalid {self.type.name} field: {e}")

        return bytes(buf)

    def _serialize_payload(self, buf: bytearray) -> None:
        if self.type == ControlMessageType.INJECT_KEYCODE:
            buf.append(self._data.get("action", KeyEventAction.DOWN))
            buf.extend(
                struct.pack(
                    ">III",
                    self._data.get("keycode", 0),
                    self._data.get("repeat", 0),
                    self._data.get("metastate", 0),
                )
            )

        elif self.type == ControlMessageType.INJECT_TEXT:
            text_bytes = self._data.get("text", "").encode("utf-8")
            _check_length("Text", len(text_bytes), _U32_MAX)
            buf.extend(struct.pack(">I", len(text_bytes)))
            buf.extend(text_bytes)

        elif self.type == ControlMessageType.INJECT_TOUCH_EVENT:
            action = self._data.get("action", MotionEventAction.DOWN)
            buttons = self._data.get("buttons", 0)
            released = action == MotionEventAction.UP

            buf.append(action)
            buf.extend(
                struct.pack(
                    ">QIIHHHII",
                    self._data.get("pointer_id", POINTER_ID_GENERIC_FINGER) & _U64_MASK,
                    self._data.get("position_x", 0),
                    self._data.get("position_y", 0),
                    self._data.get("screen_width", 0),
                    self._data.get("screen_height", 0),
                    0 if released else TOUCH_PRESSURE_FULL,
                    buttons,
                    0 if released else buttons,
                )
            )

        elif self.type == ControlMessageType.INJECT_SCROLL_EVENT:
            # Trailing buttons field is always zero
            buf.extend(
                struct.pack(
                    ">IIHHhhI",
                    self._data.get("position_x", 0),
                    self._data.get("position_y", 0),
                    self._data.get("screen_width", 0),
                    self._data.get("screen_height", 0),
                    self._data.get("hscroll", 0),
                    self._data.get("vscroll", 0),
                    0,
                )
            )

        elif self.type == ControlMessageType.BACK_OR_SCREEN_ON:
            buf.append(self._data.get("action", KeyEventAction.DOWN))

        elif self.type == ControlMessageType.GET_CLIPBOARD:
            buf.append(self._data.get("copy_key", CopyKey.COPY))

        elif self.type == ControlMessageType.SET_CLIPBOARD:
            text_bytes = self._data.get("text", "").encode("utf-8")
            _check_length("Clipboard text", len(text_bytes), _U32_MAX)
            buf.extend(struct.pack(">Q", self._data.get("sequence", 0)))
            buf.append(1 if self._data.get("paste", False) else 0)
            buf.extend(struct.pack(">I", len(text_bytes)))
            buf.extend(text_bytes)

        elif self.type == ControlMessageType.SET_DISPLAY_POWER:
            buf.append(self._data.get("mode", ScreenPowerMode.NORMAL))

        elif self.type == ControlMessageType.UHID_CREATE:
            name_bytes = self._data.get("name", "").encode("utf-8")
            report_desc = self._data.get("report_desc", b"")
            _check_length("UHID name", len(name_bytes), UHID_NAME_MAX_LENGTH)
            _check_length("UHID report descriptor", len(report_desc), _U16_MAX)

            buf.extend(
                struct.pack(
                    ">HHH",
                    self._data.get("id", 0),
                    self._data.get("vendor_id", 0),
                    self._data.get("product_id", 0),
                )
            )
            buf.append(len(name_bytes))
            buf.extend(name_bytes)
            buf.extend(struct.pack(">H", len(report_desc)))
            buf.extend(report_desc)

        elif self.type == ControlMessageType.UHID_INPUT:
            data = self._data.get("data", b"")
            _check_length("UHID input report", len(data), _U16_MAX)
            buf.extend(struct.pack(">HH", self._data.get("id", 0), len(data)))
            buf.extend(data)

        elif self.type == ControlMessageType.UHID_DESTROY:
            buf.extend(struct.pack(">H", self._data.get("id", 0)))

        elif self.type == ControlMessageType.START_APP:
            name_bytes = self._data.get("name", "").encode("utf-8")
            _check_length("App name", len(name_bytes), START_APP_NAME_MAX_LENGTH)
            buf.append(len(name_bytes))
            buf.extend(name_bytes)

        elif self.type in _EMPTY_MESSAGES:
            # Only the type byte
            pass

        else:
            raise ControlMessageError(f"Unsupported message type: {self.type}")

    @classmethod
    def deserialize(cls, data: bytes) -> "ControlMessage":
        """
        Parse a serialized control message.

        Args:
            data: Exactly one serialized message

        Returns:
            The parsed message

        Raises:
            ControlMessageError: If the data is truncated, has trailing bytes
                or starts with an unknown opcode
        """
        if not data:
            raise ControlMessageError("Empty control message")

        try:
            msg_type = ControlMessageType(data[0])
        except ValueError:
            raise ControlMessageError(f"Unknown control message type: 0x{data[0]:02x}")

        reader = _PayloadReader(data, 1)
        msg = cls(msg_type)

        try:
            if msg_type == ControlMessageType.INJECT_KEYCODE:
                action = reader.u8()
                keycode, repeat, metastate = reader.unpack(">III")
                msg.set_keycode(action, keycode, repeat, metastate)

            elif msg_type == ControlMessageType.INJECT_TEXT:
                (length,) = reader.unpack(">I")
                msg.set_text(reader.text(length))

            elif msg_type == ControlMessageType.INJECT_TOUCH_EVENT:
                action = reader.u8()
                pointer_id, x, y, w, h, _pressure, buttons, _ = reader.unpack(">qIIHHHII")
                msg.set_touch_event(action, x, y, w, h, buttons, pointer_id)

            elif msg_type == ControlMessageType.INJECT_SCROLL_EVENT:
                x, y, w, h, hscroll, vscroll, _buttons = reader.unpack(">IIHHhhI")
                msg.set_scroll_event(x, y, w, h, hscroll, vscroll)

            elif msg_type == ControlMessageType.BACK_OR_SCREEN_ON:
                msg.set_back_or_screen_on(reader.u8())

            elif msg_type == ControlMessageType.GET_CLIPBOARD:
                msg.set_copy_key(reader.u8())

            elif msg_type == ControlMessageType.SET_CLIPBOARD:
                (sequence,) = reader.unpack(">Q")
                paste = reader.u8() != 0
                (length,) = reader.unpack(">I")
                msg.set_clipboard(sequence, reader.text(length), paste)

            elif msg_type == ControlMessageType.SET_DISPLAY_POWER:
                mode = ScreenPowerMode(reader.u8())
                msg.set_display_power(mode == ScreenPowerMode.NORMAL)

            elif msg_type == ControlMessageType.UHID_CREATE:
                id, vendor_id, product_id = reader.unpack(">HHH")
                name = reader.text(reader.u8())
                (desc_length,) = reader.unpack(">H")
                report_desc = reader.take(desc_length)
                msg.set_uhid_create(id, report_desc, name, vendor_id, product_id)

            elif msg_type == ControlMessageType.UHID_INPUT:
                id, size = reader.unpack(">HH")
                msg.set_uhid_input(id, reader.take(size))

            elif msg_type == ControlMessageType.UHID_DESTROY:
                (id,) = reader.unpack(">H")
                msg.set_uhid_destroy(id)

            elif msg_type == ControlMessageType.START_APP:
                msg.set_start_app(reader.text(reader.u8()))

        except (struct.error, UnicodeDecodeError, ValueError) as e:
            raise ControlMessageError(f"Malformed {msg_type.name} message: {e}")

        if reader.remaining:
            raise ControlMessageError(
                f"{reader.remaining} trailing bytes after {msg_type.name} message"
            )

        return msg

    def __str__(self) -> str:
        """String representation of the control message."""
        if self.type == ControlMessageType.INJECT_KEYCODE:
            action = self._data.get("action", KeyEventAction.DOWN).name
            keycode = self._data.get("keycode", 0)
            return f"ControlMessage(INJECT_KEYCODE, action={action}, keycode={keycode})"

        elif self.type == ControlMessageType.INJECT_TEXT:
            text = self._data.get("text", "")
            return f"ControlMessage(INJECT_TEXT, text='{text[:20]}...')"

        elif self.type == ControlMessageType.INJECT_TOUCH_EVENT:
            action = self._data.get("action", MotionEventAction.DOWN).name
            x = self._data.get("position_x", 0)
            y = self._data.get("position_y", 0)
            return f"ControlMessage(INJECT_TOUCH_EVENT, action={action}, pos=({x},{y}))"

        elif self.type == ControlMessageType.SET_CLIPBOARD:
            sequence = self._data.get("sequence", 0)
            paste = self._data.get("paste", False)
            return f"ControlMessage(SET_CLIPBOARD, sequence={sequence}, paste={paste})"

        return f"ControlMessage({self.type.name})"

    __repr__ = __str__


class _PayloadReader:
    """Cursor over a serialized message; raises struct.error when short."""

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self._offset = offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def unpack(self, fmt: str) -> tuple:
        values = struct.unpack_from(fmt, self._data, self._offset)
        self._offset += struct.calcsize(fmt)
        return values

    def u8(self) -> int:
        return self.unpack(">B")[0]

    def take(self, size: int) -> bytes:
        if size > self.remaining:
            raise struct.error(f"need {size} bytes, have {self.remaining}")
        chunk = self._data[self._offset:self._offset + size]
        self._offset += size
        return chunk

    def text(self, size: int) -> str:
        return self.take(size).decode("utf-8")


class ControlWriter:
    """
    Serialized writes to the current session's control socket.

    The session manager attaches the control socket once a session is
    connected and detaches it on teardown. Every write checks that the whole
    message went out; an I/O error or a short write invokes on_failure (a
    non-blocking disconnect request) before raising ControlWriteError.
    """

    def __init__(self, on_failure: Optional[Callable[[], None]] = None):
        self._socket: Optional[ScrcpySocket] = None
        self._lock = threading.Lock()
        self._on_failure = on_failure

    def set_failure_callback(self, on_failure: Optional[Callable[[], None]]) -> None:
        self._on_failure = on_failure

    def attach(self, sock: ScrcpySocket) -> None:
        with self._lock:
            self._socket = sock

    def detach(self) -> None:
        with self._lock:
            self._socket = None

    @property
    def is_attached(self) -> bool:
        return self._socket is not None

    def send(self, msg: ControlMessage) -> None:
        """
        Serialize and write one control message.

        Raises:
            ControlMessageError: If the message cannot be serialized
            ControlWriteError: If the message was not written completely
        """
        data = msg.serialize()
        logger.debug(f"Sending {msg} ({len(data)} bytes)")
        self.send_raw(data)

    def send_raw(self, data: bytes) -> None:
        """
        Write pre-encoded bytes in one call.

        Raises:
            ControlNotConnectedError: If no control socket is attached
            ControlWriteError: If the write failed or came up short
        """
        with self._lock:
            sock = self._socket
            if sock is None:
                raise ControlNotConnectedError("Control socket not connected")

            try:
                written = sock.write(data)
            except SocketWriteError as e:
                self._fail()
                raise ControlWriteError(str(e)) from e

            if written != len(data):
                self._fail()
                raise ControlWriteError(
                    f"Short control write: {written}/{len(data)} bytes"
                )

    def _fail(self) -> None:
        logger.warning("Control socket write failed, requesting disconnect")
        if self._on_failure is not None:
            self._on_failure()
