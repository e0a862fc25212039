"""
Bridge capability interface.

The Bridge ties the session manager, the device message broadcast points,
the frame cache and the optional decode pipeline together, and exposes the
operations front-ends build on. Control operations never raise: they log
and return False when the message could not be written.
"""

import json
import time
import logging
import threading
from typing import Any, Callable, List, Optional

from ..core.channel import Mailbox
from ..core.control import ControlMessage, ControlMessageError, ControlWriteError
from ..core.decoder import (
    DecodePipeline,
    ExecutableDecodePipeline,
    FfmpegDecodePipeline,
    PyAVDecodePipeline,
)
from ..core.frame_cache import BYTES_PER_PIXEL_RGB, BYTES_PER_PIXEL_RGBA, Frame, FrameCache
from ..core.protocol import (
    ControlMessageType,
    CopyKey,
    ScrollDirection,
    AndroidKeyEventAction as KeyEventAction,
    AndroidMotionEventAction as MotionEventAction,
    AndroidMotionEventButtons as MotionEventButtons,
    POINTER_ID_GENERIC_FINGER,
)
from ..core.session import SessionInfo, SessionManager, SessionState
from ..core.socket import SocketType
from ..core.stream import RelayMode, relay_stream
from .config import BridgeConfig, VideoDecoderConfig

logger = logging.getLogger(__name__)


def create_decode_pipeline(
    config: VideoDecoderConfig, manager: SessionManager, frame_cache: FrameCache
) -> DecodePipeline:
    """Build the decode pipeline selected by the configuration."""
    if config.kind == "pyav":
        return PyAVDecodePipeline(manager, frame_cache, alpha=config.alpha)
    if config.kind == "executable":
        return ExecutableDecodePipeline(manager, frame_cache, config.executable, alpha=config.alpha)
    return FfmpegDecodePipeline(manager, frame_cache, config.executable, alpha=config.alpha)


class Bridge:
    """
    Single-device scrcpy bridge.

    Example:
        >>> bridge = Bridge(load_config("bridge.json"))
        >>> bridge.start()
        >>> bridge.connect()
        True
        >>> bridge.press_key(3)  # HOME
        True
        >>> bridge.stop()
    """

    def __init__(
        self,
        config: Optional[BridgeConfig] = None,
        command_runner: Optional[Callable[[List[Any]], None]] = None,
    ):
        """
        Args:
            config: Bridge configuration (uses defaults if None)
            command_runner: Executes the connected-commands list after each
                successful connection
        """
        self.config = config or BridgeConfig()

        self.clipboard_channel: Mailbox[str] = Mailbox("clipboard")
        self.uhid_output_channel: Mailbox[str] = Mailbox("uhid output")

        self.manager = SessionManager(
            self.config.scrcpy,
            self.clipboard_channel,
            self.uhid_output_channel,
            command_runner=command_runner,
        )

        decoder_config = self.config.video_decoder
        self.frame_cache = FrameCache(
            BYTES_PER_PIXEL_RGBA if decoder_config.alpha else BYTES_PER_PIXEL_RGB
        )
        self.pipeline: Optional[DecodePipeline] = None
        if decoder_config.enabled and self.config.scrcpy.video:
            self.pipeline = create_decode_pipeline(decoder_config, self.manager, self.frame_cache)

        # Serializes clipboard request/response exchanges
        self._clipboard_lock = threading.Lock()
        self._started = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def enabled(self) -> bool:
        return self.config.scrcpy.enabled

    def start(self) -> None:
        """
        Start the session manager and the decode pipeline.

        Raises:
            ListenerBindError: If reverse mode cannot bind its listener
        """
        if not self.enabled:
            logger.info("scrcpy disabled, bridge not started")
            return
        if self._started:
            return

        self.manager.start()
        if self.pipeline is not None:
            self.pipeline.start()
        self._started = True
        logger.info("Bridge started")

    def stop(self) -> None:
        if not self._started:
            return

        self.manager.stop()
        if self.pipeline is not None:
            self.pipeline.stop()
        self._started = False
        logger.info("Bridge stopped")

    def connect(self, address: Optional[str] = None) -> bool:
        """
        Request a (re)connection without blocking.

        Args:
            address: "host:port" to dial in forward mode (None uses the
                configured address)

        Returns:
            False if another request is already pending
        """
        return self.manager.request_connect(address)

    def disconnect(self) -> bool:
        """Request a disconnection without blocking."""
        return self.manager.request_disconnect()

    def wait_state(self, state: SessionState, timeout: float) -> bool:
        """Poll until the session reaches state; False on timeout."""
        deadline = time.monotonic() + timeout
        while self.manager.state != state:
            if time.monotonic() >= deadline:
                return False
            time.sleep(0.01)
        return True

    def session_info(self) -> SessionInfo:
        return self.manager.snapshot()

    def set_connected_commands(self, commands: List[Any]) -> None:
        self.manager.set_connected_commands(commands)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _send(self, msg: ControlMessage) -> bool:
        try:
            self.manager.control_writer.send(msg)
        except (ControlMessageError, ControlWriteError) as e:
            logger.warning(f"{msg.type.name} failed: {e}")
            return False
        return True

    def _send_simple(self, msg_type: ControlMessageType) -> bool:
        return self._send(ControlMessage(msg_type))

    def inject_keycode(
        self,
        keycode: int,
        action: int = KeyEventAction.DOWN,
        repeat: int = 0,
        metastate: int = 0,
    ) -> bool:
        """Inject a single key event."""
        msg = ControlMessage(ControlMessageType.INJECT_KEYCODE)
        try:
            msg.set_keycode(action, keycode, repeat, metastate)
        except ValueError as e:
            logger.warning(f"INJECT_KEYCODE failed: {e}")
            return False
        return self._send(msg)

    def press_key(self, keycode: int, metastate: int = 0) -> bool:
        """Inject a key down followed by a key up."""
        return (
            self.inject_keycode(keycode, KeyEventAction.DOWN, 0, metastate)
            and self.inject_keycode(keycode, KeyEventAction.UP, 0, metastate)
        )

    def inject_text(self, text: str) -> bool:
        msg = ControlMessage(ControlMessageType.INJECT_TEXT)
        msg.set_text(text)
        return self._send(msg)

    def inject_touch_event(
        self,
        action: int,
        x: int,
        y: int,
        width: int,
        height: int,
        buttons: int = MotionEventButtons.PRIMARY,
        pointer_id: int = POINTER_ID_GENERIC_FINGER,
    ) -> bool:
        """
        Inject one touch event.

        Args:
            action: DOWN, UP or MOVE
            x: X coordinate in screen pixels
            y: Y coordinate in screen pixels
            width: Screen width the coordinates refer to
            height: Screen height the coordinates refer to
            buttons: Button state bitmask
            pointer_id: Pointer identifier
        """
        msg = ControlMessage(ControlMessageType.INJECT_TOUCH_EVENT)
        try:
            msg.set_touch_event(action, x, y, width, height, buttons, pointer_id)
        except ValueError as e:
            logger.warning(f"INJECT_TOUCH_EVENT failed: {e}")
            return False
        return self._send(msg)

    def touch(self, x: int, y: int, width: int, height: int) -> bool:
        """Tap: touch down followed by touch up at the same point."""
        return (
            self.inject_touch_event(MotionEventAction.DOWN, x, y, width, height)
            and self.inject_touch_event(MotionEventAction.UP, x, y, width, height)
        )

    def inject_scroll_event(
        self, x: int, y: int, width: int, height: int, direction: ScrollDirection
    ) -> bool:
        """Scroll one notch in direction ("left", "right", "up" or "down")."""
        msg = ControlMessage(ControlMessageType.INJECT_SCROLL_EVENT)
        try:
            msg.set_scroll_direction(x, y, width, height, ScrollDirection(direction))
        except ValueError as e:
            logger.warning(f"INJECT_SCROLL_EVENT failed: {e}")
            return False
        return self._send(msg)

    def back_or_screen_on(self) -> bool:
        """Press back, or turn the screen on if it is off."""
        for action in (KeyEventAction.DOWN, KeyEventAction.UP):
            msg = ControlMessage(ControlMessageType.BACK_OR_SCREEN_ON)
            msg.set_back_or_screen_on(action)
            if not self._send(msg):
                return False
        return True

    def expand_notification_panel(self) -> bool:
        return self._send_simple(ControlMessageType.EXPAND_NOTIFICATION_PANEL)

    def expand_settings_panel(self) -> bool:
        return self._send_simple(ControlMessageType.EXPAND_SETTINGS_PANEL)

    def collapse_panels(self) -> bool:
        return self._send_simple(ControlMessageType.COLLAPSE_PANELS)

    def set_display_power(self, on: bool) -> bool:
        msg = ControlMessage(ControlMessageType.SET_DISPLAY_POWER)
        msg.set_display_power(on)
        return self._send(msg)

    def rotate_device(self) -> bool:
        return self._send_simple(ControlMessageType.ROTATE_DEVICE)

    def open_hard_keyboard_settings(self) -> bool:
        return self._send_simple(ControlMessageType.OPEN_HARD_KEYBOARD_SETTINGS)

    def start_app(self, name: str) -> bool:
        """Start an app by package name ("+name" force-stops it first)."""
        msg = ControlMessage(ControlMessageType.START_APP)
        msg.set_start_app(name)
        return self._send(msg)

    def reset_video(self) -> bool:
        return self._send_simple(ControlMessageType.RESET_VIDEO)

    def create_uhid_device(
        self,
        id: int,
        report_desc: bytes,
        name: str = "",
        vendor_id: int = 0,
        product_id: int = 0,
    ) -> bool:
        msg = ControlMessage(ControlMessageType.UHID_CREATE)
        msg.set_uhid_create(id, report_desc, name, vendor_id, product_id)
        return self._send(msg)

    def uhid_input(self, id: int, data: bytes) -> bool:
        msg = ControlMessage(ControlMessageType.UHID_INPUT)
        msg.set_uhid_input(id, data)
        return self._send(msg)

    def uhid_destroy(self, id: int) -> bool:
        msg = ControlMessage(ControlMessageType.UHID_DESTROY)
        msg.set_uhid_destroy(id)
        return self._send(msg)

    def send_raw(self, data_hex: str) -> bool:
        """Write pre-encoded control bytes given as a hex string."""
        try:
            data = bytes.fromhex(data_hex)
        except ValueError as e:
            logger.warning(f"Invalid raw control message: {e}")
            return False

        if not data:
            return True

        try:
            self.manager.control_writer.send_raw(data)
        except ControlWriteError as e:
            logger.warning(f"Raw control message failed: {e}")
            return False
        return True

    # ------------------------------------------------------------------
    # Clipboard
    # ------------------------------------------------------------------

    def _clipboard_timeout(self, timeout: Optional[float]) -> float:
        return self.config.scrcpy.clipboard_timeout if timeout is None else timeout

    def get_clipboard(self, cut: bool = False, timeout: Optional[float] = None) -> Optional[str]:
        """
        Ask the device for its clipboard and wait for the answer.

        Args:
            cut: Cut instead of copy
            timeout: Seconds to wait (None uses the configured timeout)

        Returns:
            The clipboard text, or None if the request failed or timed out
        """
        timeout = self._clipboard_timeout(timeout)

        with self._clipboard_lock:
            self.clipboard_channel.clear()

            msg = ControlMessage(ControlMessageType.GET_CLIPBOARD)
            msg.set_copy_key(CopyKey.CUT if cut else CopyKey.COPY)
            if not self._send(msg):
                return None

            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Clipboard request timed out")
                    return None

                line = self.clipboard_channel.receive(timeout=remaining)
                if line is None:
                    logger.warning("Clipboard request timed out")
                    return None

                # Acks are decimal numbers, clipboard text is a JSON string
                if line.startswith('"'):
                    return json.loads(line)
                logger.debug(f"Ignoring clipboard ack {line} while waiting for text")

    def set_clipboard(
        self,
        text: str,
        sequence: int = 0,
        paste: bool = False,
        timeout: Optional[float] = None,
    ) -> bool:
        """
        Set the device clipboard.

        When sequence is non-zero and timeout is positive, wait for the
        device to acknowledge that sequence.

        Args:
            text: New clipboard text
            sequence: Sequence number the device echoes back (0 for no ack)
            paste: Paste after setting
            timeout: Seconds to wait for the ack (None uses the configured
                timeout, 0 does not wait)

        Returns:
            False if the message was not written, or the ack was missing or
            did not match
        """
        timeout = self._clipboard_timeout(timeout)
        wait_ack = sequence != 0 and timeout > 0

        with self._clipboard_lock:
            if wait_ack:
                self.clipboard_channel.clear()

            msg = ControlMessage(ControlMessageType.SET_CLIPBOARD)
            msg.set_clipboard(sequence, text, paste)
            if not self._send(msg):
                return False

            if not wait_ack:
                return True

            line = self.clipboard_channel.receive(timeout=timeout)
            if line is None:
                logger.warning(f"No clipboard ack for sequence {sequence}")
                return False
            if line != str(sequence):
                logger.warning(f"Unexpected clipboard ack {line}, expected {sequence}")
                return False
            return True

    # ------------------------------------------------------------------
    # Streams and frames
    # ------------------------------------------------------------------

    def poll_frame(self) -> Optional[Frame]:
        """Latest decoded frame, or None if nothing was decoded yet."""
        return self.frame_cache.poll()

    def open_stream(
        self,
        stream_type: SocketType,
        sink: Any,
        mode: RelayMode = RelayMode.RAW,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[SessionInfo]:
        """
        Wait for the next session and relay its video or audio to sink.

        Blocks in the calling thread until the relay ends.

        Args:
            stream_type: SocketType.VIDEO or SocketType.AUDIO
            sink: Object with write(bytes), and optionally flush()
            mode: RAW for payloads only, FRAMED for header+payload
            timeout: Maximum wait for a session (None waits forever)
            cancel: Event that aborts the wait

        Returns:
            The session metadata at hand-off, or None if no session came
        """
        stream = self.manager.wait_connected(SocketType(stream_type), timeout=timeout, cancel=cancel)
        if stream is None:
            return None

        logger.info(f"Streaming {stream.info.device_name} {SocketType(stream_type).value}")
        relay_stream(stream.socket, sink, mode, self.manager.request_disconnect)
        return stream.info

    def __enter__(self) -> "Bridge":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()


__all__ = ["Bridge", "create_decode_pipeline"]
