"""
scrcpy_relay/core/session.py

Session manager: the connection lifecycle of the single scrcpy session.

The manager runs one driver thread that takes connect and disconnect
intents from a single-slot channel and drives the session through

    IDLE -> ACQUIRING -> HANDSHAKING -> CONNECTED -> TEARING_DOWN -> IDLE

Sockets are acquired either by dialing the forwarded port (adb forward)
or by accepting the device's connections on a listener bound once at
startup (adb reverse). Old sockets are always closed before new ones are
opened. Stream consumers are handed their socket through one rendezvous
per stream, so a relay is running before any packet can be lost.
"""

import struct
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

from .channel import IntentChannel, Mailbox, Rendezvous
from .control import ControlMessage, ControlMessageError, ControlWriteError, ControlWriter
from .device_msg import DeviceMessageReceiver
from .protocol import (
    ControlMessageType,
    DEVICE_NAME_FIELD_LENGTH,
    VIDEO_HEADER_SIZE,
    AUDIO_HEADER_SIZE,
)
from .socket import (
    SOCKET_ORDER,
    ScrcpySocket,
    SocketType,
    SocketError,
    SocketConnectionError,
    ListenerBindError,
    ListenerSocket,
    SocketManager,
)

if TYPE_CHECKING:
    from ..bridge.config import ScrcpyConfig

logger = logging.getLogger(__name__)


class SessionError(Exception):
    """Base exception for session lifecycle errors"""

    pass


class HandshakeError(SessionError):
    """Raised when the device handshake cannot be completed"""

    pass


class SessionState(Enum):
    """Lifecycle state of the session"""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    TEARING_DOWN = "tearing_down"


@dataclass(frozen=True)
class ConnectIntent:
    """
    Request delivered to the session manager.

    Attributes:
        connect: False for a disconnect request
        address: "host:port" to dial in forward mode, None to use the
            configured address (or to accept in reverse mode)
    """
    connect: bool
    address: Optional[str] = None

    @classmethod
    def forward(cls, address: Optional[str] = None) -> "ConnectIntent":
        return cls(True, address)

    @classmethod
    def reverse(cls) -> "ConnectIntent":
        return cls(True, None)

    @classmethod
    def disconnect(cls) -> "ConnectIntent":
        return cls(False, None)


@dataclass(frozen=True)
class SessionInfo:
    """
    Immutable snapshot of the session metadata.

    Zero codecs and dimensions, and an empty device name, mean the value
    was not established (no session, or the stream is disabled).
    """
    state: SessionState = SessionState.IDLE
    device_name: str = ""
    video_codec: int = 0
    audio_codec: int = 0
    initial_video_width: int = 0
    initial_video_height: int = 0

    @property
    def connected(self) -> bool:
        return self.state == SessionState.CONNECTED


@dataclass(frozen=True)
class ConnectedStream:
    """Hand-off from the session manager to the consumer of one stream"""
    info: SessionInfo
    socket: ScrcpySocket


@dataclass
class Session:
    """
    The one logical connection to the device.

    The manager only publishes a Session once it is CONNECTED; while IDLE
    all socket fields are None.
    """
    state: SessionState = SessionState.IDLE
    video_socket: Optional[ScrcpySocket] = None
    audio_socket: Optional[ScrcpySocket] = None
    control_socket: Optional[ScrcpySocket] = None
    device_name: str = ""
    video_codec: int = 0
    audio_codec: int = 0
    initial_video_width: int = 0
    initial_video_height: int = 0

    @classmethod
    def from_sockets(cls, sockets: Dict[SocketType, ScrcpySocket]) -> "Session":
        return cls(
            state=SessionState.HANDSHAKING,
            video_socket=sockets.get(SocketType.VIDEO),
            audio_socket=sockets.get(SocketType.AUDIO),
            control_socket=sockets.get(SocketType.CONTROL),
        )

    def socket_for(self, socket_type: SocketType) -> Optional[ScrcpySocket]:
        return {
            SocketType.VIDEO: self.video_socket,
            SocketType.AUDIO: self.audio_socket,
            SocketType.CONTROL: self.control_socket,
        }[socket_type]

    def sockets(self) -> List[ScrcpySocket]:
        """Open sockets in video, audio, control order"""
        return [s for s in (self.socket_for(t) for t in SOCKET_ORDER) if s is not None]

    def info(self) -> SessionInfo:
        return SessionInfo(
            state=self.state,
            device_name=self.device_name,
            video_codec=self.video_codec,
            audio_codec=self.audio_codec,
            initial_video_width=self.initial_video_width,
            initial_video_height=self.initial_video_height,
        )

    def reset(self) -> None:
        """Close every socket and forget the metadata. Safe to call twice."""
        for sock in self.sockets():
            sock.close()

        self.video_socket = None
        self.audio_socket = None
        self.control_socket = None
        self.device_name = ""
        self.video_codec = 0
        self.audio_codec = 0
        self.initial_video_width = 0
        self.initial_video_height = 0
        self.state = SessionState.IDLE


class SessionManager:
    """
    Owns the session state machine and its driver thread.

    Example:
        >>> manager = SessionManager(config, Mailbox(), Mailbox())
        >>> manager.start()
        >>> manager.request_connect("127.0.0.1:27183")
        True
        >>> stream = manager.wait_video_connected(timeout=10.0)
        >>> manager.stop()
    """

    def __init__(
        self,
        config: "ScrcpyConfig",
        clipboard_channel: Mailbox,
        uhid_output_channel: Mailbox,
        command_runner: Optional[Callable[[List[Any]], None]] = None,
    ):
        """
        Args:
            config: scrcpy connection settings
            clipboard_channel: Broadcast point for clipboard and ACK lines
            uhid_output_channel: Broadcast point for UHID output lines
            command_runner: Executes the connected-commands list, called on
                its own thread after each successful connection
        """
        self.config = config
        self.clipboard_channel = clipboard_channel
        self.uhid_output_channel = uhid_output_channel
        self._command_runner = command_runner

        self.control_writer = ControlWriter(on_failure=self.request_disconnect)

        enabled = [
            t for t, on in (
                (SocketType.VIDEO, config.video),
                (SocketType.AUDIO, config.audio),
                (SocketType.CONTROL, config.control),
            ) if on
        ]
        self._socket_manager = SocketManager(enabled)
        self._listener: Optional[ListenerSocket] = None

        self._intents: IntentChannel[ConnectIntent] = IntentChannel()
        self._connected = {
            SocketType.VIDEO: Rendezvous("video connected"),
            SocketType.AUDIO: Rendezvous("audio connected"),
        }

        # Guards the published session, the pending session and the
        # connected commands
        self._lock = threading.Lock()
        self._session = Session()
        self._pending: Optional[Session] = None
        self._state = SessionState.IDLE
        self._connected_commands: List[Any] = list(config.connected_commands)

        self._receiver: Optional[DeviceMessageReceiver] = None
        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()
        # Set while an intent newer than the one being served is queued, or
        # on stop; cancels a pending hand-off
        self._wakeup = threading.Event()
        self._wakeup_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def enabled_sockets(self) -> List[SocketType]:
        return list(self._socket_manager.socket_types)

    @property
    def listener(self) -> Optional[ListenerSocket]:
        return self._listener

    def start(self) -> None:
        """
        Bind the reverse-mode listener and start the driver thread.

        Raises:
            ListenerBindError: If the reverse-mode listener cannot be bound
        """
        if self._thread is not None:
            logger.warning("Session manager already running")
            return

        if not self.config.forward:
            listener = ListenerSocket(self.config.host, self.config.port)
            try:
                listener.bind()
            except ListenerBindError as e:
                logger.critical(f"Reverse mode unavailable: {e}")
                raise
            self._listener = listener

        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="SessionManager", daemon=True)
        self._thread.start()
        logger.info(
            f"Session manager started ({'forward' if self.config.forward else 'reverse'} mode)"
        )

    def stop(self) -> None:
        """Disconnect, close the listener and stop the driver thread."""
        with self._wakeup_lock:
            self._stopped.set()
            self._wakeup.set()

        if self._listener is not None:
            self._listener.close()

        with self._lock:
            pending = self._pending
        if pending is not None:
            for sock in pending.sockets():
                sock.interrupt()

        if self._thread is not None:
            self._thread.join(timeout=5.0)
            if self._thread.is_alive():
                logger.warning("Session manager thread did not stop gracefully")
            self._thread = None

        self._teardown("stopping")
        logger.info("Session manager stopped")

    def request_connect(self, address: Optional[str] = None) -> bool:
        """
        Queue a connect intent without blocking.

        Returns:
            False if another intent is already pending
        """
        return self._offer(ConnectIntent(True, address))

    def request_disconnect(self) -> bool:
        """
        Queue a disconnect intent without blocking.

        Returns:
            False if another intent is already pending
        """
        return self._offer(ConnectIntent.disconnect())

    def _offer(self, intent: ConnectIntent) -> bool:
        with self._wakeup_lock:
            accepted = self._intents.offer(intent)
            if accepted:
                self._wakeup.set()

        if accepted:
            logger.debug(f"Queued {intent}")
        else:
            logger.debug(f"Dropped {intent}: another intent is pending")
        return accepted

    @property
    def state(self) -> SessionState:
        with self._lock:
            return self._state

    def snapshot(self) -> SessionInfo:
        """Current session metadata"""
        with self._lock:
            return self._session.info()

    def wait_connected(
        self,
        stream_type: SocketType,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[ConnectedStream]:
        """
        Wait for the next session's video or audio hand-off.

        The caller owns the returned socket for reading until the session
        ends.

        Returns:
            The hand-off, or None on timeout or cancellation
        """
        return self._connected[stream_type].receive(timeout=timeout, cancel=cancel)

    def wait_video_connected(self, timeout=None, cancel=None) -> Optional[ConnectedStream]:
        return self.wait_connected(SocketType.VIDEO, timeout, cancel)

    def wait_audio_connected(self, timeout=None, cancel=None) -> Optional[ConnectedStream]:
        return self.wait_connected(SocketType.AUDIO, timeout, cancel)

    @property
    def connected_commands(self) -> List[Any]:
        with self._lock:
            return list(self._connected_commands)

    def set_connected_commands(self, commands: List[Any]) -> None:
        """Replace the commands run after each successful connection"""
        with self._lock:
            self._connected_commands = list(commands)

    # ------------------------------------------------------------------
    # Driver
    # ------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        with self._lock:
            self._state = state

    def _run(self) -> None:
        try:
            while not self._stopped.is_set():
                intent = self._intents.take(timeout=0.1)
                if intent is None or self._stopped.is_set():
                    continue

                with self._wakeup_lock:
                    if not self._stopped.is_set() and not self._intents.pending():
                        self._wakeup.clear()

                if intent.connect:
                    if not self._connect(intent):
                        break
                else:
                    self._teardown("disconnect requested")
        finally:
            logger.debug("Session manager driver ended")

    def _connect(self, intent: ConnectIntent) -> bool:
        """
        Run one acquisition cycle.

        Returns:
            False if the driver cannot continue (reverse accept failed)
        """
        self._teardown("new connection requested")

        if not self._socket_manager.socket_types:
            logger.warning("No socket enabled, ignoring connect request")
            return True

        self._set_state(SessionState.ACQUIRING)

        if self.config.forward:
            address = intent.address or f"{self.config.host}:{self.config.port}"
            try:
                sockets = self._socket_manager.connect_forward(
                    address,
                    retries=self.config.connect_retries,
                    retry_delay=self.config.connect_retry_delay,
                    connect_timeout=self.config.handshake_timeout,
                    cancel=self._stopped,
                )
            except SocketConnectionError as e:
                logger.warning(f"Connection failed: {e}")
                self._set_state(SessionState.IDLE)
                return True
        else:
            if intent.address:
                logger.warning(f"Reverse mode ignores address {intent.address}")
            try:
                sockets = self._socket_manager.accept_reverse(self._listener)
            except SocketConnectionError as e:
                self._set_state(SessionState.IDLE)
                if not self._stopped.is_set():
                    logger.critical(f"Accept failed, reverse mode is no longer available: {e}")
                return False

        session = Session.from_sockets(sockets)
        with self._lock:
            self._pending = session
            self._state = SessionState.HANDSHAKING

        try:
            self._handshake(session)
        except HandshakeError as e:
            logger.warning(f"Handshake failed: {e}")
            self._abandon(session)
            return True

        if session.control_socket is not None:
            self.control_writer.attach(session.control_socket)
            if not self._create_uhid_devices():
                self.control_writer.detach()
                self._abandon(session)
                return True

            receiver = DeviceMessageReceiver(
                session.control_socket,
                self.clipboard_channel,
                self.uhid_output_channel,
                stdout_clipboard=self.config.stdout_clipboard,
                stdout_uhid_output=self.config.stdout_uhid_output,
            )
            receiver.start()
            with self._lock:
                self._receiver = receiver

        with self._lock:
            session.state = SessionState.CONNECTED
            self._pending = None
            self._session = session
            self._state = SessionState.CONNECTED
            commands = list(self._connected_commands)
            info = session.info()

        logger.info(
            f"Connected to {info.device_name!r} "
            f"(video codec {info.video_codec}, {info.initial_video_width}x{info.initial_video_height}, "
            f"audio codec {info.audio_codec})"
        )

        for stream_type in (SocketType.VIDEO, SocketType.AUDIO):
            sock = session.socket_for(stream_type)
            if sock is None:
                continue
            if not self._connected[stream_type].send(
                ConnectedStream(info, sock), cancel=self._wakeup
            ):
                logger.debug(f"{stream_type.value} hand-off cancelled")
                return True

        if commands:
            threading.Thread(
                target=self._run_connected_commands,
                args=(commands,),
                name="ConnectedCommands",
                daemon=True,
            ).start()

        return True

    def _handshake(self, session: Session) -> None:
        sockets = session.sockets()
        for sock in sockets:
            sock.settimeout(self.config.handshake_timeout)

        try:
            # Device name comes on the first socket: video, else audio, else control
            name = sockets[0].recv_exactly(DEVICE_NAME_FIELD_LENGTH)
            session.device_name = name.split(b"\x00", 1)[0].decode("utf-8", errors="replace")

            if session.video_socket is not None:
                header = session.video_socket.recv_exactly(VIDEO_HEADER_SIZE)
                codec, width, height = struct.unpack(">III", header)
                session.video_codec = codec
                session.initial_video_width = width
                session.initial_video_height = height

            if session.audio_socket is not None:
                header = session.audio_socket.recv_exactly(AUDIO_HEADER_SIZE)
                (session.audio_codec,) = struct.unpack(">I", header)
        except SocketError as e:
            raise HandshakeError(str(e)) from e
        finally:
            for sock in sockets:
                sock.settimeout(None)

    def _create_uhid_devices(self) -> bool:
        for device in self.config.uhid_devices:
            msg = ControlMessage(ControlMessageType.UHID_CREATE)
            msg.set_uhid_create(
                device.id,
                device.report_desc,
                device.name,
                device.vendor_id,
                device.product_id,
            )
            try:
                self.control_writer.send(msg)
            except (ControlMessageError, ControlWriteError) as e:
                logger.warning(f"UHID device {device.id} creation failed: {e}")
                return False

            logger.debug(f"UHID device {device.id} created")
        return True

    def _run_connected_commands(self, commands: List[Any]) -> None:
        if self._command_runner is None:
            logger.warning(f"{len(commands)} connected commands configured but no runner")
            return

        try:
            self._command_runner(commands)
        except Exception as e:
            logger.error(f"Connected commands failed: {e}")

    def _abandon(self, session: Session) -> None:
        self._set_state(SessionState.TEARING_DOWN)
        session.reset()
        with self._lock:
            self._pending = None
            self._state = SessionState.IDLE

    def _teardown(self, reason: str) -> None:
        with self._lock:
            session = self._session
            if not session.sockets() and self._state == SessionState.IDLE:
                return
            session.state = SessionState.TEARING_DOWN
            self._state = SessionState.TEARING_DOWN
            receiver, self._receiver = self._receiver, None

        self.control_writer.detach()
        session.reset()

        if receiver is not None:
            receiver.join()

        with self._lock:
            self._session = Session()
            self._state = SessionState.IDLE

        logger.info(f"Session closed ({reason})")
