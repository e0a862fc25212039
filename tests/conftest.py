"""
Shared fixtures: fake scrcpy devices speaking the handshake over local TCP.
"""

import socket
import struct
import threading
import time
from typing import List

import pytest

from scrcpy_relay.bridge.config import ScrcpyConfig
from scrcpy_relay.core.channel import Mailbox
from scrcpy_relay.core.protocol import CodecId, DEVICE_NAME_FIELD_LENGTH
from scrcpy_relay.core.session import SessionManager, SessionState
from scrcpy_relay.core.socket import SocketType


def recv_exactly(sock: socket.socket, size: int, timeout: float = 5.0) -> bytes:
    """Read size bytes from a raw socket, or fewer if the peer closed."""
    sock.settimeout(timeout)
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


def close_listener(sock: socket.socket) -> None:
    """Close a listening socket, waking a thread blocked in accept()."""
    try:
        sock.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    sock.close()


def device_name_field(name: str) -> bytes:
    return name.encode("utf-8").ljust(DEVICE_NAME_FIELD_LENGTH, b"\x00")


def free_port() -> int:
    """A port nothing listens on."""
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(("127.0.0.1", 0))
    port = s.getsockname()[1]
    s.close()
    return port


def handshake_bytes(
    socket_type: SocketType,
    first: bool,
    name: str,
    video_codec: int,
    width: int,
    height: int,
    audio_codec: int,
) -> bytes:
    data = device_name_field(name) if first else b""
    if socket_type == SocketType.VIDEO:
        data += struct.pack(">III", video_codec, width, height)
    elif socket_type == SocketType.AUDIO:
        data += struct.pack(">I", audio_codec)
    return data


class DeviceSession:
    """Device side of one connection: raw sockets by type."""

    def __init__(self):
        self.sockets = {}

    def __getitem__(self, socket_type: SocketType) -> socket.socket:
        return self.sockets[socket_type]

    def close(self) -> None:
        for sock in self.sockets.values():
            sock.close()


class ForwardDevice:
    """
    Listens like an adb-forwarded device server.

    Every session accepts one connection per enabled socket, sends the
    dummy byte on the first one, then the handshake.
    """

    def __init__(
        self,
        socket_types: List[SocketType],
        name: str = "Pixel 7",
        video_codec: int = CodecId.H264,
        width: int = 1080,
        height: int = 2400,
        audio_codec: int = CodecId.OPUS,
    ):
        self.socket_types = socket_types
        self.name = name
        self.video_codec = video_codec
        self.width = width
        self.height = height
        self.audio_codec = audio_codec

        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(8)
        self.port = self._listener.getsockname()[1]

        self.sessions: List[DeviceSession] = []
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    @property
    def address(self) -> str:
        return f"127.0.0.1:{self.port}"

    def _serve(self) -> None:
        try:
            while True:
                session = DeviceSession()
                for index, socket_type in enumerate(self.socket_types):
                    conn, _ = self._listener.accept()
                    first = index == 0
                    data = b"\x00" if first else b""
                    data += handshake_bytes(
                        socket_type, first, self.name, self.video_codec,
                        self.width, self.height, self.audio_codec,
                    )
                    conn.sendall(data)
                    session.sockets[socket_type] = conn
                with self._lock:
                    self.sessions.append(session)
        except OSError:
            pass

    def session(self, index: int = -1, timeout: float = 5.0) -> DeviceSession:
        wait_for(lambda: len(self.sessions) > (index if index >= 0 else 0), timeout)
        with self._lock:
            return self.sessions[index]

    def close(self) -> None:
        close_listener(self._listener)
        for session in self.sessions:
            session.close()


def connect_reverse(
    port: int,
    socket_types: List[SocketType],
    name: str = "Pixel 7",
    video_codec: int = CodecId.H264,
    width: int = 1080,
    height: int = 2400,
    audio_codec: int = CodecId.OPUS,
) -> DeviceSession:
    """Dial the bridge's listener the way the device does under adb reverse."""
    session = DeviceSession()
    for index, socket_type in enumerate(socket_types):
        conn = socket.create_connection(("127.0.0.1", port), timeout=5.0)
        conn.sendall(handshake_bytes(
            socket_type, index == 0, name, video_codec, width, height, audio_codec,
        ))
        session.sockets[socket_type] = conn
    return session


def make_config(**overrides) -> ScrcpyConfig:
    """Config with short retry and handshake timings."""
    values = dict(
        host="127.0.0.1",
        port=0,
        video=True,
        control=True,
        connect_retries=5,
        connect_retry_delay=0.02,
        handshake_timeout=2.0,
        clipboard_timeout=1.0,
    )
    values.update(overrides)
    return ScrcpyConfig(**values)


class ManagerHarness:
    """SessionManager with its two broadcast points, stopped on teardown."""

    def __init__(self, config: ScrcpyConfig, command_runner=None):
        self.clipboard = Mailbox("clipboard")
        self.uhid_output = Mailbox("uhid output")
        self.manager = SessionManager(config, self.clipboard, self.uhid_output, command_runner)

    def wait_state(self, state: SessionState, timeout: float = 5.0) -> bool:
        return wait_for(lambda: self.manager.state == state, timeout)


@pytest.fixture
def harnesses():
    created = []

    def factory(config: ScrcpyConfig, command_runner=None) -> ManagerHarness:
        harness = ManagerHarness(config, command_runner)
        created.append(harness)
        return harness

    yield factory

    for harness in created:
        harness.manager.stop()


@pytest.fixture
def devices():
    created = []

    def factory(*args, **kwargs) -> ForwardDevice:
        device = ForwardDevice(*args, **kwargs)
        created.append(device)
        return device

    yield factory

    for device in created:
        device.close()
