"""
scrcpy_relay/core/stream.py

Stream relay for scrcpy video and audio sockets.

This module handles the scrcpy stream protocol, including:
- Parsing 12-byte packet headers
- Reading complete packets from a stream socket
- Relaying packets to a sink, payload only (raw) or header+payload (framed)
- Re-arming a relay for every new session
- Merging H.264/H.265 config packets with following media packets
"""

import struct
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from .protocol import (
    PACKET_HEADER_SIZE,
    is_config_packet,
    is_key_frame,
    extract_pts,
)
from .socket import ScrcpySocket, SocketError, SocketType

if TYPE_CHECKING:
    from .session import ConnectedStream, SessionManager

logger = logging.getLogger(__name__)


@dataclass
class PacketHeader:
    """
    Represents a scrcpy packet header.

    Attributes:
        pts_flags: Raw PTS value with flags in the upper bits
        pts: Presentation Time Stamp (extracted from pts_flags)
        size: Size of the packet payload in bytes
        is_config: True if this is a configuration packet (SPS/PPS)
        is_key_frame: True if this is a key frame
    """
    pts_flags: int
    pts: int
    size: int
    is_config: bool
    is_key_frame: bool

    @classmethod
    def parse(cls, data: bytes) -> "PacketHeader":
        """
        Parse a 12-byte packet header.

        Raises:
            ValueError: If data is not exactly 12 bytes
        """
        if len(data) != PACKET_HEADER_SIZE:
            raise ValueError(
                f"Packet header must be {PACKET_HEADER_SIZE} bytes, got {len(data)}"
            )
        pts_flags, size = struct.unpack(">QI", data)
        return cls(
            pts_flags=pts_flags,
            pts=extract_pts(pts_flags),
            size=size,
            is_config=is_config_packet(pts_flags),
            is_key_frame=is_key_frame(pts_flags),
        )

    def pack(self) -> bytes:
        return struct.pack(">QI", self.pts_flags, self.size)

    def __str__(self) -> str:
        """Return human-readable representation of the header."""
        flags = []
        if self.is_config:
            flags.append("CONFIG")
        if self.is_key_frame:
            flags.append("KEY_FRAME")
        flag_str = "|".join(flags) if flags else "NONE"
        return f"PacketHeader(pts={self.pts}, size={self.size}, flags={flag_str})"


@dataclass
class Packet:
    """
    A complete stream packet as read from the socket.

    Attributes:
        header: The parsed header
        raw_header: The 12 header bytes exactly as received
        data: The packet payload
    """
    header: PacketHeader
    raw_header: bytes
    data: bytes

    @property
    def size(self) -> int:
        """Return the size of the packet payload."""
        return len(self.data)

    def framed(self) -> bytes:
        """Header and payload concatenated unchanged."""
        return self.raw_header + self.data


class RelayMode(Enum):
    """What a relay writes for each packet"""
    RAW = "raw"        # payload only
    FRAMED = "framed"  # 12-byte header followed by the payload


def read_packet(sock: ScrcpySocket) -> Packet:
    """
    Read one packet from a stream socket.

    Raises:
        SocketError: On a short read or I/O error
    """
    raw_header = sock.recv_exactly(PACKET_HEADER_SIZE)
    header = PacketHeader.parse(raw_header)
    data = sock.recv_exactly(header.size) if header.size else b""
    return Packet(header, raw_header, data)


def write_to_sink(sink: Any, data: bytes) -> bool:
    """
    Write data to a sink and flush it.

    The sink is any object with write(bytes) returning the number of bytes
    written (None counts as everything) and an optional flush().

    Returns:
        True if every byte was accepted
    """
    try:
        written = sink.write(data)
        flush = getattr(sink, "flush", None)
        if flush is not None:
            flush()
    except (OSError, ValueError) as e:
        logger.debug(f"Sink write failed: {e}")
        return False

    if written is not None and written < len(data):
        logger.debug(f"Short sink write: {written}/{len(data)} bytes")
        return False

    return True


def relay_stream(
    sock: ScrcpySocket,
    sink: Any,
    mode: RelayMode = RelayMode.RAW,
    on_sink_failure: Optional[Callable[[], Any]] = None,
) -> bool:
    """
    Relay packets from a stream socket to a sink until one side fails.

    A failed socket read ends the relay silently, leaving the decision to the
    caller. A failed sink write first calls on_sink_failure, which the session
    manager wires to a non-blocking disconnect request.

    Args:
        sock: Video or audio socket, owned exclusively by this relay
        sink: Destination for the relayed bytes
        mode: RAW for payloads only, FRAMED for header+payload
        on_sink_failure: Called once when the sink fails

    Returns:
        False if the socket read failed, True if the relay ended because of
        the sink
    """
    packets = 0

    while True:
        try:
            packet = read_packet(sock)
        except SocketError as e:
            logger.debug(f"Relay read ended after {packets} packets: {e}")
            return False

        data = packet.data if mode == RelayMode.RAW else packet.framed()

        if not write_to_sink(sink, data):
            logger.warning(f"Relay sink failed after {packets} packets, requesting disconnect")
            if on_sink_failure is not None:
                on_sink_failure()
            return True

        packets += 1


class StreamRelayWorker:
    """
    Relay one stream socket for every session, in a background thread.

    The worker waits for the session manager's "connected" hand-off for its
    stream, relays the socket it received until the relay ends, then waits
    for the next session.

    Example:
        >>> worker = StreamRelayWorker(manager, SocketType.VIDEO,
        ...                            lambda stream: sys.stdout.buffer,
        ...                            RelayMode.FRAMED)
        >>> worker.start()
    """

    def __init__(
        self,
        manager: "SessionManager",
        stream_type: SocketType,
        sink_factory: Callable[["ConnectedStream"], Any],
        mode: RelayMode = RelayMode.RAW,
    ):
        if stream_type not in (SocketType.VIDEO, SocketType.AUDIO):
            raise ValueError(f"Cannot relay a {stream_type.value} socket")

        self._manager = manager
        self.stream_type = stream_type
        self._sink_factory = sink_factory
        self.mode = mode

        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

        # Statistics
        self.relay_count = 0

    def start(self) -> None:
        if self._thread is not None:
            logger.warning(f"{self.stream_type.value} relay already running")
            return

        self._stopped.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"{self.stream_type.value.capitalize()}Relay",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop waiting for sessions. A relay in progress ends with its socket."""
        if self._thread is None:
            return

        self._stopped.set()
        self._thread.join(timeout=5.0)
        if self._thread.is_alive():
            logger.warning(f"{self.stream_type.value} relay did not stop gracefully")
        self._thread = None

    def _run(self) -> None:
        while not self._stopped.is_set():
            stream = self._manager.wait_connected(self.stream_type, cancel=self._stopped)
            if stream is None:
                continue

            self.relay_count += 1
            logger.info(f"{self.stream_type.value} relay started ({stream.info.device_name})")

            sink = self._sink_factory(stream)
            relay_stream(stream.socket, sink, self.mode, self._manager.request_disconnect)

            logger.info(f"{self.stream_type.value} relay ended")


class PacketMerger:
    """
    Merges configuration packets with media packets for H.264/H.265.

    In scrcpy, configuration packets (containing SPS/PPS for H.264 or
    VPS/SPS/PPS for H.265) must be prepended to the next media packet
    for correct decoding.

    This class buffers the most recent config packet and merges it with
    the following non-config packet.
    """

    def __init__(self) -> None:
        """Initialize the packet merger with no buffered config."""
        self._config_data: Optional[bytes] = None

    def merge(self, header: PacketHeader, data: bytes) -> Optional[bytes]:
        """
        Merge a pending config packet with a media packet if applicable.

        Args:
            header: Header of the packet
            data: Payload of the packet

        Returns:
            The payload to decode, or None for a config packet (it is
            buffered until the next media packet)
        """
        if header.is_config:
            self._config_data = data
            return None

        if self._config_data is not None:
            merged_data = self._config_data + data
            self._config_data = None
            return merged_data

        return data

    def clear(self) -> None:
        """Clear any buffered configuration packet."""
        self._config_data = None

    @property
    def has_pending_config(self) -> bool:
        """Check if there is a pending config packet to merge."""
        return self._config_data is not None
