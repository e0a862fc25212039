"""
Base Socket Class

This module provides the ScrcpySocket class wrapping one connected
video, audio or control stream, with exact-size reads, checked writes
and idempotent close.
"""

import socket
import threading
import logging
from typing import Optional

from .types import SocketType, SocketReadError, SocketWriteError

logger = logging.getLogger(__name__)


class ScrcpySocket:
    """
    One connected scrcpy stream socket

    Handles low-level socket operations including:
    - Exact-size reads (short read or EOF is an error)
    - Single-call writes returning the byte count
    - Idempotent close (closing twice is a no-op)

    Example:
        >>> sock = ScrcpySocket(raw_socket, SocketType.VIDEO)
        >>> header = sock.recv_exactly(12)
        >>> sock.close()
    """

    def __init__(self, sock: socket.socket, socket_type: SocketType):
        """
        Wrap a connected socket

        Args:
            sock: Connected socket
            socket_type: Which of the three session streams this is
        """
        self.socket_type = socket_type
        self._socket: Optional[socket.socket] = sock
        self._lock = threading.Lock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        """Check if socket was closed"""
        with self._lock:
            return self._closed

    def settimeout(self, timeout: Optional[float]) -> None:
        """Set the timeout used by subsequent reads and writes"""
        sock = self._socket
        if sock is not None:
            sock.settimeout(timeout)

    def recv_exactly(self, size: int) -> bytes:
        """
        Receive exactly size bytes

        Args:
            size: Number of bytes to receive

        Returns:
            Received data

        Raises:
            SocketReadError: On I/O error, timeout or end of stream before size bytes
        """
        sock = self._socket
        if sock is None:
            raise SocketReadError(f"{self.socket_type.value} socket is closed")

        buffer = bytearray(size)
        view = memoryview(buffer)
        received = 0

        try:
            while received < size:
                nbytes = sock.recv_into(view[received:], size - received)
                if nbytes == 0:
                    raise SocketReadError(
                        f"{self.socket_type.value} socket closed by remote "
                        f"({received}/{size} bytes)"
                    )
                received += nbytes
        except socket.timeout:
            raise SocketReadError(f"{self.socket_type.value} receive timeout")
        except OSError as e:
            raise SocketReadError(f"{self.socket_type.value} receive error: {e}")

        return bytes(buffer)

    def write(self, data: bytes) -> int:
        """
        Write data in one call

        Args:
            data: Data to send

        Returns:
            Number of bytes written

        Raises:
            SocketWriteError: If the write fails
        """
        sock = self._socket
        if sock is None:
            raise SocketWriteError(f"{self.socket_type.value} socket is closed")

        try:
            sock.sendall(data)
        except OSError as e:
            raise SocketWriteError(f"{self.socket_type.value} send error: {e}")

        return len(data)

    def interrupt(self) -> None:
        """Unblock pending reads and writes without releasing the socket"""
        sock = self._socket
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # Already disconnected

    def close(self) -> None:
        """Close socket connection"""
        with self._lock:
            if self._closed:
                return

            self._closed = True
            sock, self._socket = self._socket, None

        if sock is not None:
            try:
                # Shutdown first so that threads blocked in recv wake up
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

            sock.close()
            logger.debug(f"{self.socket_type.value} socket closed")
