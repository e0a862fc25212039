"""
Socket Manager Module

This module provides socket acquisition for a scrcpy session under both
tunnel topologies:
- adb forward (client mode): dial the device once per enabled socket
- adb reverse (server mode): accept the device's connections on a listener
  bound once at startup
"""

import socket
import threading
import logging
import time
from typing import Dict, Optional, Sequence, Tuple

from .types import (
    SOCKET_ORDER,
    SocketType,
    SocketError,
    SocketConnectionError,
    SocketReadError,
    ListenerBindError,
)
from .base import ScrcpySocket

logger = logging.getLogger(__name__)


def split_address(address: str) -> Tuple[str, int]:
    """
    Split a "host:port" string.

    Raises:
        SocketConnectionError: If the address is malformed
    """
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise SocketConnectionError(f"Invalid address: {address!r}")
    return host.strip("[]") or "127.0.0.1", int(port)


def dial(address: str, socket_type: SocketType, timeout: Optional[float] = None) -> ScrcpySocket:
    """
    Open one TCP connection to the device.

    Args:
        address: "host:port" to connect to
        socket_type: Which session stream the connection carries
        timeout: Connect timeout in seconds (None for the system default)

    Returns:
        Connected socket (blocking mode)

    Raises:
        SocketConnectionError: If the connection cannot be established
    """
    host, port = split_address(address)
    try:
        raw = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise SocketConnectionError(f"{socket_type.value} connect to {address} failed: {e}")

    raw.settimeout(None)
    raw.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    logger.debug(f"{socket_type.value} socket connected to {address}")
    return ScrcpySocket(raw, socket_type)


class ListenerSocket:
    """
    Listening socket for adb reverse (server mode)

    Bound once; every session accepts its sockets from the same listener.

    Example:
        >>> listener = ListenerSocket("127.0.0.1", 27183)
        >>> listener.bind()
        >>> video = listener.accept(SocketType.VIDEO)
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 27183):
        self.host = host
        self.port = port
        self._socket: Optional[socket.socket] = None
        self._lock = threading.Lock()

    @property
    def address(self) -> Tuple[str, int]:
        """Bound address (useful when port 0 was requested)"""
        if self._socket is None:
            return self.host, self.port
        return self._socket.getsockname()[:2]

    def bind(self) -> None:
        """
        Bind and listen.

        Raises:
            ListenerBindError: If the address cannot be bound
        """
        raw = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            raw.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            raw.bind((self.host, self.port))
            raw.listen(1)
        except OSError as e:
            raw.close()
            raise ListenerBindError(f"Cannot listen on {self.host}:{self.port}: {e}")

        with self._lock:
            self._socket = raw
        logger.info(f"Listening on {self.host}:{self.address[1]}")

    def accept(self, socket_type: SocketType) -> ScrcpySocket:
        """
        Accept the next device connection.

        Raises:
            SocketConnectionError: If the listener is closed or accept fails
        """
        listener = self._socket
        if listener is None:
            raise SocketConnectionError("Listener is not bound")

        try:
            raw, peer = listener.accept()
        except OSError as e:
            raise SocketConnectionError(f"{socket_type.value} accept failed: {e}")

        raw.settimeout(None)
        logger.debug(f"{socket_type.value} socket accepted from {peer[0]}:{peer[1]}")
        return ScrcpySocket(raw, socket_type)

    def close(self) -> None:
        with self._lock:
            listener, self._socket = self._socket, None

        if listener is not None:
            try:
                listener.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            listener.close()
            logger.debug("Listener closed")


class SocketManager:
    """
    Acquire the enabled session sockets in the fixed video, audio, control order

    Example:
        >>> manager = SocketManager([SocketType.VIDEO, SocketType.CONTROL])
        >>> sockets = manager.connect_forward("127.0.0.1:27183")
        >>> sockets[SocketType.VIDEO].recv_exactly(64)
    """

    def __init__(self, enabled: Sequence[SocketType]):
        self.socket_types = [t for t in SOCKET_ORDER if t in enabled]

    def connect_forward(
        self,
        address: str,
        retries: int = 100,
        retry_delay: float = 0.1,
        connect_timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[SocketType, ScrcpySocket]:
        """
        Dial every enabled socket, retrying the whole set

        With adb forward, the adb daemon accepts the connection even when the
        device server is not listening yet, so a connection is only live once
        the server's dummy byte arrives on the first socket opened.

        Args:
            address: "host:port" of the forwarded port
            retries: Number of attempts
            retry_delay: Delay between attempts in seconds
            connect_timeout: Per-connect timeout
            cancel: Event aborting the retry loop when set

        Returns:
            Mapping of socket type to connected socket

        Raises:
            SocketConnectionError: If every attempt failed
        """
        last_error: Optional[SocketError] = None

        for attempt in range(retries):
            if attempt != 0:
                if cancel is None:
                    time.sleep(retry_delay)
                elif cancel.wait(retry_delay):
                    break

            sockets: Dict[SocketType, ScrcpySocket] = {}
            try:
                for socket_type in self.socket_types:
                    sock = dial(address, socket_type, connect_timeout)
                    sockets[socket_type] = sock
                    if len(sockets) == 1:
                        self._read_dummy_byte(sock, connect_timeout)
                logger.info(f"Connected to {address} (attempt {attempt + 1})")
                return sockets
            except SocketError as e:
                last_error = e
                logger.debug(f"Connect attempt {attempt + 1}/{retries} failed: {e}")
                close_all(sockets.values())

        raise SocketConnectionError(
            f"Could not connect to {address} after {retries} attempts: {last_error}"
        )

    def accept_reverse(self, listener: ListenerSocket) -> Dict[SocketType, ScrcpySocket]:
        """
        Accept every enabled socket from the listener

        Raises:
            SocketConnectionError: If an accept fails; already accepted
                sockets are closed
        """
        sockets: Dict[SocketType, ScrcpySocket] = {}
        try:
            for socket_type in self.socket_types:
                sockets[socket_type] = listener.accept(socket_type)
        except SocketConnectionError:
            close_all(sockets.values())
            raise

        logger.info("Device connected (reverse)")
        return sockets

    @staticmethod
    def _read_dummy_byte(sock: ScrcpySocket, timeout: Optional[float]) -> None:
        sock.settimeout(timeout)
        try:
            sock.recv_exactly(1)
        except SocketReadError as e:
            raise SocketConnectionError(f"No dummy byte: {e}")
        sock.settimeout(None)


def close_all(sockets) -> None:
    """Close every socket in the iterable, skipping None entries"""
    for sock in sockets:
        if sock is not None:
            sock.close()
