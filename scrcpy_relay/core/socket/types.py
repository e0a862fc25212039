"""
Socket Types and Exceptions

This module defines socket types and exceptions for scrcpy socket
communication.
"""

from enum import Enum


class SocketType(Enum):
    """Socket connection type"""

    VIDEO = "video"
    AUDIO = "audio"
    CONTROL = "control"


# Fixed order in which the device opens (forward) or expects (reverse)
# the three connections
SOCKET_ORDER = (SocketType.VIDEO, SocketType.AUDIO, SocketType.CONTROL)


class SocketError(Exception):
    """Base exception for socket operations"""

    pass


class SocketConnectionError(SocketError):
    """Exception raised when connection fails"""

    pass


class SocketReadError(SocketError):
    """Exception raised when read operation fails or comes up short"""

    pass


class SocketWriteError(SocketError):
    """Exception raised when write operation fails"""

    pass


class ListenerBindError(SocketConnectionError):
    """Exception raised when the reverse-mode listener cannot be bound"""

    pass
