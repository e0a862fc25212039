"""
Socket Communication Package

This package provides the socket layer of a scrcpy session.
A session uses up to three independent socket connections:
1. Video stream socket
2. Audio stream socket
3. Control message socket

They are opened in that order, either by dialing the device (adb forward)
or by accepting the device's connections (adb reverse).
"""

# Export types and exceptions
from .types import (
    SOCKET_ORDER,
    SocketType,
    SocketError,
    SocketConnectionError,
    SocketReadError,
    SocketWriteError,
    ListenerBindError,
)

# Export base socket class
from .base import ScrcpySocket

# Export acquisition helpers
from .manager import SocketManager, ListenerSocket, dial, split_address, close_all

__all__ = [
    # Types
    "SOCKET_ORDER",
    "SocketType",
    # Exceptions
    "SocketError",
    "SocketConnectionError",
    "SocketReadError",
    "SocketWriteError",
    "ListenerBindError",
    # Base class
    "ScrcpySocket",
    # Acquisition
    "SocketManager",
    "ListenerSocket",
    "dial",
    "split_address",
    "close_all",
]
