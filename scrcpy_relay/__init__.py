"""
scrcpy-relay - scrcpy device session bridge

Holds one scrcpy session with an Android device (forward or reverse
topology) and exposes it to local consumers.

This package provides functionality to:
- Connect, reconnect and disconnect the device session
- Inject input and other control messages
- Exchange clipboard contents and UHID reports
- Relay the raw video and audio streams
- Decode video into a frame cache for polling

Based on scrcpy from Genymobile:
https://github.com/Genymobile/scrcpy

Example:
    >>> from scrcpy_relay import Bridge, load_config
    >>>
    >>> bridge = Bridge(load_config("bridge.json"))
    >>> bridge.start()
    >>> bridge.connect()
    >>> frame = bridge.poll_frame()
"""

from .core import (
    SessionManager,
    SessionInfo,
    SessionState,
    SocketType,
    ControlMessage,
    ControlMessageType,
    DeviceMessageType,
    FrameCache,
    Frame,
    RelayMode,
)
from .bridge import (
    Bridge,
    BridgeConfig,
    ScrcpyConfig,
    UhidDeviceConfig,
    VideoDecoderConfig,
    ConfigError,
    load_config,
)

__version__ = "0.1.0"
__all__ = [
    # Bridge
    "Bridge",
    "BridgeConfig",
    "ScrcpyConfig",
    "UhidDeviceConfig",
    "VideoDecoderConfig",
    "ConfigError",
    "load_config",
    # Core
    "SessionManager",
    "SessionInfo",
    "SessionState",
    "SocketType",
    "ControlMessage",
    "ControlMessageType",
    "DeviceMessageType",
    "FrameCache",
    "Frame",
    "RelayMode",
]
