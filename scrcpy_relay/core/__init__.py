"""
scrcpy_relay Core Module

This module provides the connection lifecycle and wire-protocol engine of
the scrcpy relay:
- Socket communication layer (forward dial, reverse accept)
- Session manager state machine and device handshake
- Protocol definitions and constants
- Control message serialization and device message decoding
- Stream relay and decoded frame cache
- Decode pipelines (decoder executable, ffmpeg, PyAV)

Based on scrcpy (Screen Copy) from Genymobile
https://github.com/Genymobile/scrcpy
"""

# ============================================================================
# Socket Module
# ============================================================================
from .socket import (
    ScrcpySocket,
    SocketManager,
    ListenerSocket,
    SocketType,
    SocketError,
    SocketConnectionError,
    SocketReadError,
    SocketWriteError,
    ListenerBindError,
)

# ============================================================================
# Protocol Module
# ============================================================================
from .protocol import (
    # Codec IDs
    CodecId,
    codec_id_to_string,
    # Packet flags
    PACKET_FLAG_CONFIG,
    PACKET_FLAG_KEY_FRAME,
    PACKET_PTS_MASK,
    PACKET_HEADER_SIZE,
    # Message types
    ControlMessageType,
    DeviceMessageType,
    # Event types
    AndroidKeyEventAction,
    AndroidMotionEventAction,
    AndroidMotionEventButtons,
    CopyKey,
    ScreenPowerMode,
    ScrollDirection,
    # Special values
    POINTER_ID_MOUSE,
    POINTER_ID_GENERIC_FINGER,
)

# ============================================================================
# Channels
# ============================================================================
from .channel import Mailbox, Rendezvous, IntentChannel

# ============================================================================
# Control / Device Messages
# ============================================================================
from .control import (
    ControlMessage,
    ControlWriter,
    ControlMessageError,
    ControlWriteError,
    ControlNotConnectedError,
)
from .device_msg import (
    ClipboardMessage,
    AckClipboardMessage,
    UhidOutputMessage,
    DeviceMessageReceiver,
    DeviceMessageError,
    UnknownDeviceMessageError,
    read_device_message,
    decode_device_message,
)

# ============================================================================
# Session Manager
# ============================================================================
from .session import (
    SessionManager,
    Session,
    SessionInfo,
    SessionState,
    ConnectIntent,
    ConnectedStream,
    SessionError,
    HandshakeError,
)

# ============================================================================
# Stream Relay / Frame Cache
# ============================================================================
from .stream import (
    PacketHeader,
    Packet,
    PacketMerger,
    RelayMode,
    StreamRelayWorker,
    read_packet,
    relay_stream,
)
from .frame_cache import FrameCache, Frame, ReadWriteLock

# ============================================================================
# Decoders
# ============================================================================
from .decoder import (
    DecodePipeline,
    ExecutableDecodePipeline,
    FfmpegDecodePipeline,
    PyAVDecodePipeline,
    DecoderError,
    CodecNotSupportedError,
    DecoderStartError,
)


__all__ = [
    # Socket
    "ScrcpySocket",
    "SocketManager",
    "ListenerSocket",
    "SocketType",
    "SocketError",
    "SocketConnectionError",
    "SocketReadError",
    "SocketWriteError",
    "ListenerBindError",
    # Protocol
    "CodecId",
    "codec_id_to_string",
    "PACKET_FLAG_CONFIG",
    "PACKET_FLAG_KEY_FRAME",
    "PACKET_PTS_MASK",
    "PACKET_HEADER_SIZE",
    "ControlMessageType",
    "DeviceMessageType",
    "AndroidKeyEventAction",
    "AndroidMotionEventAction",
    "AndroidMotionEventButtons",
    "CopyKey",
    "ScreenPowerMode",
    "ScrollDirection",
    "POINTER_ID_MOUSE",
    "POINTER_ID_GENERIC_FINGER",
    # Channels
    "Mailbox",
    "Rendezvous",
    "IntentChannel",
    # Control / device messages
    "ControlMessage",
    "ControlWriter",
    "ControlMessageError",
    "ControlWriteError",
    "ControlNotConnectedError",
    "ClipboardMessage",
    "AckClipboardMessage",
    "UhidOutputMessage",
    "DeviceMessageReceiver",
    "DeviceMessageError",
    "UnknownDeviceMessageError",
    "read_device_message",
    "decode_device_message",
    # Session
    "SessionManager",
    "Session",
    "SessionInfo",
    "SessionState",
    "ConnectIntent",
    "ConnectedStream",
    "SessionError",
    "HandshakeError",
    # Stream / frame cache
    "PacketHeader",
    "Packet",
    "PacketMerger",
    "RelayMode",
    "StreamRelayWorker",
    "read_packet",
    "relay_stream",
    "FrameCache",
    "Frame",
    "ReadWriteLock",
    # Decoders
    "DecodePipeline",
    "ExecutableDecodePipeline",
    "FfmpegDecodePipeline",
    "PyAVDecodePipeline",
    "DecoderError",
    "CodecNotSupportedError",
    "DecoderStartError",
]
