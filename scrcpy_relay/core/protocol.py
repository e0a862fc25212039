"""
scrcpy_relay/core/protocol.py

Protocol constants and enumerations for the scrcpy relay.

This module defines all protocol-level constants used for communication
with the scrcpy server, including codec IDs, message types, and packet flags.
"""

from enum import Enum, IntEnum
from typing import Final


# ============================================================================
# Codec IDs (4-byte ASCII identifiers)
# ============================================================================

class CodecId(IntEnum):
    """Video and audio codec identifiers used in scrcpy protocol."""
    H264 = 0x68323634  # "h264" in ASCII
    H265 = 0x68323635  # "h265" in ASCII
    AV1 = 0x00617631   # "av1" in ASCII
    OPUS = 0x6f707573  # "opus" in ASCII
    AAC = 0x00616163   # "aac" in ASCII
    FLAC = 0x666c6163  # "flac" in ASCII
    RAW = 0x00726177   # "raw" in ASCII


def codec_id_to_string(codec_id: int) -> str:
    """Convert a numeric codec ID to its string representation."""
    try:
        codec_bytes = codec_id.to_bytes(4, "big")
        return codec_bytes.strip(b'\x00').decode('ascii')
    except (OverflowError, UnicodeDecodeError):
        return f"unknown(0x{codec_id:08x})"


# FFmpeg demuxer/decoder names for the video codecs
_FFMPEG_CODEC_NAMES = {
    CodecId.H264: "h264",
    CodecId.H265: "hevc",
    CodecId.AV1: "av1",
}


def codec_name_for_ffmpeg(codec_id: int) -> str:
    """
    Map a video codec ID to the FFmpeg codec name.

    Raises:
        KeyError: If the codec is not a supported video codec
    """
    return _FFMPEG_CODEC_NAMES[codec_id]


# ============================================================================
# Packet Flags
# ============================================================================

# The 12-byte packet header starts with 8 bytes of PTS and flags:
#
# byte 7   byte 6   byte 5   byte 4   byte 3   byte 2   byte 1   byte 0
# CK...... ........ ........ ........ ........ ........ ........ ........
# ^^<------------------------------------------------------------------->
# ||                                PTS (62 bits)
# | `- key frame (bit 62)
#  `-- config packet (bit 63)
#
# followed by the 4-byte big-endian payload length.

PACKET_FLAG_CONFIG: Final[int] = 1 << 63
PACKET_FLAG_KEY_FRAME: Final[int] = 1 << 62
PACKET_PTS_MASK: Final[int] = PACKET_FLAG_KEY_FRAME - 1

PACKET_HEADER_SIZE: Final[int] = 12
PACKET_SIZE_OFFSET: Final[int] = 8


# ============================================================================
# Handshake
# ============================================================================

DEVICE_NAME_FIELD_LENGTH: Final[int] = 64
VIDEO_HEADER_SIZE: Final[int] = 12  # codec id + initial width + initial height
AUDIO_HEADER_SIZE: Final[int] = 4   # codec id


# ============================================================================
# Control Message Types (Client -> Server)
# ============================================================================

class ControlMessageType(IntEnum):
    """Types of control messages sent from client to server."""
    INJECT_KEYCODE = 0x00
    INJECT_TEXT = 0x01
    INJECT_TOUCH_EVENT = 0x02
    INJECT_SCROLL_EVENT = 0x03
    BACK_OR_SCREEN_ON = 0x04
    EXPAND_NOTIFICATION_PANEL = 0x05
    EXPAND_SETTINGS_PANEL = 0x06
    COLLAPSE_PANELS = 0x07
    GET_CLIPBOARD = 0x08
    SET_CLIPBOARD = 0x09
    SET_DISPLAY_POWER = 0x0A
    ROTATE_DEVICE = 0x0B
    UHID_CREATE = 0x0C
    UHID_INPUT = 0x0D
    UHID_DESTROY = 0x0E
    OPEN_HARD_KEYBOARD_SETTINGS = 0x0F
    START_APP = 0x10
    RESET_VIDEO = 0x11


# ============================================================================
# Device Message Types (Server -> Client)
# ============================================================================

class DeviceMessageType(IntEnum):
    """Types of device messages sent from server to client."""
    CLIPBOARD = 0x00
    ACK_CLIPBOARD = 0x01
    UHID_OUTPUT = 0x02


# ============================================================================
# Android Key Event Actions
# ============================================================================

class AndroidKeyEventAction(IntEnum):
    """Android key event action codes."""
    DOWN = 0
    UP = 1


# ============================================================================
# Android Motion Event Actions
# ============================================================================

class AndroidMotionEventAction(IntEnum):
    """Android motion event action codes."""
    DOWN = 0
    UP = 1
    MOVE = 2


# ============================================================================
# Android Motion Event Buttons
# ============================================================================

class AndroidMotionEventButtons(IntEnum):
    """Android motion event button flags."""
    PRIMARY = 1 << 0
    SECONDARY = 1 << 1
    TERTIARY = 1 << 2


# ============================================================================
# Clipboard / display power / scroll
# ============================================================================

class CopyKey(IntEnum):
    """Clipboard copy key types."""
    NONE = 0
    COPY = 1
    CUT = 2


class ScreenPowerMode(IntEnum):
    """Display power modes for SET_DISPLAY_POWER."""
    OFF = 0
    NORMAL = 2


class ScrollDirection(Enum):
    """Discrete scroll directions."""
    LEFT = "left"
    RIGHT = "right"
    UP = "up"
    DOWN = "down"


# Discrete scroll amounts, the extremes of the signed 16-bit range
SCROLL_POSITIVE: Final[int] = 0x7FFF
SCROLL_NEGATIVE: Final[int] = -0x8000

# Pressure reported for every non-UP touch event
TOUCH_PRESSURE_FULL: Final[int] = 0xFFFF


# ============================================================================
# Special Pointer IDs
# ============================================================================

POINTER_ID_MOUSE: Final[int] = -1
POINTER_ID_GENERIC_FINGER: Final[int] = -2  # Used for synthetic touches


# ============================================================================
# Message Size Limits
# ============================================================================

DEVICE_MSG_MAX_SIZE: Final[int] = 1 << 18
UHID_NAME_MAX_LENGTH: Final[int] = 0xFF
START_APP_NAME_MAX_LENGTH: Final[int] = 0xFF


# ============================================================================
# Utilities
# ============================================================================

def is_config_packet(pts_flags: int) -> bool:
    """Check if packet is a configuration packet."""
    return bool(pts_flags & PACKET_FLAG_CONFIG)


def is_key_frame(pts_flags: int) -> bool:
    """Check if packet is a key frame."""
    return bool(pts_flags & PACKET_FLAG_KEY_FRAME)


def extract_pts(pts_flags: int) -> int:
    """Extract PTS from pts_flags field."""
    return pts_flags & PACKET_PTS_MASK
