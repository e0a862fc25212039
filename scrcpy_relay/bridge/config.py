"""
Configuration for the scrcpy relay bridge.

This module contains the configuration dataclasses and the JSON loader.
The JSON file uses camelCase keys:

    {
        "scrcpy": {
            "port": 27183,
            "video": true,
            "control": true,
            "forward": true,
            "uhidDevices": [{"id": 1, "reportDesc": "05010906...", "name": "Keyboard"}],
            "connectedCommands": [["key", "home"]]
        },
        "videoDecoder": "ffmpeg"
    }
"""

import json
import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the configuration is invalid"""

    pass


DECODER_KINDS = ("executable", "ffmpeg", "pyav")


@dataclass
class UhidDeviceConfig:
    """
    A virtual HID device created on every connection.

    Attributes:
        id: UHID device ID
        report_desc: HID report descriptor
        name: Device name shown on the device
        vendor_id: USB vendor ID (0 if not set)
        product_id: USB product ID (0 if not set)
    """
    id: int
    report_desc: bytes
    name: str = ""
    vendor_id: int = 0
    product_id: int = 0


@dataclass
class ScrcpyConfig:
    """
    Connection settings for the scrcpy session.

    forward selects the topology: True dials host:port (adb forward),
    False listens on host:port for the device (adb reverse).
    """
    enabled: bool = True
    host: str = "127.0.0.1"
    port: int = 27183
    video: bool = False
    audio: bool = False
    control: bool = False
    forward: bool = False
    uhid_devices: List[UhidDeviceConfig] = field(default_factory=list)
    stdout_clipboard: bool = False
    stdout_uhid_output: bool = False
    connected_commands: List[Any] = field(default_factory=list)

    # Timing
    connect_retries: int = 100
    connect_retry_delay: float = 0.1  # seconds between forward attempts
    handshake_timeout: float = 10.0
    clipboard_timeout: float = 2.0


@dataclass
class VideoDecoderConfig:
    """
    Local decode pipeline feeding the frame cache.

    kind is "executable" (custom decoder), "ffmpeg" or "pyav" (in-process).
    """
    enabled: bool = False
    kind: str = "ffmpeg"
    executable: str = "ffmpeg"
    alpha: bool = False


@dataclass
class BridgeConfig:
    """Top-level configuration"""
    scrcpy: ScrcpyConfig = field(default_factory=lambda: ScrcpyConfig(enabled=False))
    video_decoder: VideoDecoderConfig = field(default_factory=VideoDecoderConfig)


# ============================================================================
# JSON loading
# ============================================================================

def _expect(value: Any, types, key: str) -> Any:
    # bool is an int subclass; reject it where a number is expected
    if isinstance(value, bool) and bool not in (types if isinstance(types, tuple) else (types,)):
        raise ConfigError(f"{key}: expected {types}, got {value!r}")
    if not isinstance(value, types):
        raise ConfigError(f"{key}: expected {types}, got {value!r}")
    return value


def _parse_hex_id(value: Any, key: str) -> int:
    if value in (None, ""):
        return 0
    if not isinstance(value, str) or len(value) != 4:
        raise ConfigError(f"{key}: expected 4 hex digits, got {value!r}")
    try:
        return int(value, 16)
    except ValueError:
        raise ConfigError(f"{key}: expected 4 hex digits, got {value!r}")


def parse_uhid_device(data: Dict[str, Any], index: int = 0) -> UhidDeviceConfig:
    prefix = f"scrcpy.uhidDevices[{index}]"
    _expect(data, dict, prefix)

    device_id = _expect(data.get("id", 0), int, f"{prefix}.id")
    if not 0 <= device_id <= 0xFFFF:
        raise ConfigError(f"{prefix}.id: out of range: {device_id}")

    report_desc = _expect(data.get("reportDesc", ""), str, f"{prefix}.reportDesc")
    try:
        desc = bytes.fromhex(report_desc)
    except ValueError:
        raise ConfigError(f"{prefix}.reportDesc: invalid hex string")

    vendor_id = data.get("vendorId", "")
    product_id = data.get("productId", "")
    if bool(vendor_id) != bool(product_id):
        raise ConfigError(f"{prefix}: vendorId and productId must be set together")

    return UhidDeviceConfig(
        id=device_id,
        report_desc=desc,
        name=_expect(data.get("name", ""), str, f"{prefix}.name"),
        vendor_id=_parse_hex_id(vendor_id, f"{prefix}.vendorId"),
        product_id=_parse_hex_id(product_id, f"{prefix}.productId"),
    )


def parse_scrcpy_config(data: Dict[str, Any]) -> ScrcpyConfig:
    _expect(data, dict, "scrcpy")
    defaults = ScrcpyConfig()

    def get(key: str, default: Any, types) -> Any:
        return _expect(data.get(key, default), types, f"scrcpy.{key}")

    port = get("port", defaults.port, int)
    if not 0 <= port <= 0xFFFF:
        raise ConfigError(f"scrcpy.port: out of range: {port}")

    commands = get("connectedCommands", [], list)
    devices = get("uhidDevices", [], list)

    return ScrcpyConfig(
        enabled=get("enabled", True, bool),
        host=get("host", defaults.host, str),
        port=port,
        video=get("video", False, bool),
        audio=get("audio", False, bool),
        control=get("control", False, bool),
        forward=get("forward", False, bool),
        uhid_devices=[parse_uhid_device(d, i) for i, d in enumerate(devices)],
        stdout_clipboard=get("stdoutClipboard", False, bool),
        stdout_uhid_output=get("stdoutUhidOutput", False, bool),
        connected_commands=list(commands),
        connect_retries=get("connectRetries", defaults.connect_retries, int),
        connect_retry_delay=float(get("connectRetryDelay", defaults.connect_retry_delay, (int, float))),
        handshake_timeout=float(get("handshakeTimeout", defaults.handshake_timeout, (int, float))),
        clipboard_timeout=float(get("clipboardTimeout", defaults.clipboard_timeout, (int, float))),
    )


def _infer_decoder_kind(executable: str) -> str:
    return "ffmpeg" if "ffmpeg" in executable.lower() else "executable"


def parse_video_decoder_config(data: Any) -> VideoDecoderConfig:
    """
    Parse the videoDecoder entry.

    Accepts a bare executable path, a bare alpha flag, or an object with
    enabled/kind/executable/alpha.
    """
    if isinstance(data, str):
        return VideoDecoderConfig(True, _infer_decoder_kind(data), data, False)

    if isinstance(data, bool):
        return VideoDecoderConfig(True, "ffmpeg", "ffmpeg", data)

    _expect(data, dict, "videoDecoder")
    executable = _expect(data.get("executable", "ffmpeg"), str, "videoDecoder.executable")
    kind = _expect(data.get("kind", _infer_decoder_kind(executable)), str, "videoDecoder.kind")
    if kind not in DECODER_KINDS:
        raise ConfigError(f"videoDecoder.kind: expected one of {DECODER_KINDS}, got {kind!r}")

    return VideoDecoderConfig(
        enabled=_expect(data.get("enabled", True), bool, "videoDecoder.enabled"),
        kind=kind,
        executable=executable,
        alpha=_expect(data.get("alpha", False), bool, "videoDecoder.alpha"),
    )


def parse_config(data: Dict[str, Any]) -> BridgeConfig:
    """
    Build a BridgeConfig from decoded JSON.

    Missing sections are disabled. Unknown keys are ignored.

    Raises:
        ConfigError: If a value has the wrong type or is out of range
    """
    _expect(data, dict, "config")
    config = BridgeConfig()

    if "scrcpy" in data:
        config.scrcpy = parse_scrcpy_config(data["scrcpy"])
    if "videoDecoder" in data:
        config.video_decoder = parse_video_decoder_config(data["videoDecoder"])

    return config


def load_config(path: Optional[str] = None) -> BridgeConfig:
    """
    Load the configuration from a JSON file, or from stdin for "-".

    Raises:
        ConfigError: If the file cannot be read or is invalid
    """
    if path is None:
        return BridgeConfig()

    try:
        if path == "-":
            data = json.load(sys.stdin)
        else:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}")

    config = parse_config(data)
    logger.debug(f"Loaded config from {path}")
    return config


__all__ = [
    "BridgeConfig",
    "ScrcpyConfig",
    "UhidDeviceConfig",
    "VideoDecoderConfig",
    "ConfigError",
    "load_config",
    "parse_config",
]
