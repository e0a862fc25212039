"""
scrcpy_relay/bridge

Capability interface over the core engine.

- config: Configuration dataclasses and the JSON loader
- bridge: Bridge facade (lifecycle, control, clipboard, streams, frames)
- cli: scrcpy-relay console entry point
"""

from .config import (
    BridgeConfig,
    ScrcpyConfig,
    UhidDeviceConfig,
    VideoDecoderConfig,
    ConfigError,
    load_config,
    parse_config,
)
from .bridge import Bridge, create_decode_pipeline


__all__ = [
    # Config
    'BridgeConfig',
    'ScrcpyConfig',
    'UhidDeviceConfig',
    'VideoDecoderConfig',
    'ConfigError',
    'load_config',
    'parse_config',

    # Bridge
    'Bridge',
    'create_decode_pipeline',
]
