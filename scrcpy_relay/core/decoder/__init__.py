"""
scrcpy_relay/core/decoder

Video decode pipelines for the frame cache.

- exceptions: Decoder exception hierarchy
- pipeline: Pipeline base class and the external decoder pipelines
  (custom decoder executable, ffmpeg)
- video: In-process PyAV pipeline
"""

from .exceptions import (
    DecoderError,
    CodecNotSupportedError,
    DecoderStartError,
    DecodeError
)
from .pipeline import DecodePipeline, ExecutableDecodePipeline, FfmpegDecodePipeline
from .video import FrameDecoder, PyAVDecodePipeline


__all__ = [
    # Exceptions
    'DecoderError',
    'CodecNotSupportedError',
    'DecoderStartError',
    'DecodeError',

    # Pipelines
    'DecodePipeline',
    'ExecutableDecodePipeline',
    'FfmpegDecodePipeline',
    'PyAVDecodePipeline',

    # Decoder
    'FrameDecoder',
]
