"""
scrcpy_relay/core/decoder/exceptions.py

Exception classes for decode pipeline errors.
"""


__all__ = [
    'DecoderError',
    'CodecNotSupportedError',
    'DecoderStartError',
    'DecodeError'
]


class DecoderError(Exception):
    """Base exception for decoder errors."""
    pass


class CodecNotSupportedError(DecoderError):
    """Raised when a codec is not supported."""
    pass


class DecoderStartError(DecoderError):
    """Raised when the decoder process or codec context cannot be started."""
    pass


class DecodeError(DecoderError):
    """Raised when packet decoding fails."""
    pass
