"""
scrcpy_relay/core/frame_cache.py

Most recent decoded video frame, shared by one decode pipeline writer and
any number of frame-poll readers.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


# Bytes per pixel of the raw formats produced by the decode pipelines
BYTES_PER_PIXEL_RGB = 3
BYTES_PER_PIXEL_RGBA = 4


class ReadWriteLock:
    """
    Many readers or one writer.

    Writers waiting for the lock block new readers, so a steady stream of
    polls cannot starve the decode pipeline.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    def read_locked(self) -> "_LockContext":
        return _LockContext(self.acquire_read, self.release_read)

    def write_locked(self) -> "_LockContext":
        return _LockContext(self.acquire_write, self.release_write)


class _LockContext:
    def __init__(self, acquire, release):
        self._acquire = acquire
        self._release = release

    def __enter__(self):
        self._acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self._release()
        return False


@dataclass(frozen=True)
class Frame:
    """
    A decoded frame copied out of the cache.

    Attributes:
        width: Frame width in pixels
        height: Frame height in pixels
        data: Packed pixels, width * height * bytes_per_pixel bytes
    """
    width: int
    height: int
    data: bytes


class FrameCache:
    """
    Single most recent decoded frame.

    The pixel buffer is replaced when the frame dimensions change and
    overwritten in place otherwise.

    Example:
        >>> cache = FrameCache(BYTES_PER_PIXEL_RGB)
        >>> cache.poll() is None
        True
        >>> cache.update(2, 1, bytes(6))
        >>> cache.poll().width
        2
    """

    def __init__(self, bytes_per_pixel: int = BYTES_PER_PIXEL_RGB):
        if bytes_per_pixel not in (BYTES_PER_PIXEL_RGB, BYTES_PER_PIXEL_RGBA):
            raise ValueError(f"Unsupported bytes per pixel: {bytes_per_pixel}")

        self.bytes_per_pixel = bytes_per_pixel
        self._lock = ReadWriteLock()
        self._width = 0
        self._height = 0
        self._buffer = np.zeros(0, dtype=np.uint8)
        self._has_frame = False

        # Statistics
        self.frames_written = 0
        self.reallocations = 0

    def frame_size(self, width: int, height: int) -> int:
        """Buffer length for a frame of the given dimensions"""
        return width * height * self.bytes_per_pixel

    def _ensure_buffer(self, width: int, height: int) -> None:
        # Caller holds the write lock
        if width == self._width and height == self._height:
            return

        self._width = width
        self._height = height
        self._buffer = np.zeros(self.frame_size(width, height), dtype=np.uint8)
        self.reallocations += 1
        logger.debug(f"Frame buffer reallocated for {width}x{height}")

    def reset_dimensions(self, width: int, height: int) -> None:
        """
        Preallocate a buffer for frames of the given dimensions.

        A reset cache reports no frame until the next update.
        """
        with self._lock.write_locked():
            self._ensure_buffer(width, height)
            self._buffer.fill(0)
            self._has_frame = False

    def update(self, width: int, height: int, pixels) -> None:
        """
        Store a decoded frame.

        Args:
            width: Frame width in pixels
            height: Frame height in pixels
            pixels: bytes-like object or numpy array holding exactly
                width * height * bytes_per_pixel bytes

        Raises:
            ValueError: If the pixel data has the wrong length
        """
        expected = self.frame_size(width, height)
        if isinstance(pixels, np.ndarray):
            source = pixels.reshape(-1).view(np.uint8)
        else:
            source = np.frombuffer(pixels, dtype=np.uint8)

        if source.size != expected:
            raise ValueError(
                f"Frame {width}x{height} needs {expected} bytes, got {source.size}"
            )

        with self._lock.write_locked():
            self._ensure_buffer(width, height)
            np.copyto(self._buffer, source)
            self._has_frame = True
            self.frames_written += 1

    def poll(self) -> Optional[Frame]:
        """
        Copy out the most recent frame.

        Returns:
            The frame, or None if nothing was decoded yet
        """
        with self._lock.read_locked():
            if not self._has_frame:
                return None
            return Frame(self._width, self._height, self._buffer.tobytes())

    @property
    def dimensions(self):
        """(width, height) of the current buffer"""
        with self._lock.read_locked():
            return self._width, self._height
