"""
Tests for the frame cache and its reader/writer lock.
"""

import threading

import numpy as np
import pytest

from scrcpy_relay.core.frame_cache import (
    BYTES_PER_PIXEL_RGB,
    BYTES_PER_PIXEL_RGBA,
    FrameCache,
    ReadWriteLock,
)


def test_empty_cache_has_no_frame():
    assert FrameCache().poll() is None


def test_update_and_poll():
    cache = FrameCache(BYTES_PER_PIXEL_RGB)
    pixels = bytes(range(12))
    cache.update(2, 2, pixels)

    frame = cache.poll()
    assert (frame.width, frame.height) == (2, 2)
    assert frame.data == pixels


def test_accepts_numpy_frames():
    cache = FrameCache(BYTES_PER_PIXEL_RGBA)
    array = np.arange(3 * 2 * 4, dtype=np.uint8).reshape(2, 3, 4)
    cache.update(3, 2, array)
    assert cache.poll().data == array.tobytes()


def test_wrong_length_is_rejected():
    cache = FrameCache()
    with pytest.raises(ValueError):
        cache.update(2, 2, bytes(11))
    assert cache.poll() is None


def test_same_dimensions_reuse_buffer():
    cache = FrameCache()
    cache.update(1, 1, b"\x01\x02\x03")
    cache.update(1, 1, b"\x04\x05\x06")

    assert cache.reallocations == 1
    assert cache.frames_written == 2
    assert cache.poll().data == b"\x04\x05\x06"


def test_dimension_change_reallocates():
    cache = FrameCache()
    cache.update(1, 1, bytes(3))
    cache.update(2, 1, bytes(6))

    assert cache.reallocations == 2
    assert cache.dimensions == (2, 1)
    assert len(cache.poll().data) == 6


def test_reset_dimensions():
    cache = FrameCache()
    cache.update(1, 1, b"\xff\xff\xff")
    cache.reset_dimensions(4, 2)

    assert cache.poll() is None
    assert cache.dimensions == (4, 2)

    cache.update(4, 2, bytes(24))
    assert cache.reallocations == 2


def test_poll_returns_a_copy():
    cache = FrameCache()
    cache.update(1, 1, b"\x01\x01\x01")
    frame = cache.poll()
    cache.update(1, 1, b"\x02\x02\x02")
    assert frame.data == b"\x01\x01\x01"


def test_unsupported_pixel_size():
    with pytest.raises(ValueError):
        FrameCache(2)


def test_frame_size():
    assert FrameCache(BYTES_PER_PIXEL_RGBA).frame_size(1080, 2400) == 1080 * 2400 * 4


class TestReadWriteLock:
    def test_readers_share(self):
        lock = ReadWriteLock()
        lock.acquire_read()
        acquired = threading.Event()

        def reader():
            with lock.read_locked():
                acquired.set()

        thread = threading.Thread(target=reader)
        thread.start()
        assert acquired.wait(2.0)
        thread.join(2.0)
        lock.release_read()

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        lock.acquire_write()
        acquired = threading.Event()

        def reader():
            with lock.read_locked():
                acquired.set()

        thread = threading.Thread(target=reader)
        thread.start()
        assert not acquired.wait(0.1)
        lock.release_write()
        assert acquired.wait(2.0)
        thread.join(2.0)

    def test_concurrent_updates_and_polls(self):
        cache = FrameCache()
        errors = []

        def writer(value):
            for _ in range(200):
                cache.update(2, 2, bytes([value]) * 12)

        def reader():
            for _ in range(200):
                frame = cache.poll()
                if frame is not None and len(set(frame.data)) != 1:
                    errors.append(frame.data)

        threads = [threading.Thread(target=writer, args=(v,)) for v in (1, 2)]
        threads.append(threading.Thread(target=reader))
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10.0)

        assert errors == []
