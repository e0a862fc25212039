"""
scrcpy_relay/core/decoder/video.py

In-process video decoding using PyAV (FFmpeg).

This module provides the PyAV decode pipeline: the framed video stream is
parsed back into packets, config packets are merged into the following
media packet, and every decoded frame is converted to packed RGB(A) and
stored in the frame cache.
"""

import logging
from typing import List, Optional

import av
import numpy as np

from .exceptions import CodecNotSupportedError, DecodeError, DecoderStartError
from .pipeline import DecodePipeline
from ..frame_cache import FrameCache
from ..protocol import CodecId, PACKET_HEADER_SIZE, codec_id_to_string, codec_name_for_ffmpeg
from ..stream import PacketHeader, PacketMerger


logger = logging.getLogger(__name__)


__all__ = ["FrameDecoder", "PyAVDecodePipeline"]


class FrameDecoder:
    """
    Decode scrcpy video packets to RGB(A) numpy arrays.

    Example:
        >>> decoder = FrameDecoder(CodecId.H264)
        >>> frames = decoder.decode(header, payload)
    """

    def __init__(self, codec_id: int, alpha: bool = False) -> None:
        """
        Initialize the decoder.

        Args:
            codec_id: Video codec ID (H264, H265, or AV1)
            alpha: Produce RGBA instead of RGB

        Raises:
            CodecNotSupportedError: If the codec is not a video codec
            DecoderStartError: If the codec context cannot be created
        """
        self._codec_id = codec_id
        self._pixel_format = "rgba" if alpha else "rgb24"
        self._merger = PacketMerger()
        self._frame_count = 0

        try:
            codec_name = codec_name_for_ffmpeg(codec_id)
        except KeyError:
            raise CodecNotSupportedError(
                f"Unsupported codec: {codec_id_to_string(codec_id)}"
            )

        try:
            self._codec_context = av.CodecContext.create(codec_name, "r")
        except (av.error.FFmpegError, ValueError) as e:
            raise DecoderStartError(f"Failed to initialize {codec_name} decoder: {e}")

        # AV_CODEC_FLAG_LOW_DELAY, as the official scrcpy client
        self._codec_context.flags |= 0x00080000
        self._codec_context.thread_count = 1

        logger.info(f"Initialized {codec_name} decoder")

    @property
    def frame_count(self) -> int:
        return self._frame_count

    def decode(self, header: PacketHeader, data: bytes) -> List[np.ndarray]:
        """
        Decode one packet.

        Args:
            header: Packet header
            data: Packet payload

        Returns:
            Decoded frames, (height, width, channels) uint8 arrays; empty
            for config packets

        Raises:
            DecodeError: If decoding fails
        """
        if self._codec_id in (CodecId.H264, CodecId.H265):
            data = self._merger.merge(header, data)
            if data is None:
                return []

        frames = []

        try:
            av_packet = av.Packet(data)
            av_packet.pts = header.pts
            av_packet.dts = header.pts
            if header.is_key_frame:
                logger.debug(f"Decoding key frame: {len(data)} bytes, pts={header.pts}")

            for frame in self._codec_context.decode(av_packet):
                self._frame_count += 1
                # PyAV reuses frame buffers, so copy
                frames.append(frame.reformat(format=self._pixel_format).to_ndarray().copy())

        except av.error.BlockingIOError:
            pass  # Decoder is full, expected behavior
        except av.error.FFmpegError as e:
            raise DecodeError(f"Failed to decode packet: {e}")

        return frames


class _FramedPacketSink:
    """
    Sink receiving one framed packet per write, decoding into the cache.

    Undecodable packets are skipped; the stream recovers at the next key
    frame.
    """

    def __init__(self, decoder: FrameDecoder, frame_cache: FrameCache):
        self._decoder = decoder
        self._frame_cache = frame_cache

    def write(self, data: bytes) -> int:
        header = PacketHeader.parse(data[:PACKET_HEADER_SIZE])
        payload = data[PACKET_HEADER_SIZE:]

        try:
            frames = self._decoder.decode(header, payload)
        except DecodeError as e:
            logger.warning(f"{e}")
            return len(data)

        for frame in frames:
            height, width = frame.shape[:2]
            self._frame_cache.update(width, height, frame)

        return len(data)


class PyAVDecodePipeline(DecodePipeline):
    """In-process decode pipeline built on PyAV."""

    name = "PyAV"

    def __init__(self, manager, frame_cache: FrameCache, alpha: bool = False):
        super().__init__(manager, frame_cache, alpha)
        self._decoder: Optional[FrameDecoder] = None

    def _start_decoder(self, info) -> _FramedPacketSink:
        self._decoder = FrameDecoder(info.video_codec, self.alpha)
        return _FramedPacketSink(self._decoder, self.frame_cache)

    def _stop_decoder(self) -> None:
        if self._decoder is not None:
            logger.debug(f"PyAV decoder stopped after {self._decoder.frame_count} frames")
        self._decoder = None
