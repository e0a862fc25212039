"""
scrcpy_relay/core/decoder/pipeline.py

Decode pipelines feeding the frame cache.

A pipeline waits for every "video connected" hand-off, starts a decoder
for the new session, relays the video socket into it in framed mode and
stops the decoder when the relay ends. The decoded raw frames are stored
in a FrameCache for polling.

Two external decoders are supported:
- a custom decoder executable, invoked as `<exe> <codec-id> <alpha>`, that
  writes an 8-byte native-endian (width, height) header before each frame
- ffmpeg, producing fixed-size rawvideo frames at the initial dimensions
"""

import struct
import logging
import subprocess
import threading
from typing import IO, TYPE_CHECKING, Any, List, Optional

from ..frame_cache import FrameCache, BYTES_PER_PIXEL_RGB, BYTES_PER_PIXEL_RGBA
from ..protocol import codec_id_to_string, codec_name_for_ffmpeg
from ..stream import RelayMode, relay_stream
from .exceptions import CodecNotSupportedError, DecoderError, DecoderStartError

if TYPE_CHECKING:
    from ..session import SessionInfo, SessionManager

logger = logging.getLogger(__name__)


# Native-endian width and height preceding each frame of a custom decoder
FRAME_HEADER_FORMAT = "=II"
FRAME_HEADER_SIZE = struct.calcsize(FRAME_HEADER_FORMAT)


def read_exactly(stream: IO[bytes], size: int) -> Optional[bytes]:
    """Read size bytes from a pipe; None on end of stream."""
    data = stream.read(size)
    if data is None or len(data) != size:
        return None
    return data


class DecodePipeline:
    """
    Base class: one decoder per video session, frames into a FrameCache.

    Subclasses implement _start_decoder() returning the sink the framed
    video stream is written to, and _stop_decoder().
    """

    name = "decoder"

    def __init__(self, manager: "SessionManager", frame_cache: FrameCache, alpha: bool = False):
        self._manager = manager
        self.frame_cache = frame_cache
        self.alpha = alpha
        self.bytes_per_pixel = BYTES_PER_PIXEL_RGBA if alpha else BYTES_PER_PIXEL_RGB

        self._thread: Optional[threading.Thread] = None
        self._stopped = threading.Event()

        # Statistics
        self.sessions_decoded = 0

    def start(self) -> None:
        if self._thread is not None:
            logger.warning(f"{self.name} pipeline already running")
            return

        self._stopped.clear()
        self._thread = threading.Thread(target=self._run, name="DecodePipeline", daemon=True)
        self._thread.start()
        logger.info(f"{self.name} pipeline started")

    def stop(self) -> None:
        if self._thread is None:
            return

        self._stopped.set()
        self._thread.join(timeout=5.0)
        if self._thread.is_alive():
            logger.warning(f"{self.name} pipeline did not stop gracefully")
        self._thread = None
        self._stop_decoder()

    def _run(self) -> None:
        while not self._stopped.is_set():
            stream = self._manager.wait_video_connected(cancel=self._stopped)
            if stream is None:
                continue

            try:
                sink = self._start_decoder(stream.info)
            except CodecNotSupportedError as e:
                logger.warning(f"Not decoding this session: {e}")
                continue
            except DecoderError as e:
                logger.error(f"Decode pipeline stopped: {e}")
                break

            self.sessions_decoded += 1
            try:
                relay_stream(stream.socket, sink, RelayMode.FRAMED, self._manager.request_disconnect)
            finally:
                self._stop_decoder()

    def _start_decoder(self, info: "SessionInfo") -> Any:
        raise NotImplementedError

    def _stop_decoder(self) -> None:
        raise NotImplementedError


class _SubprocessDecodePipeline(DecodePipeline):
    """Runs the decoder as a child process fed through its stdin."""

    def __init__(self, manager, frame_cache: FrameCache, executable: str, alpha: bool = False):
        super().__init__(manager, frame_cache, alpha)
        self.executable = executable
        self._process: Optional[subprocess.Popen] = None
        self._reader: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def _command(self, info: "SessionInfo") -> List[str]:
        raise NotImplementedError

    def _read_frames(self, stdout: IO[bytes], info: "SessionInfo") -> None:
        raise NotImplementedError

    def _start_decoder(self, info: "SessionInfo") -> Any:
        self._stop_decoder()
        cmd = self._command(info)
        logger.debug(f"Starting decoder: {' '.join(cmd)}")

        try:
            process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
            )
        except OSError as e:
            raise DecoderStartError(f"Cannot start {cmd[0]}: {e}")

        reader = threading.Thread(
            target=self._read_frames_safe,
            args=(process.stdout, info),
            name="DecoderOutput",
            daemon=True,
        )
        with self._lock:
            self._process = process
            self._reader = reader
        reader.start()

        logger.info(f"{self.name} started (pid {process.pid}) for {codec_id_to_string(info.video_codec)}")
        return process.stdin

    def _read_frames_safe(self, stdout: IO[bytes], info: "SessionInfo") -> None:
        try:
            self._read_frames(stdout, info)
        except (OSError, ValueError) as e:
            logger.debug(f"Decoder output ended: {e}")
        logger.debug("Decoder output reader finished")

    def _stop_decoder(self) -> None:
        with self._lock:
            process, self._process = self._process, None
            reader, self._reader = self._reader, None

        if process is None:
            return

        try:
            process.stdin.close()
        except OSError:
            pass  # Decoder already gone

        process.kill()
        process.wait()
        if reader is not None:
            reader.join(timeout=5.0)
        process.stdout.close()
        logger.debug(f"{self.name} stopped (exit code {process.returncode})")


class ExecutableDecodePipeline(_SubprocessDecodePipeline):
    """
    Custom decoder executable.

    Invoked with the video codec id in decimal and "1" or "0" for alpha.
    Its output is a sequence of frames, each preceded by the frame width
    and height as native-endian 32-bit integers.
    """

    name = "decoder executable"

    def _command(self, info) -> List[str]:
        return [self.executable, str(info.video_codec), "1" if self.alpha else "0"]

    def _read_frames(self, stdout: IO[bytes], info) -> None:
        while True:
            header = read_exactly(stdout, FRAME_HEADER_SIZE)
            if header is None:
                return

            width, height = struct.unpack(FRAME_HEADER_FORMAT, header)
            pixels = read_exactly(stdout, width * height * self.bytes_per_pixel)
            if pixels is None:
                return

            self.frame_cache.update(width, height, pixels)


class FfmpegDecodePipeline(_SubprocessDecodePipeline):
    """
    ffmpeg decoding to rawvideo at the session's initial dimensions.

    The transpose filter passes frames through while their orientation
    matches the initial one and rotates them otherwise, so every frame has
    the same size.
    """

    name = "ffmpeg"

    def __init__(self, manager, frame_cache: FrameCache, executable: str = "ffmpeg", alpha: bool = False):
        super().__init__(manager, frame_cache, executable, alpha)

    def _command(self, info) -> List[str]:
        try:
            codec_name = codec_name_for_ffmpeg(info.video_codec)
        except KeyError:
            raise CodecNotSupportedError(
                f"Unsupported video codec: {codec_id_to_string(info.video_codec)}"
            )

        landscape = info.initial_video_width >= info.initial_video_height
        return [
            self.executable,
            "-probesize", "32",
            "-analyzeduration", "0",
            "-re",
            "-f", codec_name,
            "-i", "-",
            "-f", "rawvideo",
            "-pix_fmt", "rgba" if self.alpha else "rgb24",
            "-vf", "transpose=1:landscape" if landscape else "transpose=1:portrait",
            "-",
        ]

    def _start_decoder(self, info) -> Any:
        # Validate the codec before touching the cache
        self._command(info)
        self.frame_cache.reset_dimensions(info.initial_video_width, info.initial_video_height)
        return super()._start_decoder(info)

    def _read_frames(self, stdout: IO[bytes], info) -> None:
        width = info.initial_video_width
        height = info.initial_video_height
        frame_size = self.frame_cache.frame_size(width, height)
        if frame_size == 0:
            return

        while True:
            pixels = read_exactly(stdout, frame_size)
            if pixels is None:
                return
            self.frame_cache.update(width, height, pixels)
