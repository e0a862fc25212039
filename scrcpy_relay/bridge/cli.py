"""
scrcpy-relay command line entry point.

Usage:
    scrcpy-relay config.json
    scrcpy-relay - < config.json
    scrcpy-relay config.json --connect 127.0.0.1:27183 --video-stdout > video.h264
"""

import sys
import signal
import logging
import argparse
import threading
from typing import List, Optional

from ..core.socket import ListenerBindError, SocketType
from ..core.stream import RelayMode, StreamRelayWorker
from .bridge import Bridge
from .config import ConfigError, load_config

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


def setup_logging(level: str = "INFO") -> None:
    """Log to stderr; stdout may carry stream data."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scrcpy-relay",
        description="Bridge a single scrcpy device session to local consumers",
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=None,
        help="JSON configuration file, or - to read it from stdin",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--connect",
        nargs="?",
        const="",
        default=None,
        metavar="ADDRESS",
        help="Connect at startup, optionally to host:port in forward mode",
    )

    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "--video-stdout",
        action="store_true",
        help="Write the video stream of every session to stdout",
    )
    output.add_argument(
        "--audio-stdout",
        action="store_true",
        help="Write the audio stream of every session to stdout",
    )
    parser.add_argument(
        "--framed",
        action="store_true",
        help="Keep the 12-byte packet headers in the stdout stream",
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"{e}")
        return 2

    if not config.scrcpy.enabled:
        logger.error("scrcpy is not enabled in the configuration")
        return 2

    stream_type = None
    if args.video_stdout:
        stream_type = SocketType.VIDEO
        if not config.scrcpy.video:
            logger.error("video is not enabled in the configuration")
            return 2
        # The video socket goes to exactly one consumer per session
        if config.video_decoder.enabled:
            logger.error("--video-stdout cannot be used with the video decoder enabled")
            return 2
    elif args.audio_stdout:
        stream_type = SocketType.AUDIO
        if not config.scrcpy.audio:
            logger.error("audio is not enabled in the configuration")
            return 2

    bridge = Bridge(config)
    try:
        bridge.start()
    except ListenerBindError:
        return 1

    worker = None
    if stream_type is not None:
        mode = RelayMode.FRAMED if args.framed else RelayMode.RAW
        worker = StreamRelayWorker(
            bridge.manager, stream_type, lambda stream: sys.stdout.buffer, mode
        )
        worker.start()

    if args.connect is not None:
        bridge.connect(args.connect or None)

    stopped = threading.Event()

    def on_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stopped.set()

    signal.signal(signal.SIGINT, on_signal)
    signal.signal(signal.SIGTERM, on_signal)

    while not stopped.wait(0.5):
        pass

    bridge.disconnect()
    bridge.stop()
    if worker is not None:
        worker.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
