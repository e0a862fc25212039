"""
Tests for the session manager against fake devices over local TCP.
"""

import socket
import struct
import threading
import time

import pytest

from conftest import (
    close_listener,
    connect_reverse,
    free_port,
    make_config,
    recv_exactly,
    wait_for,
)
from scrcpy_relay.bridge.config import UhidDeviceConfig
from scrcpy_relay.core.control import ControlMessage
from scrcpy_relay.core.device_msg import AckClipboardMessage, ClipboardMessage, UhidOutputMessage
from scrcpy_relay.core.protocol import (
    AndroidKeyEventAction,
    CodecId,
    ControlMessageType,
)
from scrcpy_relay.core.session import ConnectIntent, SessionState
from scrcpy_relay.core.socket import ListenerBindError, SocketType

VIDEO_CONTROL = [SocketType.VIDEO, SocketType.CONTROL]


def keycode_message(code: int) -> ControlMessage:
    msg = ControlMessage(ControlMessageType.INJECT_KEYCODE)
    msg.set_keycode(AndroidKeyEventAction.DOWN, code)
    return msg


def test_connect_intent_helpers():
    assert ConnectIntent.forward("1.2.3.4:5") == ConnectIntent(True, "1.2.3.4:5")
    assert ConnectIntent.reverse() == ConnectIntent(True, None)
    assert ConnectIntent.disconnect().connect is False


class TestForward:
    def test_handshake_and_hand_off(self, harnesses, devices):
        device = devices(VIDEO_CONTROL, name="Pixel 7", width=1080, height=2400)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()

        assert harness.manager.request_connect() is True
        stream = harness.manager.wait_video_connected(timeout=5.0)

        assert stream is not None
        assert stream.info.device_name == "Pixel 7"
        assert stream.info.video_codec == CodecId.H264
        assert (stream.info.initial_video_width, stream.info.initial_video_height) == (1080, 2400)
        assert harness.manager.state == SessionState.CONNECTED
        assert harness.manager.snapshot() == stream.info

    def test_hand_off_reaches_waiting_consumer(self, harnesses, devices):
        device = devices(VIDEO_CONTROL, name="idle")
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()
        received = []
        consumer = threading.Thread(
            target=lambda: received.append(harness.manager.wait_video_connected(timeout=5.0))
        )
        consumer.start()

        # Driver is idle in its intent wait when the connect arrives
        time.sleep(0.3)
        assert harness.manager.request_connect() is True
        consumer.join(5.0)

        assert received[0] is not None
        assert received[0].info.device_name == "idle"
        assert harness.manager.state == SessionState.CONNECTED

    def test_video_socket_carries_packets(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()
        harness.manager.request_connect()
        stream = harness.manager.wait_video_connected(timeout=5.0)

        device.session()[SocketType.VIDEO].sendall(struct.pack(">QI", 0, 3) + b"abc")
        assert stream.socket.recv_exactly(15)[12:] == b"abc"

    def test_control_messages_reach_device(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()
        harness.manager.request_connect()
        assert harness.manager.wait_video_connected(timeout=5.0) is not None

        harness.manager.control_writer.send(keycode_message(29))
        data = recv_exactly(device.session()[SocketType.CONTROL], 14)
        assert data == bytes.fromhex("0000" "0000001d" "00000000" "00000000")

    def test_explicit_address(self, harnesses, devices):
        device = devices([SocketType.CONTROL], name="ctl")
        harness = harnesses(make_config(forward=True, port=free_port(), video=False))
        harness.manager.start()

        harness.manager.request_connect(device.address)
        assert harness.wait_state(SessionState.CONNECTED)
        assert harness.manager.snapshot().device_name == "ctl"

    def test_dead_address_returns_to_idle(self, harnesses):
        harness = harnesses(make_config(
            forward=True, port=free_port(), connect_retries=3, connect_retry_delay=0.01,
        ))
        harness.manager.start()
        assert harness.manager.request_connect()

        # Each accepted offer means the driver took the previous intent and
        # finished its acquisition
        assert wait_for(lambda: harness.manager.request_connect(), 2.0)
        assert wait_for(lambda: harness.manager.request_connect(), 2.0)

        assert harness.wait_state(SessionState.IDLE)
        info = harness.manager.snapshot()
        assert not info.connected
        assert info.device_name == ""

    def test_missing_dummy_byte_is_retried(self, harnesses):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(4)
        accepted = []

        def serve():
            try:
                while True:
                    conn, _ = server.accept()
                    accepted.append(conn)
            except OSError:
                pass

        threading.Thread(target=serve, daemon=True).start()

        harness = harnesses(make_config(
            forward=True, port=server.getsockname()[1], connect_retries=2,
            connect_retry_delay=0.01, handshake_timeout=0.2,
        ))
        try:
            harness.manager.start()
            harness.manager.request_connect()

            # The server never sends the dummy byte, so every attempt fails
            # after dialing the video socket only
            assert wait_for(lambda: len(accepted) == 2)
            assert wait_for(lambda: harness.manager.request_connect(), 2.0)
            assert harness.manager.wait_video_connected(timeout=0.1) is None
            assert not harness.manager.snapshot().connected
        finally:
            close_listener(server)
            for conn in accepted:
                conn.close()

    def test_reconnect_closes_old_sockets(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()

        harness.manager.request_connect()
        first = harness.manager.wait_video_connected(timeout=5.0)
        old_control = device.session(0)[SocketType.CONTROL]

        assert wait_for(lambda: harness.manager.request_connect(), 2.0)
        second = harness.manager.wait_video_connected(timeout=5.0)

        assert second is not None
        assert first.socket.is_closed
        assert recv_exactly(old_control, 1) == b""
        assert wait_for(lambda: len(device.sessions) == 2)

    def test_disconnect_resets_metadata(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()
        harness.manager.request_connect()
        stream = harness.manager.wait_video_connected(timeout=5.0)

        assert wait_for(lambda: harness.manager.request_disconnect(), 2.0)
        assert harness.wait_state(SessionState.IDLE)
        assert harness.manager.wait_video_connected(timeout=0.2) is None

        info = harness.manager.snapshot()
        assert info.device_name == ""
        assert info.video_codec == 0
        assert (info.initial_video_width, info.initial_video_height) == (0, 0)
        assert stream.socket.is_closed
        assert not harness.manager.control_writer.is_attached
        assert recv_exactly(device.session()[SocketType.VIDEO], 1) == b""

    def test_pending_hand_off_cancelled_by_disconnect(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()
        harness.manager.request_connect()

        # Nobody receives the video hand-off
        assert harness.wait_state(SessionState.CONNECTED)
        assert wait_for(lambda: harness.manager.request_disconnect(), 2.0)
        assert harness.wait_state(SessionState.IDLE)
        assert harness.manager.wait_video_connected(timeout=0.2) is None

    def test_audio_hand_off(self, harnesses, devices):
        types = [SocketType.VIDEO, SocketType.AUDIO, SocketType.CONTROL]
        device = devices(types, audio_codec=CodecId.AAC)
        harness = harnesses(make_config(forward=True, port=device.port, audio=True))
        harness.manager.start()
        harness.manager.request_connect()

        video = harness.manager.wait_video_connected(timeout=5.0)
        audio = harness.manager.wait_audio_connected(timeout=5.0)
        assert video is not None and audio is not None
        assert audio.info.audio_codec == CodecId.AAC
        assert audio.socket is not video.socket


class TestHandshakeFailure:
    def test_truncated_name_abandons_session(self, harnesses):
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(4)
        port = server.getsockname()[1]
        accepted = []

        def serve():
            conn, _ = server.accept()
            conn.sendall(b"\x00" + b"short")
            accepted.append(conn)

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()

        harness = harnesses(make_config(
            forward=True, port=port, video=False, control=True,
            connect_retries=1, handshake_timeout=0.3,
        ))
        try:
            harness.manager.start()
            harness.manager.request_connect()
            thread.join(5.0)

            assert harness.wait_state(SessionState.IDLE)
            assert recv_exactly(accepted[0], 1) == b""
        finally:
            close_listener(server)
            for conn in accepted:
                conn.close()


class TestReverse:
    def test_accepts_device(self, harnesses):
        harness = harnesses(make_config(forward=False, port=0))
        harness.manager.start()
        port = harness.manager.listener.address[1]

        harness.manager.request_connect()
        assert harness.wait_state(SessionState.ACQUIRING)
        device = connect_reverse(port, VIDEO_CONTROL, name="Tablet", width=1600, height=2560)
        try:
            stream = harness.manager.wait_video_connected(timeout=5.0)
            assert stream.info.device_name == "Tablet"
            assert stream.info.initial_video_width == 1600
        finally:
            device.close()

    def test_reconnect_reuses_listener(self, harnesses):
        harness = harnesses(make_config(forward=False, port=0, video=False))
        harness.manager.start()
        port = harness.manager.listener.address[1]

        sessions = []
        try:
            for name in ("first", "second"):
                assert wait_for(lambda: harness.manager.request_connect(), 2.0)
                assert harness.wait_state(SessionState.ACQUIRING)
                sessions.append(connect_reverse(port, [SocketType.CONTROL], name=name))
                assert wait_for(lambda: harness.manager.snapshot().device_name == name)

            assert recv_exactly(sessions[0][SocketType.CONTROL], 1) == b""
        finally:
            for session in sessions:
                session.close()

    def test_bind_failure(self, harnesses):
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        try:
            harness = harnesses(make_config(forward=False, port=blocker.getsockname()[1]))
            with pytest.raises(ListenerBindError):
                harness.manager.start()
        finally:
            blocker.close()

    def test_stop_while_accepting(self, harnesses):
        harness = harnesses(make_config(forward=False, port=0))
        harness.manager.start()
        harness.manager.request_connect()
        assert harness.wait_state(SessionState.ACQUIRING)

        harness.manager.stop()
        assert harness.manager.state == SessionState.IDLE


class TestConnectedSession:
    def test_device_messages_are_published(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        harness = harnesses(make_config(forward=True, port=device.port))
        harness.manager.start()
        harness.manager.request_connect()
        assert harness.manager.wait_video_connected(timeout=5.0) is not None

        control = device.session()[SocketType.CONTROL]
        control.sendall(ClipboardMessage("from device").serialize())
        assert harness.clipboard.receive(timeout=2.0) == '"from device"'

        control.sendall(AckClipboardMessage(3).serialize())
        assert harness.clipboard.receive(timeout=2.0) == "3"

        control.sendall(UhidOutputMessage(1, b"\x02").serialize())
        assert harness.uhid_output.receive(timeout=2.0) == "02"

    def test_uhid_devices_created_on_connect(self, harnesses, devices):
        device = devices([SocketType.CONTROL])
        uhid = UhidDeviceConfig(id=1, report_desc=b"\x05\x01", name="kbd",
                                vendor_id=0x18D1, product_id=0x4EE7)
        harness = harnesses(make_config(
            forward=True, port=device.port, video=False, uhid_devices=[uhid],
        ))
        harness.manager.start()
        harness.manager.request_connect()

        expected = ControlMessage(ControlMessageType.UHID_CREATE)
        expected.set_uhid_create(1, b"\x05\x01", "kbd", 0x18D1, 0x4EE7)
        data = expected.serialize()
        assert recv_exactly(device.session()[SocketType.CONTROL], len(data)) == data

    def test_uhid_create_failure_closes_session(self, harnesses, devices):
        device = devices(VIDEO_CONTROL)
        uhid = UhidDeviceConfig(id=1, report_desc=b"\x01", name="x" * 300)
        harness = harnesses(make_config(forward=True, port=device.port, uhid_devices=[uhid]))
        harness.manager.start()
        harness.manager.request_connect()

        session = device.session()
        assert recv_exactly(session[SocketType.CONTROL], 1) == b""
        assert recv_exactly(session[SocketType.VIDEO], 1) == b""
        assert harness.wait_state(SessionState.IDLE)
        assert harness.manager.wait_video_connected(timeout=0.2) is None
        assert not harness.manager.snapshot().connected

    def test_connected_commands_run(self, harnesses, devices):
        device = devices([SocketType.CONTROL])
        ran = []
        done = threading.Event()

        def runner(commands):
            ran.append(commands)
            done.set()

        harness = harnesses(
            make_config(forward=True, port=device.port, video=False, connected_commands=[["a"]]),
            command_runner=runner,
        )
        harness.manager.set_connected_commands([["key", "home"]])
        harness.manager.start()
        harness.manager.request_connect()

        assert done.wait(5.0)
        assert ran == [[["key", "home"]]]
        assert harness.manager.connected_commands == [["key", "home"]]

    def test_no_sockets_enabled(self, harnesses):
        harness = harnesses(make_config(forward=True, port=free_port(), video=False, control=False))
        harness.manager.start()
        assert harness.manager.request_connect()
        assert wait_for(lambda: harness.manager.request_connect(), 2.0)
        assert harness.manager.state == SessionState.IDLE
