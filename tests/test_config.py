"""
Tests for configuration parsing and loading.
"""

import io
import json

import pytest

from scrcpy_relay.bridge.config import (
    BridgeConfig,
    ConfigError,
    load_config,
    parse_config,
)


def test_defaults_without_sections():
    config = parse_config({})
    assert isinstance(config, BridgeConfig)
    assert config.scrcpy.enabled is False
    assert config.video_decoder.enabled is False


def test_scrcpy_section_defaults():
    scrcpy = parse_config({"scrcpy": {}}).scrcpy
    assert scrcpy.enabled is True
    assert scrcpy.port == 27183
    assert scrcpy.host == "127.0.0.1"
    assert scrcpy.forward is False
    assert scrcpy.connect_retries == 100
    assert scrcpy.connect_retry_delay == pytest.approx(0.1)
    assert scrcpy.uhid_devices == []


def test_scrcpy_section():
    scrcpy = parse_config({
        "scrcpy": {
            "port": 27200,
            "video": True,
            "audio": True,
            "control": True,
            "forward": True,
            "stdoutClipboard": True,
            "connectedCommands": [["key", "home"]],
            "handshakeTimeout": 3,
        }
    }).scrcpy

    assert scrcpy.port == 27200
    assert (scrcpy.video, scrcpy.audio, scrcpy.control) == (True, True, True)
    assert scrcpy.forward is True
    assert scrcpy.stdout_clipboard is True
    assert scrcpy.stdout_uhid_output is False
    assert scrcpy.connected_commands == [["key", "home"]]
    assert scrcpy.handshake_timeout == 3.0


def test_uhid_devices():
    devices = parse_config({
        "scrcpy": {
            "uhidDevices": [
                {"id": 1, "reportDesc": "05010906", "name": "Keyboard",
                 "vendorId": "18d1", "productId": "4EE7"},
                {"id": 2, "reportDesc": ""},
            ]
        }
    }).scrcpy.uhid_devices

    assert devices[0].report_desc == b"\x05\x01\x09\x06"
    assert devices[0].name == "Keyboard"
    assert (devices[0].vendor_id, devices[0].product_id) == (0x18D1, 0x4EE7)
    assert (devices[1].vendor_id, devices[1].product_id) == (0, 0)
    assert devices[1].report_desc == b""


@pytest.mark.parametrize(
    "device",
    [
        {"id": 1, "reportDesc": "zz"},
        {"id": 1, "reportDesc": "", "vendorId": "18d"},
        {"id": 1, "reportDesc": "", "vendorId": "18d1"},
        {"id": 70000, "reportDesc": ""},
        {"id": "1", "reportDesc": ""},
    ],
)
def test_invalid_uhid_device(device):
    with pytest.raises(ConfigError):
        parse_config({"scrcpy": {"uhidDevices": [device]}})


@pytest.mark.parametrize(
    "scrcpy",
    [
        {"port": 70000},
        {"port": "27183"},
        {"video": "yes"},
        {"connectRetries": True},
        {"connectedCommands": "key home"},
    ],
)
def test_invalid_scrcpy_values(scrcpy):
    with pytest.raises(ConfigError):
        parse_config({"scrcpy": scrcpy})


class TestVideoDecoder:
    def test_executable_shorthand(self):
        decoder = parse_config({"videoDecoder": "/opt/decoder"}).video_decoder
        assert decoder.enabled is True
        assert decoder.kind == "executable"
        assert decoder.executable == "/opt/decoder"

    def test_ffmpeg_path_shorthand(self):
        decoder = parse_config({"videoDecoder": "/usr/bin/ffmpeg"}).video_decoder
        assert decoder.kind == "ffmpeg"

    def test_alpha_shorthand(self):
        decoder = parse_config({"videoDecoder": True}).video_decoder
        assert decoder.enabled is True
        assert decoder.kind == "ffmpeg"
        assert decoder.executable == "ffmpeg"
        assert decoder.alpha is True

    def test_object(self):
        decoder = parse_config({"videoDecoder": {"kind": "pyav", "alpha": True}}).video_decoder
        assert decoder.kind == "pyav"
        assert decoder.alpha is True

    def test_unknown_kind(self):
        with pytest.raises(ConfigError):
            parse_config({"videoDecoder": {"kind": "gstreamer"}})


def test_load_config_from_file(tmp_path):
    path = tmp_path / "bridge.json"
    path.write_text(json.dumps({"scrcpy": {"port": 1234}}), encoding="utf-8")
    assert load_config(str(path)).scrcpy.port == 1234


def test_load_config_from_stdin(monkeypatch):
    monkeypatch.setattr("sys.stdin", io.StringIO('{"scrcpy": {"forward": true}}'))
    assert load_config("-").scrcpy.forward is True


def test_load_config_invalid_json(tmp_path):
    path = tmp_path / "bridge.json"
    path.write_text("{", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_load_config_missing_file(tmp_path):
    with pytest.raises(ConfigError):
        load_config(str(tmp_path / "missing.json"))


def test_top_level_must_be_object():
    with pytest.raises(ConfigError):
        parse_config([])
