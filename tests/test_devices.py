import subprocess

import pytest

from yaptabber import devices
from yaptabber.devices import VideoDevice, parse_video_devices, resolve_devices, select_devices
from yaptabber.errors import StartupResolutionError
from yaptabber.ffmpeg_io import CaptureOptions

LISTING = """\
[AVFoundation indev @ 0x7f8] AVFoundation video devices:
[AVFoundation indev @ 0x7f8] [0] FaceTime HD Camera
[AVFoundation indev @ 0x7f8] [1] OBS Virtual Camera
[AVFoundation indev @ 0x7f8] [2] Capture screen 0
[AVFoundation indev @ 0x7f8] AVFoundation audio devices:
[AVFoundation indev @ 0x7f8] [0] MacBook Pro Microphone
: Input/output error
"""


def test_parse_video_devices_stops_at_audio_section():
    found = parse_video_devices(LISTING)
    assert found == [
        VideoDevice("0", "FaceTime HD Camera"),
        VideoDevice("1", "OBS Virtual Camera"),
        VideoDevice("2", "Capture screen 0"),
    ]


def test_parse_without_header_is_a_startup_error():
    with pytest.raises(StartupResolutionError, match="Could not parse"):
        parse_video_devices("ffmpeg version 6.1\nUnknown input format: 'avfoundation'\n")


def test_parse_with_empty_video_section_is_a_startup_error():
    listing = "AVFoundation video devices:\nAVFoundation audio devices:\n[0] Mic\n"
    with pytest.raises(StartupResolutionError, match="No video devices"):
        parse_video_devices(listing)


def test_select_devices_prefers_named_matches():
    pair = select_devices(parse_video_devices(LISTING))
    # last matching camera wins, like the listing order suggests
    assert pair.webcam_device_id == "1"
    assert pair.screen_device_id == "2"


def test_select_devices_falls_back_to_defaults():
    pair = select_devices([VideoDevice("4", "Elgato Cam Link")])
    assert (pair.webcam_device_id, pair.screen_device_id) == ("0", "1")


def test_resolve_devices_uses_configured_ids_without_listing(monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("device listing should not run")

    monkeypatch.setattr(devices.subprocess, "run", fail)
    pair = resolve_devices({"webcam_device": "3", "screen_device": "4"})
    assert (pair.webcam_device_id, pair.screen_device_id) == ("3", "4")


def test_resolve_devices_discovers_missing_ids(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=LISTING)

    monkeypatch.setattr(devices.subprocess, "run", fake_run)
    pair = resolve_devices({"webcam_device": "7"}, CaptureOptions(ffmpeg="/opt/ffmpeg"))

    assert calls == [["/opt/ffmpeg", "-hide_banner", "-f", "avfoundation", "-list_devices", "true", "-i", ""]]
    assert pair.webcam_device_id == "7"
    assert pair.screen_device_id == "2"


def test_missing_ffmpeg_is_a_startup_error(monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", cmd[0])

    monkeypatch.setattr(devices.subprocess, "run", fake_run)
    with pytest.raises(StartupResolutionError, match="Failed to list devices"):
        devices.discover_devices()
