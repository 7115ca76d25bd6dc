"""Resolve the webcam and screen capture devices from ffmpeg's device listing."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping

from yaptabber.errors import StartupResolutionError
from yaptabber.ffmpeg_io import CaptureOptions, list_devices_command
from yaptabber.session import DevicePair

_LOG = logging.getLogger("devices")

_VIDEO_HEADER = "AVFoundation video devices:"
_AUDIO_HEADER = "AVFoundation audio devices:"
_DEVICE_LINE = re.compile(r"\[(?P<index>\d+)\]\s+(?P<name>[^\n]+)")

_WEBCAM_HINTS = ("facetime", "camera")
_SCREEN_HINTS = ("screen", "display")


@dataclass(frozen=True)
class VideoDevice:
    index: str
    name: str


def _run_listing(command: Iterable[str]) -> str:
    try:
        result = subprocess.run(
            list(command),
            check=False,
            capture_output=True,
            text=True,
            timeout=10.0,
        )
    except FileNotFoundError as exc:
        raise StartupResolutionError(f"Failed to list devices: {exc}") from exc
    except subprocess.SubprocessError as exc:
        raise StartupResolutionError(f"Failed to list devices: {exc}") from exc

    # ffmpeg prints the listing on stderr and exits non-zero (no real input).
    return (result.stderr or "") + (result.stdout or "")


def parse_video_devices(output: str) -> List[VideoDevice]:
    sections = output.split(_VIDEO_HEADER)
    if len(sections) < 2:
        raise StartupResolutionError("Could not parse AVFoundation device list")
    video_section = sections[1].split(_AUDIO_HEADER)[0]
    devices = [
        VideoDevice(index=match.group("index"), name=match.group("name").strip())
        for match in _DEVICE_LINE.finditer(video_section)
    ]
    if not devices:
        raise StartupResolutionError("No video devices found in the device list")
    return devices


def select_devices(devices: Iterable[VideoDevice]) -> DevicePair:
    webcam = "0"
    screen = "1"
    for device in devices:
        lower = device.name.lower()
        if any(hint in lower for hint in _WEBCAM_HINTS):
            webcam = device.index
        elif any(hint in lower for hint in _SCREEN_HINTS):
            screen = device.index
    return DevicePair(webcam_device_id=webcam, screen_device_id=screen)


def discover_devices(options: CaptureOptions | None = None) -> DevicePair:
    """Return the device pair parsed from ``ffmpeg -list_devices``."""

    output = _run_listing(list_devices_command(options))
    _LOG.debug("Raw device list:\n%s", output)
    devices = parse_video_devices(output)
    _LOG.info("Found video devices: %s", ", ".join(f"[{d.index}] {d.name}" for d in devices))
    return select_devices(devices)


def resolve_devices(
    capture_cfg: Mapping[str, Any] | None,
    options: CaptureOptions | None = None,
) -> DevicePair:
    """Use configured device ids when both are set, otherwise discover them."""

    capture_cfg = capture_cfg or {}
    webcam = str(capture_cfg.get("webcam_device") or "").strip()
    screen = str(capture_cfg.get("screen_device") or "").strip()
    if webcam and screen:
        pair = DevicePair(webcam_device_id=webcam, screen_device_id=screen)
    else:
        discovered = discover_devices(options)
        pair = DevicePair(
            webcam_device_id=webcam or discovered.webcam_device_id,
            screen_device_id=screen or discovered.screen_device_id,
        )
    _LOG.info("Selected devices: webcam=%s screen=%s", pair.webcam_device_id, pair.screen_device_id)
    return pair


__all__ = [
    "VideoDevice",
    "discover_devices",
    "parse_video_devices",
    "resolve_devices",
    "select_devices",
]
