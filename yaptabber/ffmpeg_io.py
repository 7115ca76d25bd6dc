"""Shared helpers for building ffmpeg command lines."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

from yaptabber.session import DevicePair, Track

QUIT_COMMAND = b"q"


@dataclass(frozen=True)
class CaptureOptions:
    ffmpeg: str = "ffmpeg"
    input_format: str = "avfoundation"
    audio_device: str = "0"
    screen_framerate: int = 5
    screen_size: str = "1280x720"
    webcam_framerate: int = 30
    webcam_size: str = "640x360"
    audio_sample_rate: int = 44100

    @classmethod
    def from_cfg(cls, capture_cfg: Mapping[str, Any] | None) -> "CaptureOptions":
        capture_cfg = capture_cfg or {}
        screen = capture_cfg.get("screen") or {}
        webcam = capture_cfg.get("webcam") or {}
        audio = capture_cfg.get("audio") or {}
        return cls(
            ffmpeg=str(capture_cfg.get("ffmpeg") or cls.ffmpeg),
            input_format=str(capture_cfg.get("input_format") or cls.input_format),
            audio_device=str(capture_cfg.get("audio_device", cls.audio_device)),
            screen_framerate=int(screen.get("framerate", cls.screen_framerate)),
            screen_size=str(screen.get("size", cls.screen_size)),
            webcam_framerate=int(webcam.get("framerate", cls.webcam_framerate)),
            webcam_size=str(webcam.get("size", cls.webcam_size)),
            audio_sample_rate=int(audio.get("sample_rate", cls.audio_sample_rate)),
        )


def _video_args(options: CaptureOptions, device: str, framerate: int, size: str) -> list[str]:
    # avfoundation addresses inputs as "<video>:<audio>"
    return [
        "-f",
        options.input_format,
        "-framerate",
        str(framerate),
        "-i",
        f"{device}:none",
        "-c:v",
        "libx264",
        "-preset",
        "ultrafast",
        "-pix_fmt",
        "yuv420p",
        "-s",
        size,
    ]


def capture_command(
    track: Track,
    devices: DevicePair,
    output_path: Path | str,
    options: CaptureOptions | None = None,
) -> list[str]:
    """Return the ffmpeg argv recording ``track`` into ``output_path``.

    stdin is left attached (no ``-nostdin``) so that writing ``q`` asks ffmpeg
    to finalise the container and exit.
    """

    options = options or CaptureOptions()
    cmd = [options.ffmpeg, "-hide_banner"]
    if track is Track.SCREEN:
        cmd += _video_args(
            options, devices.screen_device_id, options.screen_framerate, options.screen_size
        )
    elif track is Track.WEBCAM:
        cmd += _video_args(
            options, devices.webcam_device_id, options.webcam_framerate, options.webcam_size
        )
    elif track is Track.AUDIO:
        cmd += [
            "-f",
            options.input_format,
            "-i",
            f"none:{options.audio_device}",
            "-c:a",
            "pcm_s16le",
            "-ar",
            str(options.audio_sample_rate),
        ]
    else:  # pragma: no cover - enum is exhaustive
        raise ValueError(f"unknown track: {track!r}")
    cmd += ["-y", str(output_path)]
    return cmd


def list_devices_command(options: CaptureOptions | None = None) -> list[str]:
    options = options or CaptureOptions()
    return [options.ffmpeg, "-hide_banner", "-f", options.input_format, "-list_devices", "true", "-i", ""]
