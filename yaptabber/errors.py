"""Exception types raised across the recorder."""
from __future__ import annotations


class RecorderError(Exception):
    """Base class for recorder failures."""


class StartupResolutionError(RecorderError):
    """Capture devices could not be resolved before monitoring starts."""


class CaptureSpawnError(RecorderError):
    """A capture process for one track failed to launch."""

    def __init__(self, track: str, cause: BaseException) -> None:
        super().__init__(f"failed to spawn {track} capture: {cause}")
        self.track = track
        self.cause = cause


class ShutdownTimeoutError(RecorderError):
    """A capture process ignored the graceful quit request."""

    def __init__(self, track: str, timeout: float) -> None:
        super().__init__(f"{track} capture did not exit within {timeout:.1f}s")
        self.track = track
        self.timeout = timeout


class PerFileUploadError(RecorderError):
    """Upload of a single session file failed."""

    def __init__(self, filename: str, cause: BaseException) -> None:
        super().__init__(f"upload of {filename} failed: {cause}")
        self.filename = filename
        self.cause = cause


class UnhandledFaultError(RecorderError):
    """An unexpected failure that forces the recorder to shut down."""
