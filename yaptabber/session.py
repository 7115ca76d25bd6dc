"""Recording session bookkeeping."""
from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

_LOG = logging.getLogger("controller")


class Track(str, Enum):
    SCREEN = "screen"
    WEBCAM = "webcam"
    AUDIO = "audio"

    @property
    def filename(self) -> str:
        return _TRACK_FILENAMES[self]


_TRACK_FILENAMES = {
    Track.SCREEN: "screen.mp4",
    Track.WEBCAM: "webcam.mp4",
    Track.AUDIO: "audio.wav",
}


class SessionStatus(str, Enum):
    ACTIVE = "active"
    SPLITTING = "splitting"
    STOPPING = "stopping"
    DISCARDED = "discarded"
    UPLOADED = "uploaded"
    FAILED = "failed"


@dataclass(frozen=True)
class DevicePair:
    webcam_device_id: str
    screen_device_id: str


def iso_timestamp(moment: datetime) -> str:
    """UTC ISO-8601 with millisecond precision and a ``Z`` suffix."""
    utc = moment.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class RecordingSession:
    id: str
    started_at: float
    created_at: datetime
    directory: Path
    tracks: dict[Track, Path] = field(default_factory=dict)
    status: SessionStatus = SessionStatus.ACTIVE

    @classmethod
    def create(
        cls,
        temp_root: Path,
        *,
        started_at: float,
        created_at: datetime,
        tracks: tuple[Track, ...] = tuple(Track),
    ) -> "RecordingSession":
        """Create the session directory; directory names never collide."""
        created_ms = int(created_at.timestamp() * 1000)
        temp_root.mkdir(parents=True, exist_ok=True)
        while True:
            session_id = f"recording-{created_ms}"
            directory = temp_root / session_id
            try:
                directory.mkdir()
            except FileExistsError:
                created_ms += 1
                continue
            break
        return cls(
            id=session_id,
            started_at=started_at,
            created_at=created_at,
            directory=directory,
            tracks={track: directory / track.filename for track in tracks},
        )

    def elapsed(self, now: float) -> float:
        return max(0.0, now - self.started_at)

    def list_files(self) -> list[str]:
        try:
            return sorted(p.name for p in self.directory.iterdir() if p.is_file())
        except FileNotFoundError:
            return []

    def remove_directory(self) -> bool:
        try:
            shutil.rmtree(self.directory)
        except FileNotFoundError:
            return True
        except OSError as exc:
            _LOG.error("Error cleaning up directory %s: %s", self.directory, exc)
            return False
        return True
