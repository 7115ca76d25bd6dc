"""Events delivered to the recording controller's queue."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class VoiceEventKind(str, Enum):
    VOICE_STARTED = "voice_started"
    SILENCE_DETECTED = "silence_detected"
    VOICE_RESUMED = "voice_resumed"
    SILENCE_CONFIRMED = "silence_confirmed"


@dataclass(frozen=True)
class VoiceEvent:
    kind: VoiceEventKind
    at: float
    level_db: float | None = None
    # Scheduler time at which the silence that led to this event was first seen.
    silence_since: float | None = None


@dataclass(frozen=True)
class MaxDurationElapsed:
    session_id: str
    at: float


@dataclass(frozen=True)
class ShutdownRequested:
    reason: str
    exit_code: int = 0


@dataclass(frozen=True)
class FaultRaised:
    error: BaseException
    source: str = "unknown"


ControllerEvent = VoiceEvent | MaxDurationElapsed | ShutdownRequested | FaultRaised
