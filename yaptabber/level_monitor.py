"""
Amplitude-based voice activity monitor.

Consumes signed 16-bit PCM blocks from an audio source on a dedicated thread,
classifies each block against a loudness threshold and emits VoiceEvent
objects to the recording controller:

- VOICE_STARTED     loud block while no session is active
- SILENCE_DETECTED  quiet block during a session; arms the silence grace timer
- VOICE_RESUMED     loud block while the grace timer is pending; cancels it
- SILENCE_CONFIRMED grace timer elapsed without a VOICE_RESUMED

The grace timer belongs to this monitor. The controller only asks for it to be
cancelled (cancel_grace) when a session ends.
"""
from __future__ import annotations

import logging
import math
import threading
from typing import Callable, Iterable, Optional

import numpy as np

from yaptabber.errors import UnhandledFaultError
from yaptabber.events import VoiceEvent, VoiceEventKind
from yaptabber.timers import ThreadingScheduler, TimerHandle

DEFAULT_LEVEL_THRESHOLD_DB = 50.0
DEFAULT_SILENCE_GRACE_SEC = 5.0

__all__ = [
    "AudioLevelMonitor",
    "DEFAULT_LEVEL_THRESHOLD_DB",
    "DEFAULT_SILENCE_GRACE_SEC",
    "pcm16_level_db",
    "pcm16_rms",
]


def pcm16_rms(buf: bytes) -> float:
    """RMS amplitude over every sample of a signed 16-bit little-endian buffer."""
    if len(buf) % 2:
        raise ValueError("PCM16 buffer length must be a multiple of 2 bytes")
    if not buf:
        return 0.0
    samples = np.frombuffer(buf, dtype="<i2").astype(np.float64)
    return float(np.sqrt(np.mean(samples * samples)))


def pcm16_level_db(buf: bytes) -> float:
    rms = pcm16_rms(buf)
    if rms <= 0.0:
        return -math.inf
    return 20.0 * math.log10(rms)


class AudioLevelMonitor:
    def __init__(
        self,
        emit: Callable[[VoiceEvent], None],
        *,
        is_session_active: Callable[[], bool],
        scheduler: Optional[ThreadingScheduler] = None,
        threshold_db: float = DEFAULT_LEVEL_THRESHOLD_DB,
        grace_sec: float = DEFAULT_SILENCE_GRACE_SEC,
        on_fault: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        self._emit = emit
        self._is_session_active = is_session_active
        self._scheduler = scheduler or ThreadingScheduler()
        self.threshold_db = float(threshold_db)
        self.grace_sec = float(grace_sec)
        self._on_fault = on_fault

        self._log = logging.getLogger("level_monitor")
        self._lock = threading.Lock()
        self._above = False
        self._grace: Optional[TimerHandle] = None
        self._grace_seq = 0
        self._silence_since: Optional[float] = None

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # --- classification ---

    @property
    def voice_active(self) -> bool:
        """True when the most recent block was above the threshold."""
        with self._lock:
            return self._above

    @property
    def grace_pending(self) -> bool:
        with self._lock:
            return self._grace is not None

    def observe(self, block: bytes) -> Optional[VoiceEvent]:
        """Classify one block and emit at most one event for it."""
        level = pcm16_level_db(block)
        above = level > self.threshold_db
        now = self._scheduler.now()

        event: Optional[VoiceEvent] = None
        with self._lock:
            session_active = self._is_session_active()
            self._above = above
            if above and not session_active:
                event = VoiceEvent(VoiceEventKind.VOICE_STARTED, now, level)
            elif not above and session_active and self._grace is None:
                self._silence_since = now
                self._grace_seq += 1
                seq = self._grace_seq
                self._grace = self._scheduler.call_later(
                    self.grace_sec, lambda: self._grace_elapsed(seq), name="silence-grace"
                )
                event = VoiceEvent(
                    VoiceEventKind.SILENCE_DETECTED, now, level, silence_since=now
                )
            elif above and self._grace is not None:
                self._grace.cancel()
                self._grace = None
                self._silence_since = None
                event = VoiceEvent(VoiceEventKind.VOICE_RESUMED, now, level)

        if event is not None:
            self._log.debug("%s at level %.1f dB", event.kind.value, level)
            self._emit(event)
        return event

    def _grace_elapsed(self, seq: int) -> None:
        with self._lock:
            if self._grace is None or seq != self._grace_seq:
                return  # cancelled or superseded while firing
            self._grace = None
            since = self._silence_since
            self._silence_since = None
        self._log.info("Silence confirmed after %.1fs grace", self.grace_sec)
        self._emit(
            VoiceEvent(
                VoiceEventKind.SILENCE_CONFIRMED,
                self._scheduler.now(),
                silence_since=since,
            )
        )

    def cancel_grace(self) -> bool:
        with self._lock:
            grace = self._grace
            self._grace = None
            self._silence_since = None
        if grace is None:
            return False
        return grace.cancel()

    # --- source consumption ---

    def run(self, source: Iterable[bytes]) -> None:
        """Consume ``source`` until stop(); an exhausted source is a fault."""
        for block in source:
            if self._stop.is_set():
                return
            self.observe(block)
        if not self._stop.is_set():
            raise UnhandledFaultError("audio source ended unexpectedly")

    def start(self, source: Iterable[bytes]) -> threading.Thread:
        if self._thread is not None:
            raise RuntimeError("AudioLevelMonitor already started")
        self._stop.clear()

        def _worker() -> None:
            try:
                self.run(source)
            except Exception as exc:  # noqa: BLE001 - forwarded to the controller
                if self._stop.is_set():
                    return
                self._log.error("audio monitoring failed: %r", exc)
                if self._on_fault is not None:
                    self._on_fault(exc)
                else:
                    raise

        self._thread = threading.Thread(target=_worker, name="level_monitor", daemon=True)
        self._thread.start()
        self._log.info(
            "monitoring started (threshold %.1f dB, grace %.1fs)",
            self.threshold_db,
            self.grace_sec,
        )
        return self._thread

    def stop(self, timeout: float | None = 2.0) -> None:
        self._stop.set()
        self.cancel_grace()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
