#!/usr/bin/env python3
"""
Recording controller (session state machine).

All decisions happen on the thread that drains the event queue (run() or
process_pending()). The level monitor, timers and signal handlers only post
events:

    IDLE      --VOICE_STARTED-->        ACTIVE   (new session, captures, max timer)
    ACTIVE    --SILENCE_CONFIRMED-->    STOPPING --> IDLE
    ACTIVE    --max duration-->         ROTATING --> ACTIVE (voice still on) | IDLE
    any       --shutdown / fault-->     SHUTDOWN (force kill, no upload)

Only one RecordingSession exists at a time; a second start is a no-op.
"""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from yaptabber.events import (
    ControllerEvent,
    FaultRaised,
    MaxDurationElapsed,
    ShutdownRequested,
    VoiceEvent,
    VoiceEventKind,
)
from yaptabber.level_monitor import (
    DEFAULT_LEVEL_THRESHOLD_DB,
    DEFAULT_SILENCE_GRACE_SEC,
    AudioLevelMonitor,
)
from yaptabber.process_supervisor import DEFAULT_FORCE_KILL_TIMEOUT_SEC, ProcessSupervisor
from yaptabber.session import DevicePair, RecordingSession, SessionStatus, iso_timestamp
from yaptabber.timers import ThreadingScheduler, TimerHandle
from yaptabber.upload import UploadPipeline, UploadResult

DEFAULT_MIN_SESSION_SEC = 15.0
DEFAULT_MAX_SESSION_SEC = 600.0
DEFAULT_UPLOAD_SETTLE_SEC = 2.0


class ControllerState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"
    ROTATING = "rotating"
    STOPPING = "stopping"
    SHUTDOWN = "shutdown"


@dataclass(frozen=True)
class RecordingLimits:
    """Tunables for the session lifecycle; defaults mirror the config defaults."""

    level_threshold_db: float = DEFAULT_LEVEL_THRESHOLD_DB
    silence_grace_sec: float = DEFAULT_SILENCE_GRACE_SEC
    min_session_sec: float = DEFAULT_MIN_SESSION_SEC
    max_session_sec: float = DEFAULT_MAX_SESSION_SEC
    force_kill_timeout_sec: float = DEFAULT_FORCE_KILL_TIMEOUT_SEC
    upload_settle_sec: float = DEFAULT_UPLOAD_SETTLE_SEC

    @classmethod
    def from_cfg(cls, recording_cfg: Mapping[str, Any] | None) -> "RecordingLimits":
        recording_cfg = recording_cfg or {}
        values = {}
        for name in cls.__dataclass_fields__:
            if recording_cfg.get(name) is not None:
                values[name] = float(recording_cfg[name])
        return cls(**values)


class RecordingController:
    def __init__(
        self,
        *,
        supervisor: ProcessSupervisor,
        pipeline: UploadPipeline,
        devices: DevicePair,
        temp_root: Path | str,
        limits: RecordingLimits | None = None,
        scheduler: Optional[ThreadingScheduler] = None,
        wallclock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.supervisor = supervisor
        self.pipeline = pipeline
        self.devices = devices
        self.temp_root = Path(temp_root)
        self.limits = limits or RecordingLimits()
        self.scheduler = scheduler or ThreadingScheduler()
        self._wallclock = wallclock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

        self._log = logging.getLogger("controller")
        self._events: "queue.Queue[ControllerEvent]" = queue.Queue()
        self._monitor: Optional[AudioLevelMonitor] = None
        self._shutdown_requested = threading.Event()

        self.state = ControllerState.IDLE
        self.session: Optional[RecordingSession] = None
        self._max_timer: Optional[TimerHandle] = None
        self.exit_code: int = 0
        self.last_upload: Optional[UploadResult] = None
        self.last_session: Optional[RecordingSession] = None

    # --- wiring ---

    def attach_monitor(self, monitor: AudioLevelMonitor) -> None:
        self._monitor = monitor

    @property
    def session_active(self) -> bool:
        return self.session is not None

    def voice_active(self) -> bool:
        monitor = self._monitor
        return bool(monitor is not None and monitor.voice_active)

    def post(self, event: ControllerEvent) -> None:
        """Thread-safe entry point for every asynchronous event."""
        self._events.put(event)

    def request_shutdown(self, reason: str = "interrupt", exit_code: int = 0) -> None:
        """Kill captures right away (unblocking a graceful stop) and queue shutdown."""
        self._shutdown_requested.set()
        self.supervisor.kill_all()
        self.post(ShutdownRequested(reason, exit_code))

    # --- event loop ---

    def run(self) -> int:
        self._log.info("controller running")
        while self.state is not ControllerState.SHUTDOWN:
            event = self._events.get()
            self._dispatch_guarded(event)
        return self.exit_code

    def process_pending(self) -> int:
        """Dispatch every queued event without blocking; returns how many ran."""
        count = 0
        while self.state is not ControllerState.SHUTDOWN:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            self._dispatch_guarded(event)
            count += 1
        return count

    def _dispatch_guarded(self, event: ControllerEvent) -> None:
        try:
            self.dispatch(event)
        except Exception as exc:  # noqa: BLE001 - escalated to forced shutdown
            self._log.exception("unhandled error while handling %r", event)
            self.shutdown(f"unhandled error: {exc!r}", exit_code=1)

    def dispatch(self, event: ControllerEvent) -> None:
        if self.state is ControllerState.SHUTDOWN:
            return
        if isinstance(event, VoiceEvent):
            self._on_voice_event(event)
        elif isinstance(event, MaxDurationElapsed):
            self._on_max_duration(event)
        elif isinstance(event, ShutdownRequested):
            self.shutdown(event.reason, exit_code=event.exit_code)
        elif isinstance(event, FaultRaised):
            self._log.error("fault from %s: %r", event.source, event.error)
            self.shutdown(f"fault from {event.source}", exit_code=1)
        else:
            raise TypeError(f"unknown controller event: {event!r}")

    # --- transitions ---

    def _on_voice_event(self, event: VoiceEvent) -> None:
        if event.kind is VoiceEventKind.VOICE_STARTED:
            if self.state is ControllerState.IDLE:
                self._log.info("Voice detected (%.1f dB) - starting recording", event.level_db or 0.0)
                self.start_session()
        elif event.kind is VoiceEventKind.SILENCE_CONFIRMED:
            session = self.session
            if self.state is not ControllerState.ACTIVE or session is None:
                return
            if event.silence_since is not None and event.silence_since < session.started_at:
                self._log.debug("ignoring silence that began before %s", session.id)
                return
            self.state = ControllerState.STOPPING
            self.stop_session(continue_recording=False)
            if self.state is ControllerState.STOPPING:
                self.state = ControllerState.IDLE
        elif event.kind is VoiceEventKind.SILENCE_DETECTED:
            self._log.debug("silence detected, grace period started")
        elif event.kind is VoiceEventKind.VOICE_RESUMED:
            self._log.debug("voice resumed, pending stop cancelled")

    def _on_max_duration(self, event: MaxDurationElapsed) -> None:
        session = self.session
        if self.state is not ControllerState.ACTIVE or session is None or session.id != event.session_id:
            return
        self._log.info(
            "Maximum duration reached (%.0fs) - splitting recording", self.limits.max_session_sec
        )
        self.state = ControllerState.ROTATING
        self.stop_session(continue_recording=True)
        if self.state is not ControllerState.ROTATING:
            return
        self.state = ControllerState.IDLE
        if self.voice_active() and not self._shutdown_requested.is_set():
            self.start_session()

    def start_session(self) -> Optional[RecordingSession]:
        if self.session is not None:
            self._log.debug("session %s already active; start ignored", self.session.id)
            return None
        session = RecordingSession.create(
            self.temp_root,
            started_at=self.scheduler.now(),
            created_at=self._wallclock(),
        )
        self.session = session
        self.state = ControllerState.ACTIVE
        if self._monitor is not None:
            # a grace period armed while the previous segment was stopping
            self._monitor.cancel_grace()
        failures = self.supervisor.start(session, self.devices)
        if failures:
            self._log.warning(
                "recording %s continues with tracks: %s",
                session.id,
                ", ".join(t.value for t in session.tracks) or "none",
            )
        session_id = session.id
        self._max_timer = self.scheduler.call_later(
            self.limits.max_session_sec,
            lambda: self.post(MaxDurationElapsed(session_id, self.scheduler.now())),
            name="max-duration",
        )
        self._log.info("recording %s started in %s", session.id, session.directory)
        return session

    def _cancel_max_timer(self) -> None:
        timer = self._max_timer
        self._max_timer = None
        if timer is not None:
            timer.cancel()

    def stop_session(self, *, continue_recording: bool) -> Optional[UploadResult]:
        """Stop/evaluate sequence shared by silence stops and rotations."""
        session = self.session
        if session is None:
            return None
        elapsed = session.elapsed(self.scheduler.now())
        self._log.info("Stopping recording... Duration: %.1f seconds", elapsed)
        self._cancel_max_timer()
        if self._monitor is not None:
            self._monitor.cancel_grace()

        if elapsed < self.limits.min_session_sec and not continue_recording:
            self._log.info("Recording too short, discarding...")
            session.status = SessionStatus.DISCARDED
            self.supervisor.kill_all()
            self._release(session)
            return None

        session.status = SessionStatus.SPLITTING if continue_recording else SessionStatus.STOPPING
        result: Optional[UploadResult] = None
        try:
            self.supervisor.stop_all(self.limits.force_kill_timeout_sec)
            if self._upload_cancelled(session):
                return None
            if self.limits.upload_settle_sec > 0:
                self._sleep(self.limits.upload_settle_sec)
                if self._upload_cancelled(session):
                    return None
            self._log.info("Files ready for upload: %s", session.list_files())
            timestamp = iso_timestamp(self._wallclock())
            result = self.pipeline.upload(session.directory, timestamp)
            self.last_upload = result
            if result.success:
                session.status = SessionStatus.UPLOADED
                self._log.info("Upload completed successfully (%d files)", len(result.outcomes))
            else:
                session.status = SessionStatus.FAILED
                self._log.error(
                    "Upload failed for %s: %s",
                    session.id,
                    "; ".join(str(err) for err in result.failures.values()),
                )
        except OSError as exc:
            session.status = SessionStatus.FAILED
            self._log.error("Error during stop/upload process: %s", exc)
        finally:
            self._release(session)
        return result

    def _upload_cancelled(self, session: RecordingSession) -> bool:
        if not self._shutdown_requested.is_set():
            return False
        self._log.warning("shutdown requested; skipping upload of %s", session.id)
        session.status = SessionStatus.FAILED
        return True

    def _release(self, session: RecordingSession) -> None:
        session.remove_directory()
        self.last_session = session
        if self.session is session:
            self.session = None

    def shutdown(self, reason: str, *, exit_code: int = 0) -> None:
        if self.state is ControllerState.SHUTDOWN:
            return
        self._log.info("shutting down: %s", reason)
        self._shutdown_requested.set()
        self.state = ControllerState.SHUTDOWN
        self.exit_code = exit_code
        self._cancel_max_timer()
        monitor = self._monitor
        if monitor is not None:
            monitor.stop()
        self.supervisor.kill_all()
        session = self.session
        if session is not None:
            session.status = SessionStatus.DISCARDED
            self._release(session)
