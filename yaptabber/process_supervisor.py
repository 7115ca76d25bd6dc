"""
Capture process supervision for one recording session.

start() spawns one ffmpeg per track. stop_all() runs the two-phase shutdown
on every running capture at once: write "q" to stdin (SIGTERM if stdin is
unusable), wait up to the force-kill timeout, then SIGKILL. It returns only
when every capture reached STOPPED or KILLED. kill_all() skips the graceful
phase entirely and is safe to call repeatedly.
"""
from __future__ import annotations

import logging
import signal
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from yaptabber.errors import CaptureSpawnError, ShutdownTimeoutError
from yaptabber.ffmpeg_io import QUIT_COMMAND, CaptureOptions, capture_command
from yaptabber.process_handle import ProcessHandle
from yaptabber.session import DevicePair, RecordingSession, Track

DEFAULT_FORCE_KILL_TIMEOUT_SEC = 10.0
KILL_REAP_TIMEOUT_SEC = 2.0

Spawner = Callable[[str, Sequence[str]], ProcessHandle]


class CaptureState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    KILLED = "killed"

    @property
    def terminal(self) -> bool:
        return self in (CaptureState.STOPPED, CaptureState.KILLED)


@dataclass
class CaptureProcess:
    track: Track
    output_path: Path
    handle: Optional[ProcessHandle] = None
    state: CaptureState = CaptureState.STARTING


class ProcessSupervisor:
    def __init__(
        self,
        *,
        options: CaptureOptions | None = None,
        spawner: Spawner = ProcessHandle.spawn,
        force_kill_timeout: float = DEFAULT_FORCE_KILL_TIMEOUT_SEC,
    ) -> None:
        self.options = options or CaptureOptions()
        self.force_kill_timeout = float(force_kill_timeout)
        self._spawn = spawner
        self._log = logging.getLogger("supervisor")
        self._lock = threading.RLock()
        self._captures: list[CaptureProcess] = []

    @property
    def captures(self) -> list[CaptureProcess]:
        with self._lock:
            return list(self._captures)

    def running(self) -> list[CaptureProcess]:
        return [c for c in self.captures if c.handle is not None and not c.state.terminal]

    # --- start ---

    def start(self, session: RecordingSession, devices: DevicePair) -> list[CaptureSpawnError]:
        """Spawn every track of ``session``; failed tracks are dropped and reported."""
        failures: list[CaptureSpawnError] = []
        for track, output_path in list(session.tracks.items()):
            capture = CaptureProcess(track=track, output_path=output_path)
            command = capture_command(track, devices, output_path, self.options)
            try:
                capture.handle = self._spawn(track.value, command)
            except OSError as exc:
                error = CaptureSpawnError(track.value, exc)
                self._log.error("%s", error)
                failures.append(error)
                session.tracks.pop(track, None)
                continue
            capture.state = CaptureState.RUNNING
            with self._lock:
                self._captures.append(capture)
            self._log.info("%s capture started (pid %s) -> %s", track.value, capture.handle.pid, output_path)
        return failures

    # --- graceful shutdown ---

    def _await_exit(self, capture: CaptureProcess, timeout: float) -> None:
        assert capture.handle is not None
        if not capture.handle.wait(timeout):
            raise ShutdownTimeoutError(capture.track.value, timeout)

    def _request_quit(self, capture: CaptureProcess) -> None:
        handle = capture.handle
        assert handle is not None
        try:
            self._log.info("Attempting graceful shutdown of %s...", capture.track.value)
            handle.write_input(QUIT_COMMAND)
        except (OSError, ValueError) as exc:
            self._log.warning(
                "Error sending quit command to %s, trying SIGTERM: %s", capture.track.value, exc
            )
            handle.terminate(signal.SIGTERM)

    def _stop_one(self, capture: CaptureProcess, timeout: float) -> CaptureState:
        handle = capture.handle
        if handle is None or capture.state.terminal:
            return capture.state
        capture.state = CaptureState.STOPPING
        self._request_quit(capture)
        try:
            self._await_exit(capture, timeout)
        except ShutdownTimeoutError as exc:
            self._log.warning("%s; force killing", exc)
            handle.kill()
            if not handle.wait(KILL_REAP_TIMEOUT_SEC):
                self._log.warning("%s process still alive after SIGKILL", capture.track.value)
            capture.state = CaptureState.KILLED
        else:
            if capture.state is not CaptureState.KILLED:
                capture.state = CaptureState.STOPPED
        self._log.info(
            "%s process closed with code %s (%s)",
            capture.track.value,
            handle.returncode,
            capture.state.value,
        )
        return capture.state

    def stop_all(self, timeout: float | None = None) -> dict[Track, CaptureState]:
        """Stop every running capture concurrently and wait for all of them."""
        timeout = self.force_kill_timeout if timeout is None else float(timeout)
        targets = self.running()
        results: dict[Track, CaptureState] = {}
        if targets:
            with ThreadPoolExecutor(
                max_workers=len(targets), thread_name_prefix="capture-stop"
            ) as executor:
                futures = {executor.submit(self._stop_one, c, timeout): c for c in targets}
                wait(futures)
                for future, capture in futures.items():
                    results[capture.track] = future.result()
        with self._lock:
            for capture in self._captures:
                results.setdefault(capture.track, capture.state)
            self._captures.clear()
        self._log.info("All processes stopped")
        return results

    # --- forced shutdown ---

    def kill_all(self) -> None:
        with self._lock:
            captures = list(self._captures)
            self._captures.clear()
        for capture in captures:
            handle = capture.handle
            if handle is None:
                continue
            try:
                if handle.kill():
                    self._log.info("Killed %s process", capture.track.value)
            except OSError as exc:
                self._log.error("Error killing %s process: %s", capture.track.value, exc)
            capture.state = CaptureState.KILLED
        for capture in captures:
            # reap so the output files are closed before the directory goes away
            if capture.handle is not None and not capture.handle.wait(KILL_REAP_TIMEOUT_SEC):
                self._log.warning("%s process still alive after SIGKILL", capture.track.value)
