"""Owned wrapper around one external capture process."""
from __future__ import annotations

import logging
import signal
import subprocess
import threading
from typing import Callable, Optional, Sequence


class ProcessHandle:
    """
    Wraps a subprocess.Popen started with a writable stdin.

    A watcher thread drains stderr (ffmpeg blocks once the pipe fills up) and
    records the exit code; wait() and add_done_callback() expose completion.
    """

    def __init__(self, name: str, proc: subprocess.Popen) -> None:
        self.name = name
        self._proc = proc
        self._log = logging.getLogger("supervisor")
        self._done = threading.Event()
        self._callbacks: list[Callable[["ProcessHandle"], None]] = []
        self._cb_lock = threading.Lock()
        self._returncode: Optional[int] = None
        self._watcher = threading.Thread(
            target=self._watch, name=f"capture-{name}", daemon=True
        )
        self._watcher.start()

    @classmethod
    def spawn(cls, name: str, command: Sequence[str]) -> "ProcessHandle":
        proc = subprocess.Popen(
            list(command),
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
        return cls(name, proc)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._returncode

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _watch(self) -> None:
        proc = self._proc
        try:
            if proc.stderr is not None:
                for raw in proc.stderr:
                    # Diagnostic output only; never drives control flow.
                    self._log.debug(
                        "%s: %s", self.name, raw.decode("utf-8", errors="ignore").rstrip()
                    )
        except (OSError, ValueError):
            pass
        finally:
            self._returncode = proc.wait()
            if proc.stdin is not None:
                try:
                    proc.stdin.close()
                except (OSError, ValueError):
                    pass
            self._done.set()
            with self._cb_lock:
                callbacks = list(self._callbacks)
                self._callbacks.clear()
            for callback in callbacks:
                callback(self)

    def add_done_callback(self, callback: Callable[["ProcessHandle"], None]) -> None:
        with self._cb_lock:
            if not self._done.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the process exited; False when ``timeout`` elapsed first."""
        return self._done.wait(timeout)

    def write_input(self, data: bytes) -> None:
        """Write to stdin; raises OSError/ValueError when stdin is unusable."""
        stdin = self._proc.stdin
        if stdin is None or stdin.closed:
            raise BrokenPipeError(f"{self.name} stdin is closed")
        stdin.write(data)
        stdin.flush()

    def terminate(self, sig: int = signal.SIGTERM) -> bool:
        """Send ``sig``; returns False if the process was already gone."""
        if self._done.is_set() or self._proc.poll() is not None:
            return False
        try:
            self._proc.send_signal(sig)
        except ProcessLookupError:
            return False
        return True

    def kill(self) -> bool:
        return self.terminate(signal.SIGKILL)
