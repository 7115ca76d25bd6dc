from __future__ import annotations

import signal
import struct
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from yaptabber.controller import RecordingController, RecordingLimits
from yaptabber.level_monitor import AudioLevelMonitor
from yaptabber.process_supervisor import ProcessSupervisor
from yaptabber.session import DevicePair
from yaptabber.timers import TimerHandle
from yaptabber.upload import UploadPipeline

EPOCH = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def pcm_block(value: int, samples: int = 882) -> bytes:
    return struct.pack("<h", value) * samples


LOUD = pcm_block(1000)  # 60 dB
QUIET = pcm_block(0)  # -inf dB


class ManualScheduler:
    """Deterministic scheduler: timers only fire from advance()."""

    def __init__(self) -> None:
        self._now = 0.0
        self._seq = 0
        self._timers: list[tuple[float, int, TimerHandle]] = []

    def now(self) -> float:
        return self._now

    def call_later(self, delay, callback, *, name="timer") -> TimerHandle:
        handle = TimerHandle(callback, name=name)
        self._seq += 1
        self._timers.append((self._now + float(delay), self._seq, handle))
        return handle

    def pending(self) -> list[TimerHandle]:
        return [handle for _, _, handle in self._timers if handle.pending]

    def advance(self, seconds: float) -> None:
        target = self._now + float(seconds)
        while True:
            due = sorted(
                (entry for entry in self._timers if entry[0] <= target + 1e-9 and entry[2].pending),
                key=lambda entry: (entry[0], entry[1]),
            )
            if not due:
                break
            when, _, handle = due[0]
            self._now = max(self._now, when)
            handle.fire()
        self._timers = [entry for entry in self._timers if entry[2].pending]
        self._now = target


class FakeHandle:
    """Stands in for ProcessHandle; writes its output file like ffmpeg would."""

    _next_pid = 1000

    def __init__(
        self,
        name: str,
        command: list[str] | None = None,
        *,
        responsive: bool = True,
        stdin_broken: bool = False,
        exit_delay: float = 0.0,
        unkillable: bool = False,
    ) -> None:
        FakeHandle._next_pid += 1
        self.pid = FakeHandle._next_pid
        self.name = name
        self.command = list(command or [])
        self.responsive = responsive
        self.stdin_broken = stdin_broken
        self.exit_delay = exit_delay
        self.unkillable = unkillable
        self.inputs: list[bytes] = []
        self.signals: list[int] = []
        self.returncode: int | None = None
        self._done = threading.Event()
        if self.command:
            output = Path(self.command[-1])
            if output.parent.exists():
                output.write_bytes(f"{name}-data".encode())

    @property
    def done(self) -> bool:
        return self._done.is_set()

    @property
    def killed(self) -> bool:
        return signal.SIGKILL in self.signals

    def _exit(self, code: int) -> None:
        if self._done.is_set():
            return
        if self.exit_delay > 0:
            def _later():
                self.returncode = code
                self._done.set()

            timer = threading.Timer(self.exit_delay, _later)
            timer.daemon = True
            timer.start()
        else:
            self.returncode = code
            self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)

    def write_input(self, data: bytes) -> None:
        if self.stdin_broken or self._done.is_set():
            raise BrokenPipeError("stdin closed")
        self.inputs.append(data)
        if self.responsive and data == b"q":
            self._exit(0)

    def terminate(self, sig: int = signal.SIGTERM) -> bool:
        if self._done.is_set():
            return False
        self.signals.append(sig)
        if sig == signal.SIGKILL and self.unkillable:
            return True
        if sig == signal.SIGKILL:
            self.returncode = -9
            self._done.set()
        elif self.responsive:
            self._exit(-sig)
        return True

    def kill(self) -> bool:
        return self.terminate(signal.SIGKILL)


class FakeSpawner:
    def __init__(self, **handle_kwargs) -> None:
        self.handle_kwargs = handle_kwargs
        self.per_track: dict[str, dict] = {}
        self.failing: set[str] = set()
        self.handles: list[FakeHandle] = []

    def __call__(self, name: str, command) -> FakeHandle:
        if name in self.failing:
            raise FileNotFoundError(f"no such encoder for {name}")
        kwargs = dict(self.handle_kwargs)
        kwargs.update(self.per_track.get(name, {}))
        handle = FakeHandle(name, list(command), **kwargs)
        self.handles.append(handle)
        return handle


class RecordingBlobStore:
    def __init__(self, failing_keys: set[str] | None = None) -> None:
        self.failing_suffixes = set(failing_keys or ())
        self.puts: list[tuple[str, str, bytes, str]] = []
        self._lock = threading.Lock()

    def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        with self._lock:
            self.puts.append((bucket, key, body, content_type))
        if any(key.endswith(suffix) for suffix in self.failing_suffixes):
            raise ConnectionError(f"put refused for {key}")


class Harness:
    def __init__(self, tmp_path: Path) -> None:
        self.scheduler = ManualScheduler()
        self.spawner = FakeSpawner()
        self.store = RecordingBlobStore()
        self.temp_root = tmp_path / "sessions"
        self.supervisor = ProcessSupervisor(spawner=self.spawner, force_kill_timeout=0.5)
        self.controller = RecordingController(
            supervisor=self.supervisor,
            pipeline=UploadPipeline(self.store, bucket="yaptabber"),
            devices=DevicePair(webcam_device_id="0", screen_device_id="1"),
            temp_root=self.temp_root,
            limits=RecordingLimits(upload_settle_sec=0.0, force_kill_timeout_sec=0.5),
            scheduler=self.scheduler,
            wallclock=lambda: EPOCH + timedelta(seconds=self.scheduler.now()),
            sleep=lambda _seconds: None,
        )
        self.monitor = AudioLevelMonitor(
            self.controller.post,
            is_session_active=lambda: self.controller.session_active,
            scheduler=self.scheduler,
        )
        self.controller.attach_monitor(self.monitor)

    def feed(self, block: bytes) -> None:
        self.monitor.observe(block)
        self.controller.process_pending()

    def advance(self, seconds: float) -> None:
        self.scheduler.advance(seconds)
        self.controller.process_pending()

    def talk(self, seconds: int, block: bytes = LOUD) -> None:
        """One block per second for ``seconds`` seconds."""
        for _ in range(seconds):
            self.advance(1.0)
            self.feed(block)

    def session_dirs(self) -> list[Path]:
        if not self.temp_root.exists():
            return []
        return sorted(p for p in self.temp_root.iterdir() if p.is_dir())


@pytest.fixture
def harness(tmp_path):
    return Harness(tmp_path)


@pytest.fixture
def scheduler():
    return ManualScheduler()
