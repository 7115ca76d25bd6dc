"""Microphone PCM source backed by an external capture command."""
from __future__ import annotations

import logging
import os
import subprocess
import threading
from typing import Any, BinaryIO, Iterator, Mapping, Sequence

_LOG = logging.getLogger("audio_source")

SAMPLE_WIDTH = 2  # signed 16-bit


def block_size_bytes(sample_rate: int, channels: int, block_ms: int) -> int:
    frames = int(sample_rate) * int(block_ms) // 1000
    return max(1, frames) * max(1, int(channels)) * SAMPLE_WIDTH


def default_command(sample_rate: int, channels: int) -> list[str]:
    # sox "rec": raw signed 16-bit little-endian PCM on stdout
    return [
        "rec",
        "-q",
        "-t", "raw",
        "-b", "16",
        "-e", "signed-integer",
        "-L",
        "-r", str(sample_rate),
        "-c", str(channels),
        "-",
    ]


def iter_blocks(stream: BinaryIO, block_bytes: int) -> Iterator[bytes]:
    """Yield exactly ``block_bytes``-sized blocks until EOF; a short tail is dropped."""
    if block_bytes <= 0:
        raise ValueError("block_bytes must be positive")
    pending = bytearray()
    while True:
        chunk = stream.read(block_bytes - len(pending))
        if not chunk:
            return
        pending.extend(chunk)
        if len(pending) >= block_bytes:
            yield bytes(pending)
            pending.clear()


class CommandAudioSource:
    """Spawns the capture command and exposes its stdout as PCM blocks."""

    def __init__(self, command: Sequence[str], block_bytes: int) -> None:
        self.command = list(command)
        self.block_bytes = int(block_bytes)
        self._proc: subprocess.Popen | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_cfg(cls, audio_cfg: Mapping[str, Any] | None) -> "CommandAudioSource":
        audio_cfg = audio_cfg or {}
        sample_rate = int(audio_cfg.get("sample_rate", 44100))
        channels = int(audio_cfg.get("channels", 2))
        block_ms = int(audio_cfg.get("block_ms", 100))
        command = audio_cfg.get("command")
        if not command:
            command = default_command(sample_rate, channels)
        elif isinstance(command, str):
            command = command.split()
        return cls(command, block_size_bytes(sample_rate, channels, block_ms))

    def start(self) -> None:
        with self._lock:
            if self._proc is not None:
                raise RuntimeError("audio source already started")
            self._proc = subprocess.Popen(
                self.command,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                stdin=subprocess.DEVNULL,
                bufsize=0,
                start_new_session=True,
                env=os.environ.copy(),
            )
        _LOG.info("audio source started: %s", " ".join(self.command))

    def __iter__(self) -> Iterator[bytes]:
        if self._proc is None:
            self.start()
        proc = self._proc
        assert proc is not None and proc.stdout is not None
        yield from iter_blocks(proc.stdout, self.block_bytes)

    def stop(self) -> None:
        with self._lock:
            proc = self._proc
            self._proc = None
        if proc is None:
            return
        if proc.poll() is None:
            try:
                proc.terminate()
                proc.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
            except ProcessLookupError:
                pass
        if proc.stdout is not None:
            proc.stdout.close()
        _LOG.info("audio source stopped")
