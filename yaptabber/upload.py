"""Concurrent upload of a finished session directory."""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from yaptabber.blob_store import BlobStore
from yaptabber.errors import PerFileUploadError

AUDIO_CONTENT_TYPE = "audio/wav"
VIDEO_CONTENT_TYPE = "video/mp4"
DEFAULT_BUCKET = "yaptabber"


class UploadStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class FileUploadOutcome:
    filename: str
    key: str
    content_type: str
    status: UploadStatus
    error: PerFileUploadError | None = None

    @property
    def reason(self) -> str | None:
        return str(self.error.cause) if self.error is not None else None


@dataclass
class UploadResult:
    outcomes: dict[str, FileUploadOutcome] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return all(o.status is UploadStatus.SUCCESS for o in self.outcomes.values())

    @property
    def succeeded(self) -> list[str]:
        return [name for name, o in self.outcomes.items() if o.status is UploadStatus.SUCCESS]

    @property
    def failures(self) -> dict[str, PerFileUploadError]:
        return {
            name: o.error
            for name, o in self.outcomes.items()
            if o.status is UploadStatus.FAILED and o.error is not None
        }


def content_type_for(filename: str) -> str:
    if filename.lower().endswith(".wav"):
        return AUDIO_CONTENT_TYPE
    return VIDEO_CONTENT_TYPE


def object_key(timestamp: str, filename: str) -> str:
    return f"recording-{timestamp}-{filename}"


class UploadPipeline:
    def __init__(self, store: BlobStore, *, bucket: str = DEFAULT_BUCKET) -> None:
        self.store = store
        self.bucket = bucket
        self._log = logging.getLogger("upload")

    def _upload_one(self, path: Path, timestamp: str) -> FileUploadOutcome:
        key = object_key(timestamp, path.name)
        content_type = content_type_for(path.name)
        try:
            body = path.read_bytes()
            self.store.put(self.bucket, key, body, content_type)
        except Exception as exc:  # noqa: BLE001 - recorded against this file
            error = PerFileUploadError(path.name, exc)
            self._log.error("Error uploading %s: %s", path.name, exc)
            return FileUploadOutcome(path.name, key, content_type, UploadStatus.FAILED, error)
        self._log.info("Successfully uploaded %s", path.name)
        return FileUploadOutcome(path.name, key, content_type, UploadStatus.SUCCESS)

    def upload(self, directory: Path | str, timestamp: str) -> UploadResult:
        """Upload every file in ``directory``; all files are attempted."""
        directory = Path(directory)
        files = sorted(p for p in directory.iterdir() if p.is_file())
        self._log.info("Uploading files: %s", [p.name for p in files])
        result = UploadResult()
        if not files:
            return result
        with ThreadPoolExecutor(max_workers=len(files), thread_name_prefix="upload") as executor:
            futures = [executor.submit(self._upload_one, path, timestamp) for path in files]
            wait(futures)
        for future in futures:
            outcome = future.result()
            result.outcomes[outcome.filename] = outcome
        return result
