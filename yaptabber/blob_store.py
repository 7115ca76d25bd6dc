#!/usr/bin/env python3
"""Blob store backends for finished recording segments."""
from __future__ import annotations

import io
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import boto3
from boto3.s3.transfer import TransferConfig
from botocore.config import Config as BotoConfig

from yaptabber.config import ConfigError

DEFAULT_PART_SIZE_BYTES = 5 * 1024 * 1024
DEFAULT_QUEUE_SIZE = 4

_LOG = logging.getLogger("upload")


class BlobStore:
    """Minimal protocol for storage backends.

    put() returns once the object is stored and raises on failure.
    """

    def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class S3BlobStore(BlobStore):
    def __init__(
        self,
        client: Any,
        *,
        part_size: int = DEFAULT_PART_SIZE_BYTES,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        self._client = client
        self.transfer_config = TransferConfig(
            multipart_threshold=part_size,
            multipart_chunksize=part_size,
            max_concurrency=queue_size,
        )

    @classmethod
    def from_cfg(cls, s3_cfg: Mapping[str, Any]) -> "S3BlobStore":
        addressing = "path" if s3_cfg.get("force_path_style", True) else "auto"
        client = boto3.client(
            "s3",
            endpoint_url=str(s3_cfg.get("endpoint") or "") or None,
            region_name=str(s3_cfg.get("region") or "") or None,
            aws_access_key_id=s3_cfg.get("access_key_id") or None,
            aws_secret_access_key=s3_cfg.get("secret_access_key") or None,
            config=BotoConfig(s3={"addressing_style": addressing}),
        )
        return cls(
            client,
            part_size=int(s3_cfg.get("part_size_bytes") or DEFAULT_PART_SIZE_BYTES),
            queue_size=int(s3_cfg.get("queue_size") or DEFAULT_QUEUE_SIZE),
        )

    def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        self._client.upload_fileobj(
            io.BytesIO(body),
            bucket,
            key,
            ExtraArgs={"ContentType": content_type},
            Config=self.transfer_config,
        )


@dataclass
class DirectoryBlobStore(BlobStore):
    """Writes objects to ``<target_dir>/<bucket>/<key>``, e.g. a network share."""

    target_dir: Path

    def put(self, bucket: str, key: str, body: bytes, content_type: str) -> None:
        dest = self.target_dir / bucket / key
        dest.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = dest.with_name(dest.name + ".tmp")
        with tmp_path.open("wb") as handle:
            handle.write(body)
        os.replace(tmp_path, dest)
        _LOG.debug("stored %s (%s, %d bytes)", dest, content_type, len(body))


def build_blob_store(storage_cfg: Mapping[str, Any]) -> BlobStore:
    backend = str(storage_cfg.get("backend", "s3")).strip().lower()

    if backend == "s3":
        return S3BlobStore.from_cfg(storage_cfg.get("s3") or {})

    if backend == "directory":
        target = str((storage_cfg.get("directory") or {}).get("target_dir", "")).strip()
        if not target:
            raise ConfigError("directory backend requires storage.directory.target_dir")
        return DirectoryBlobStore(target_dir=Path(target).resolve())

    raise ConfigError(f"unknown storage backend: {backend}")
