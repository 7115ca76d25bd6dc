import pytest

from yaptabber import blob_store
from yaptabber.blob_store import DirectoryBlobStore, S3BlobStore, build_blob_store
from yaptabber.config import ConfigError


class FakeS3Client:
    def __init__(self):
        self.calls = []

    def upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None, Config=None):
        self.calls.append((fileobj.read(), bucket, key, ExtraArgs, Config))


def test_s3_put_streams_body_with_content_type():
    client = FakeS3Client()
    store = S3BlobStore(client, part_size=8 * 1024 * 1024, queue_size=2)

    store.put("yaptabber", "recording-x-audio.wav", b"RIFF....", "audio/wav")

    body, bucket, key, extra, config = client.calls[0]
    assert (body, bucket, key) == (b"RIFF....", "yaptabber", "recording-x-audio.wav")
    assert extra == {"ContentType": "audio/wav"}
    assert config.multipart_chunksize == 8 * 1024 * 1024
    assert config.multipart_threshold == 8 * 1024 * 1024
    assert config.max_concurrency == 2


def test_s3_from_cfg_builds_path_style_client(monkeypatch):
    captured = {}

    def fake_client(service, **kwargs):
        captured["service"] = service
        captured.update(kwargs)
        return FakeS3Client()

    monkeypatch.setattr(blob_store.boto3, "client", fake_client)
    store = S3BlobStore.from_cfg(
        {
            "endpoint": "http://127.0.0.1:9000",
            "region": "us-east-1",
            "access_key_id": "minio",
            "secret_access_key": "minio123",
            "force_path_style": True,
        }
    )

    assert isinstance(store, S3BlobStore)
    assert captured["service"] == "s3"
    assert captured["endpoint_url"] == "http://127.0.0.1:9000"
    assert captured["region_name"] == "us-east-1"
    assert captured["aws_access_key_id"] == "minio"
    assert captured["aws_secret_access_key"] == "minio123"
    assert captured["config"].s3 == {"addressing_style": "path"}
    assert store.transfer_config.multipart_chunksize == blob_store.DEFAULT_PART_SIZE_BYTES


def test_directory_store_writes_bucket_and_key(tmp_path):
    store = DirectoryBlobStore(target_dir=tmp_path)
    store.put("tapes", "recording-x-screen.mp4", b"\x00\x01", "video/mp4")

    dest = tmp_path / "tapes" / "recording-x-screen.mp4"
    assert dest.read_bytes() == b"\x00\x01"
    assert list((tmp_path / "tapes").iterdir()) == [dest]


def test_build_blob_store_directory(tmp_path):
    store = build_blob_store({"backend": "directory", "directory": {"target_dir": str(tmp_path)}})
    assert isinstance(store, DirectoryBlobStore)
    assert store.target_dir == tmp_path.resolve()


@pytest.mark.parametrize(
    "storage_cfg",
    [
        {"backend": "directory", "directory": {"target_dir": "  "}},
        {"backend": "gcs"},
    ],
)
def test_build_blob_store_rejects_bad_config(storage_cfg):
    with pytest.raises(ConfigError):
        build_blob_store(storage_cfg)
