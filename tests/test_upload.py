import threading

import pytest

from conftest import RecordingBlobStore
from yaptabber.errors import PerFileUploadError
from yaptabber.upload import UploadPipeline, UploadStatus, content_type_for, object_key

TS = "2024-05-01T10:00:25.000Z"


def _session_dir(tmp_path, names=("audio.wav", "screen.mp4", "webcam.mp4")):
    directory = tmp_path / "recording-1714557625000"
    directory.mkdir()
    for name in names:
        (directory / name).write_bytes(name.encode())
    return directory


def test_content_type_by_extension():
    assert content_type_for("audio.wav") == "audio/wav"
    assert content_type_for("AUDIO.WAV") == "audio/wav"
    assert content_type_for("screen.mp4") == "video/mp4"
    assert content_type_for("webcam.mp4") == "video/mp4"


def test_object_key_format():
    assert object_key(TS, "screen.mp4") == "recording-2024-05-01T10:00:25.000Z-screen.mp4"


def test_upload_puts_every_file(tmp_path):
    store = RecordingBlobStore()
    result = UploadPipeline(store, bucket="tapes").upload(_session_dir(tmp_path), TS)

    assert result.success
    assert sorted(result.succeeded) == ["audio.wav", "screen.mp4", "webcam.mp4"]
    puts = {key: (bucket, body, ctype) for bucket, key, body, ctype in store.puts}
    assert puts[f"recording-{TS}-audio.wav"] == ("tapes", b"audio.wav", "audio/wav")
    assert puts[f"recording-{TS}-screen.mp4"] == ("tapes", b"screen.mp4", "video/mp4")


def test_one_failure_does_not_stop_the_other_upload(tmp_path):
    store = RecordingBlobStore(failing_keys={"screen.mp4"})
    directory = _session_dir(tmp_path, names=("screen.mp4", "webcam.mp4"))

    result = UploadPipeline(store).upload(directory, TS)

    assert len(store.puts) == 2
    assert not result.success
    assert result.succeeded == ["webcam.mp4"]
    failure = result.failures["screen.mp4"]
    assert isinstance(failure, PerFileUploadError)
    assert isinstance(failure.cause, ConnectionError)
    outcome = result.outcomes["screen.mp4"]
    assert outcome.status is UploadStatus.FAILED
    assert "put refused" in outcome.reason
    assert result.outcomes["webcam.mp4"].reason is None


def test_uploads_run_concurrently(tmp_path):
    barrier = threading.Barrier(3, timeout=5.0)

    class BarrierStore(RecordingBlobStore):
        def put(self, bucket, key, body, content_type):
            barrier.wait()
            super().put(bucket, key, body, content_type)

    result = UploadPipeline(BarrierStore()).upload(_session_dir(tmp_path), TS)
    assert result.success


def test_empty_directory_is_a_successful_upload(tmp_path):
    directory = tmp_path / "empty"
    directory.mkdir()
    store = RecordingBlobStore()

    result = UploadPipeline(store).upload(directory, TS)

    assert result.success
    assert result.outcomes == {}
    assert store.puts == []


def test_missing_directory_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        UploadPipeline(RecordingBlobStore()).upload(tmp_path / "gone", TS)
