import pytest
from botocore.exceptions import ClientError

from app.laft.storage import LocalStorage, S3Storage, StorageError, delete_blobs, storage_from_config


class _FakeS3:
    def __init__(self, code: str):
        self.code = code
        self.deleted = []

    def _error(self, op: str) -> ClientError:
        return ClientError({"Error": {"Code": self.code, "Message": "boom"}}, op)

    def get_object(self, Bucket, Key):
        raise self._error("GetObject")

    def delete_object(self, Bucket, Key):
        raise self._error("DeleteObject")


def _s3(monkeypatch, code: str) -> S3Storage:
    storage = S3Storage(endpoint="", region="nyc3", bucket="laft", access_key_id="k", secret_access_key="s")
    fake = _FakeS3(code)
    monkeypatch.setattr(S3Storage, "_client", lambda self: fake)
    return storage


@pytest.mark.parametrize("code", ["NoSuchKey", "404"])
def test_s3_open_missing_key_raises_file_not_found(monkeypatch, code):
    storage = _s3(monkeypatch, code)
    with pytest.raises(FileNotFoundError):
        storage.open("item-images/1/1/gone.png")


def test_s3_open_other_errors_raise_storage_error(monkeypatch):
    storage = _s3(monkeypatch, "AccessDenied")
    with pytest.raises(StorageError, match="AccessDenied"):
        storage.open("item-images/1/1/secret.png")


def test_s3_delete_wraps_client_error(monkeypatch):
    storage = _s3(monkeypatch, "AccessDenied")
    with pytest.raises(StorageError):
        storage.delete("item-images/1/1/a.png")


def test_local_storage_rejects_traversal(tmp_path):
    storage = LocalStorage(root=tmp_path)
    with pytest.raises(StorageError):
        storage.put_bytes("../escape.txt", b"x")
    with pytest.raises(FileNotFoundError):
        storage.open("missing.png")


def test_delete_blobs_skips_failures(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    storage = storage_from_config({})
    storage.put_bytes("a/one.png", b"1")
    storage.put_bytes("a/two.png", b"2")

    # traversal key fails, the others are still removed
    assert delete_blobs({}, ["a/one.png", "../bad.png", "a/two.png"]) == 2
    assert not storage.exists("a/one.png")
    assert not storage.exists("a/two.png")


def test_delete_blobs_without_storage_logs_and_returns(caplog):
    config = {"STORAGE_BACKEND": "s3", "S3_BUCKET": ""}
    assert delete_blobs(config, ["a/one.png"]) == 0
    assert "Orphaned 1 blob(s)" in caplog.text
    assert delete_blobs(config, []) == 0
