import io
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from eduaccess.errors import NotFound, StorageFailure
from eduaccess.services.storage import FileMetadata, LocalStorageDriver, S3StorageDriver


def _client_error(code, operation="HeadObject"):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


META = FileMetadata(original_name="Lesson Plan.pdf", mime_type="application/pdf", uploaded_by=1)


# ============================================================================
# LOCAL DRIVER
# ============================================================================

def test_local_store_and_url(tmp_path):
    driver = LocalStorageDriver(str(tmp_path))

    key = driver.store(io.BytesIO(b"lesson"), META)

    assert key.endswith(".pdf")
    assert (tmp_path / key).read_bytes() == b"lesson"
    link = driver.get_download_url(key, "Lesson Plan.pdf")
    assert link.url == f"/api/files/{key}?name=Lesson%20Plan.pdf"
    assert link.expires_at is None


def test_local_keys_are_unique(tmp_path):
    driver = LocalStorageDriver(str(tmp_path))
    keys = {driver.store(io.BytesIO(b"x"), META) for _ in range(5)}
    assert len(keys) == 5


def test_local_delete_is_idempotent(tmp_path):
    driver = LocalStorageDriver(str(tmp_path))
    key = driver.store(io.BytesIO(b"lesson"), META)

    driver.delete(key)
    driver.delete(key)

    with pytest.raises(NotFound):
        driver.get_download_url(key, "Lesson Plan.pdf")


@pytest.mark.parametrize("key", ["../secrets.env", "/etc/passwd", "", ".hidden"])
def test_local_rejects_path_like_keys(tmp_path, key):
    driver = LocalStorageDriver(str(tmp_path))
    with pytest.raises(NotFound):
        driver.path_for(key)


def test_local_store_failure_leaves_no_file(tmp_path):
    driver = LocalStorageDriver(str(tmp_path))

    class BrokenStream(io.RawIOBase):
        def read(self, size=-1):
            raise OSError("device unplugged")

    with pytest.raises(StorageFailure):
        driver.store(BrokenStream(), META)
    assert list(tmp_path.iterdir()) == []


# ============================================================================
# S3 DRIVER
# ============================================================================

@pytest.fixture
def s3_client():
    client = MagicMock()
    client.generate_presigned_url.return_value = "https://bucket.example/signed"
    return client


@pytest.fixture
def s3(s3_client):
    return S3StorageDriver(bucket="edu-bucket", url_expires=600, client=s3_client)


def test_s3_requires_bucket():
    with pytest.raises(ValueError):
        S3StorageDriver(bucket="", client=MagicMock())


def test_s3_store_uploads_with_content_type(s3, s3_client):
    stream = io.BytesIO(b"lesson")

    key = s3.store(stream, META)

    assert key.startswith("resources/") and key.endswith(".pdf")
    args, kwargs = s3_client.upload_fileobj.call_args
    assert args == (stream, "edu-bucket", key)
    assert kwargs["ExtraArgs"]["ContentType"] == "application/pdf"
    assert kwargs["ExtraArgs"]["Metadata"]["uploadedby"] == "1"


def test_s3_store_failure(s3, s3_client):
    s3_client.upload_fileobj.side_effect = _client_error("AccessDenied", "PutObject")
    with pytest.raises(StorageFailure):
        s3.store(io.BytesIO(b"lesson"), META)


def test_s3_presigned_url_is_bounded(s3, s3_client):
    before = datetime.utcnow()

    link = s3.get_download_url("resources/abc.pdf", "Lesson Plan.pdf")

    assert link.url == "https://bucket.example/signed"
    assert before + timedelta(seconds=600) <= link.expires_at <= datetime.utcnow() + timedelta(seconds=600)
    kwargs = s3_client.generate_presigned_url.call_args.kwargs
    assert kwargs["ExpiresIn"] == 600
    assert kwargs["Params"]["Key"] == "resources/abc.pdf"
    assert kwargs["Params"]["ResponseContentDisposition"] == 'attachment; filename="Lesson Plan.pdf"'


@pytest.mark.parametrize("code", ["404", "NoSuchKey", "NotFound"])
def test_s3_missing_object_is_not_found(s3, s3_client, code):
    s3_client.head_object.side_effect = _client_error(code)
    with pytest.raises(NotFound):
        s3.get_download_url("resources/gone.pdf", "gone.pdf")
    s3_client.generate_presigned_url.assert_not_called()


def test_s3_unreachable_is_storage_failure(s3, s3_client):
    s3_client.head_object.side_effect = EndpointConnectionError(endpoint_url="https://s3.example")
    with pytest.raises(StorageFailure):
        s3.get_download_url("resources/abc.pdf", "abc.pdf")


def test_s3_delete_missing_object_is_a_no_op(s3, s3_client):
    s3_client.delete_object.side_effect = _client_error("NoSuchKey", "DeleteObject")
    s3.delete("resources/gone.pdf")
    s3_client.delete_object.assert_called_once_with(Bucket="edu-bucket", Key="resources/gone.pdf")


def test_s3_delete_failure(s3, s3_client):
    s3_client.delete_object.side_effect = _client_error("AccessDenied", "DeleteObject")
    with pytest.raises(StorageFailure):
        s3.delete("resources/abc.pdf")
