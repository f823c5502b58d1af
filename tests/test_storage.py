import os
import shutil

import pytest
from botocore.exceptions import ClientError

from recorder.errors import Forbidden, StorageFailure
from recorder.services.storage import LocalBlobStore, S3BlobStore, build_blob_store, content_type_for


class FakeS3:
    def __init__(self, fail_upload=False, delete_error=None, on_upload=None):
        self.fail_upload = fail_upload
        self.on_upload = on_upload
        self.delete_error = delete_error
        self.uploads = []
        self.deleted = []

    def upload_file(self, path, bucket, key, ExtraArgs=None):
        if self.fail_upload:
            raise ClientError({'Error': {'Code': 'SlowDown', 'Message': 'try later'}}, 'PutObject')
        with open(path, 'rb') as f:
            self.uploads.append((bucket, key, f.read(), ExtraArgs))
        if self.on_upload:
            self.on_upload(path)

    def delete_object(self, Bucket, Key):
        if self.delete_error:
            raise ClientError({'Error': {'Code': self.delete_error, 'Message': 'boom'}}, 'DeleteObject')
        self.deleted.append((Bucket, Key))
        return {}

    def generate_presigned_url(self, op, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.example/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


def test_content_type_by_extension():
    assert content_type_for('a.webm') == 'video/webm'
    assert content_type_for('a.MP4') == 'video/mp4'
    assert content_type_for('a.mkv') == 'video/x-matroska'
    assert content_type_for('a.bin') == 'application/octet-stream'
    assert content_type_for('noext') == 'application/octet-stream'


def test_local_upload_moves_file_and_delete_is_idempotent(tmp_path):
    store = LocalBlobStore(str(tmp_path / 'blobs'), 'secret')
    scratch = tmp_path / 'scratch.webm'
    scratch.write_bytes(b'video')

    url = store.upload(str(scratch), 'ROOM-1.webm')

    assert url == f"file://{tmp_path / 'blobs' / 'ROOM-1.webm'}"
    assert (tmp_path / 'blobs' / 'ROOM-1.webm').read_bytes() == b'video'
    assert not scratch.exists()
    assert store.delete('ROOM-1.webm') is True
    assert store.delete('ROOM-1.webm') is False


def test_local_failed_upload_keeps_scratch(tmp_path, monkeypatch):
    store = LocalBlobStore(str(tmp_path / 'blobs'), 'secret')
    scratch = tmp_path / 'scratch.webm'
    scratch.write_bytes(b'video')

    def broken_copy(src, dst, *a, **k):
        raise OSError('disk full')

    monkeypatch.setattr('recorder.services.storage.shutil.copyfileobj', broken_copy)
    with pytest.raises(StorageFailure):
        store.upload(str(scratch), 'ROOM-1.webm')
    assert scratch.read_bytes() == b'video'
    assert not (tmp_path / 'blobs' / 'ROOM-1.webm').exists()


def test_local_object_names_cannot_escape(tmp_path):
    store = LocalBlobStore(str(tmp_path / 'blobs'), 'secret')
    with pytest.raises(Forbidden):
        store.delete('../outside.webm')


def test_local_signed_url_round_trip(app, tmp_path):
    store = LocalBlobStore(app.config['LOCAL_STORAGE_DIR'], app.config['SECRET_KEY'])
    scratch = tmp_path / 'scratch.webm'
    scratch.write_bytes(b'video')
    store.upload(str(scratch), 'ROOM-1.webm')

    with app.test_request_context():
        url = store.signed_download_url('ROOM-1.webm', 60)
    token = url.rsplit('/', 1)[-1]
    assert store.resolve_token(token).endswith('ROOM-1.webm')
    with pytest.raises(Forbidden):
        store.resolve_token(token[:-2] + 'xx')


def test_s3_upload_sets_content_type_and_removes_scratch(tmp_path):
    fake = FakeS3()
    store = S3BlobStore('bucket', prefix='recordings/', client=fake)
    scratch = tmp_path / 'scratch.mp4'
    scratch.write_bytes(b'mp4')

    url = store.upload(str(scratch), 'ROOM-1.mp4', metadata={'recording_id': 'r1'})

    assert url == 's3://bucket/recordings/ROOM-1.mp4'
    bucket, key, body, extra = fake.uploads[0]
    assert (bucket, key, body) == ('bucket', 'recordings/ROOM-1.mp4', b'mp4')
    assert extra['ContentType'] == 'video/mp4'
    assert extra['Metadata'] == {'recording_id': 'r1'}
    assert not scratch.exists()


def test_s3_failed_upload_keeps_scratch(tmp_path):
    store = S3BlobStore('bucket', client=FakeS3(fail_upload=True))
    scratch = tmp_path / 'scratch.webm'
    scratch.write_bytes(b'video')
    with pytest.raises(StorageFailure) as exc:
        store.upload(str(scratch), 'ROOM-1.webm')
    assert exc.value.retryable
    assert scratch.exists()


def test_s3_delete_and_sign():
    fake = FakeS3()
    store = S3BlobStore('bucket', prefix='recordings/', client=fake)
    assert store.delete('ROOM-1.webm') is True
    assert fake.deleted == [('bucket', 'recordings/ROOM-1.webm')]
    assert store.signed_download_url('ROOM-1.webm', 3600).endswith('X-Amz-Expires=3600')

    assert S3BlobStore('bucket', client=FakeS3(delete_error='NoSuchKey')).delete('gone') is False
    with pytest.raises(StorageFailure):
        S3BlobStore('bucket', client=FakeS3(delete_error='AccessDenied')).delete('x')


def test_factory_selects_backend(tmp_path):
    cfg = {'STORAGE_BACKEND': 'local', 'LOCAL_STORAGE_DIR': str(tmp_path), 'SECRET_KEY': 's'}
    assert isinstance(build_blob_store(cfg), LocalBlobStore)
    s3 = build_blob_store({'STORAGE_BACKEND': 's3', 'S3_BUCKET': 'b', 'S3_PREFIX': 'p/'})
    assert isinstance(s3, S3BlobStore) and s3.is_configured()
    assert not build_blob_store({'STORAGE_BACKEND': 's3'}).is_configured()
    with pytest.raises(ValueError):
        build_blob_store({'STORAGE_BACKEND': 'ftp'})


def test_acknowledged_upload_tolerates_scratch_already_removed(tmp_path):
    fake = FakeS3(on_upload=lambda path: os.remove(path))
    store = S3BlobStore('bucket', client=fake)
    scratch = tmp_path / 'scratch.webm'
    scratch.write_bytes(b'video')

    assert store.upload(str(scratch), 'ROOM-1.webm') == 's3://bucket/ROOM-1.webm'
    assert fake.uploads[0][2] == b'video'


def test_local_upload_tolerates_scratch_already_removed(tmp_path, monkeypatch):
    store = LocalBlobStore(str(tmp_path / 'blobs'), 'secret')
    scratch = tmp_path / 'scratch.webm'
    scratch.write_bytes(b'video')
    real_copy = shutil.copyfileobj

    def copy_then_vanish(src, dst, *a, **k):
        real_copy(src, dst, *a, **k)
        os.remove(str(scratch))

    monkeypatch.setattr('recorder.services.storage.shutil.copyfileobj', copy_then_vanish)
    store.upload(str(scratch), 'ROOM-1.webm')
    assert (tmp_path / 'blobs' / 'ROOM-1.webm').read_bytes() == b'video'
