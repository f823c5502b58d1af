"""Durable storage for finished recordings.

Set STORAGE_BACKEND to 'local' or 's3' to switch. Both backends share one
contract: upload(local_path, object_name) -> url, signed_download_url(name, ttl)
-> url, delete(name) -> bool. A scratch file is removed only once the remote
write has been acknowledged, so a failed upload can be retried from it.
"""
import logging
import os
import shutil
import tempfile

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from flask import current_app, url_for
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from ..errors import Forbidden, NotFound, StorageFailure

CONTENT_TYPES = {
    '.webm': 'video/webm',
    '.mp4': 'video/mp4',
    '.mkv': 'video/x-matroska',
    '.avi': 'video/x-msvideo',
    '.mov': 'video/quicktime',
}


def content_type_for(path: str) -> str:
    ext = os.path.splitext(path)[1].lower()
    return CONTENT_TYPES.get(ext, 'application/octet-stream')


def _remove_scratch(path):
    # the scratch file may already be gone if the job was failed mid-upload
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class BlobStore:
    """Abstract durable store interface"""

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(__name__)

    def upload(self, local_path: str, object_name: str, metadata=None) -> str:
        raise NotImplementedError

    def signed_download_url(self, object_name: str, ttl_seconds: int) -> str:
        raise NotImplementedError

    def delete(self, object_name: str) -> bool:
        raise NotImplementedError

    def is_configured(self) -> bool:
        return True


class LocalBlobStore(BlobStore):
    """Filesystem-backed store; download links are signed, timed tokens."""

    SALT = 'recording-download'

    def __init__(self, base_dir: str, secret_key: str, logger=None):
        super().__init__(logger)
        self.base_dir = os.path.abspath(base_dir)
        self.serializer = URLSafeTimedSerializer(secret_key, salt=self.SALT)

    def _full_path(self, object_name: str) -> str:
        path = os.path.abspath(os.path.join(self.base_dir, object_name))
        if os.path.commonpath([path, self.base_dir]) != self.base_dir:
            raise Forbidden("object name escapes the storage directory")
        return path

    def upload(self, local_path, object_name, metadata=None):
        dest = self._full_path(object_name)
        os.makedirs(os.path.dirname(dest), exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=os.path.dirname(dest), prefix='.upload-')
        try:
            with os.fdopen(fd, 'wb') as out, open(local_path, 'rb') as src:
                shutil.copyfileobj(src, out)
            os.replace(tmp, dest)
        except OSError as e:
            try:
                os.remove(tmp)
            except OSError:
                pass
            self.logger.exception('Local blob upload failed for %s', object_name)
            raise StorageFailure(f"upload of {object_name} failed: {e}")
        _remove_scratch(local_path)
        self.logger.info('Stored recording blob %s', dest)
        return f"file://{dest}"

    def signed_download_url(self, object_name, ttl_seconds):
        token = self.serializer.dumps({'o': object_name, 'ttl': int(ttl_seconds)})
        return url_for('recordings.serve_local_blob', token=token, _external=True)

    def resolve_token(self, token: str) -> str:
        """Return the file path a download token grants, or raise."""
        try:
            payload = self.serializer.loads(token)
            self.serializer.loads(token, max_age=payload['ttl'])
        except SignatureExpired:
            raise Forbidden("download link expired")
        except (BadSignature, KeyError, TypeError):
            raise Forbidden("invalid download link")
        path = self._full_path(payload['o'])
        if not os.path.exists(path):
            raise NotFound("Recording file not found")
        return path

    def delete(self, object_name):
        path = self._full_path(object_name)
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageFailure(f"delete of {object_name} failed: {e}")
        return True


class S3BlobStore(BlobStore):
    """AWS S3 (or S3-compatible) backend"""

    def __init__(self, bucket, prefix='', endpoint=None, region=None, access_key=None,
                 secret_key=None, connect_timeout=10, read_timeout=60, client=None, logger=None):
        super().__init__(logger)
        self.bucket = bucket
        self.prefix = prefix or ''
        self.endpoint = endpoint
        self.region = region
        self.access_key = access_key
        self.secret_key = secret_key
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self._client = client

    @property
    def client(self):
        """Lazy load boto3 client"""
        if self._client is None:
            s3_kwargs = {}
            if self.endpoint:
                s3_kwargs['endpoint_url'] = self.endpoint
            if self.region:
                s3_kwargs['region_name'] = self.region
            s3_config = Config(
                signature_version='s3v4',
                s3={'addressing_style': 'virtual'},
                connect_timeout=self.connect_timeout,
                read_timeout=self.read_timeout,
                retries={'max_attempts': 3},
            )
            self._client = boto3.client(
                's3',
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                config=s3_config,
                **s3_kwargs,
            )
        return self._client

    def _key(self, object_name: str) -> str:
        return (self.prefix + object_name).replace('\\', '/')

    def upload(self, local_path, object_name, metadata=None):
        key = self._key(object_name)
        extra = {'ContentType': content_type_for(local_path)}
        if metadata:
            extra['Metadata'] = {str(k): str(v) for k, v in metadata.items()}
        try:
            self.client.upload_file(local_path, self.bucket, key, ExtraArgs=extra)
        except (BotoCoreError, ClientError) as e:
            self.logger.exception('S3 upload failed for %s', key)
            raise StorageFailure(f"upload of {object_name} failed: {e}")
        _remove_scratch(local_path)
        self.logger.info('Uploaded recording to s3://%s/%s', self.bucket, key)
        return f"s3://{self.bucket}/{key}"

    def signed_download_url(self, object_name, ttl_seconds):
        try:
            return self.client.generate_presigned_url(
                'get_object',
                Params={'Bucket': self.bucket, 'Key': self._key(object_name)},
                ExpiresIn=int(ttl_seconds),
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageFailure(f"could not sign {object_name}: {e}")

    def delete(self, object_name):
        # S3 DeleteObject succeeds for missing keys
        try:
            self.client.delete_object(Bucket=self.bucket, Key=self._key(object_name))
        except ClientError as e:
            code = e.response.get('Error', {}).get('Code')
            if code in ('NoSuchKey', '404'):
                return False
            raise StorageFailure(f"delete of {object_name} failed: {e}")
        except BotoCoreError as e:
            raise StorageFailure(f"delete of {object_name} failed: {e}")
        return True

    def is_configured(self):
        return bool(self.bucket)


def build_blob_store(config, logger=None) -> BlobStore:
    backend = config.get('STORAGE_BACKEND', 'local')
    if backend == 's3':
        return S3BlobStore(
            bucket=config.get('S3_BUCKET'),
            prefix=config.get('S3_PREFIX') or '',
            endpoint=config.get('S3_ENDPOINT'),
            region=config.get('S3_REGION'),
            access_key=config.get('S3_ACCESS_KEY'),
            secret_key=config.get('S3_SECRET_KEY'),
            connect_timeout=config.get('BLOB_CONNECT_TIMEOUT_SECONDS', 10),
            read_timeout=config.get('BLOB_READ_TIMEOUT_SECONDS', 60),
            logger=logger,
        )
    if backend == 'local':
        return LocalBlobStore(config['LOCAL_STORAGE_DIR'], config['SECRET_KEY'], logger=logger)
    raise ValueError(f"Unsupported STORAGE_BACKEND: {backend}")


def get_blob_store() -> BlobStore:
    """Blob store for the current app, built once and cached on it."""
    store = current_app.extensions.get('recorder.blob_store')
    if store is None:
        store = build_blob_store(current_app.config, logger=current_app.logger)
        current_app.extensions['recorder.blob_store'] = store
    return store
