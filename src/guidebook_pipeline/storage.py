"""
Binary storage for uploaded images and rendered documents.

Two backends share one small interface: S3 (boto3, presigned download URLs)
when ``storage.s3_bucket`` is configured, and a local directory otherwise.
Uploads take a file object so callers can stream from a temporary file
instead of holding a whole document in memory. Stored blobs are addressed by
their key; URLs handed out by ``url_for`` may expire (S3 presigning) and are
never used to read a blob back.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Optional, Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError

from .exceptions import StorageError
from .utils import ensure_directory

logger = logging.getLogger(__name__)


@dataclass
class StoredBlob:
    key: str
    url: str
    size: int


class BlobStorage(Protocol):
    def upload(self, fileobj: BinaryIO, filename: str, content_type: str) -> StoredBlob:
        ...

    def read(self, key: str) -> bytes:
        ...

    def url_for(self, key: str) -> str:
        """A download URL for ``key`` that is valid now."""
        ...

    def delete(self, key: str) -> bool:
        ...


def _stream_size(fileobj: BinaryIO) -> int:
    current = fileobj.tell()
    fileobj.seek(0, 2)
    size = fileobj.tell()
    fileobj.seek(current)
    return size


class LocalBlobStorage:
    """Stores blobs under a directory and hands out ``file://`` URLs."""

    def __init__(self, root: Path, prefix: str = "") -> None:
        self.root = ensure_directory(Path(root))
        self.prefix = prefix.strip("/")

    def _path_for(self, key: str) -> Path:
        return self.root / key

    def upload(self, fileobj: BinaryIO, filename: str, content_type: str) -> StoredBlob:
        key = f"{self.prefix}/{filename}" if self.prefix else filename
        destination = self._path_for(key)
        ensure_directory(destination.parent)
        with destination.open("wb") as buffer:
            shutil.copyfileobj(fileobj, buffer, 1024 * 1024)
        size = destination.stat().st_size
        logger.info(f"Stored {filename} ({content_type}, {size} bytes) at {destination}")
        return StoredBlob(key=key, url=destination.resolve().as_uri(), size=size)

    def read(self, key: str) -> bytes:
        try:
            return self._path_for(key).read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read {key}: {e}") from e

    def url_for(self, key: str) -> str:
        return self._path_for(key).resolve().as_uri()

    def delete(self, key: str) -> bool:
        path = self._path_for(key)
        if not path.exists():
            return False
        path.unlink()
        return True


class S3BlobStorage:
    """
    Upload blobs to S3 and return presigned download URLs.

    Note:
        The client is created lazily; credential problems surface on the first
        upload rather than at start-up.
    """

    def __init__(self, bucket: str, prefix: str = "", presign_expiration: int = 3600, client=None) -> None:
        if not bucket:
            raise StorageError("S3 bucket name is not configured")
        self.bucket = bucket
        self.prefix = prefix.strip("/")
        self.presign_expiration = presign_expiration
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = boto3.client("s3")
        return self._client

    def upload(self, fileobj: BinaryIO, filename: str, content_type: str) -> StoredBlob:
        key = f"{self.prefix}/{filename}" if self.prefix else filename
        size = _stream_size(fileobj)
        client = self._get_client()
        try:
            logger.info(f"Uploading {filename} to s3://{self.bucket}/{key}")
            client.upload_fileobj(fileobj, self.bucket, key, ExtraArgs={"ContentType": content_type})
            url = self.presigned_url(key)
        except (ClientError, NoCredentialsError, BotoCoreError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise StorageError(f"S3 upload of {key} failed: {e}") from e
        logger.info(f"Upload successful: s3://{self.bucket}/{key}")
        return StoredBlob(key=key, url=url, size=size)

    def presigned_url(self, key: str, expiration: Optional[int] = None) -> str:
        return self._get_client().generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expiration or self.presign_expiration,
        )

    def url_for(self, key: str) -> str:
        return self.presigned_url(key)

    def read(self, key: str) -> bytes:
        try:
            response = self._get_client().get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except (ClientError, NoCredentialsError, BotoCoreError) as e:
            logger.error(f"S3 read of {key} failed: {e}")
            raise StorageError(f"S3 read of {key} failed: {e}") from e

    def delete(self, key: str) -> bool:
        try:
            self._get_client().delete_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            logger.error(f"S3 delete of {key} failed: {e}")
            return False
        return True
