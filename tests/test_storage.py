"""
Tests for the local and S3 blob storage backends.
"""

import io

import pytest

from guidebook_pipeline.exceptions import StorageError
from guidebook_pipeline.storage import LocalBlobStorage, S3BlobStorage


class TestLocalBlobStorage:
    def test_upload_and_delete(self, tmp_path):
        storage = LocalBlobStorage(tmp_path / "out", prefix="guidebooks/")

        blob = storage.upload(io.BytesIO(b"document"), "lisbon.pdf", "application/pdf")

        assert blob.key == "guidebooks/lisbon.pdf"
        assert blob.size == len(b"document")
        assert blob.url.startswith("file://")
        assert (tmp_path / "out" / "guidebooks" / "lisbon.pdf").read_bytes() == b"document"

        assert storage.delete(blob.key) is True
        assert storage.delete(blob.key) is False

    def test_read_by_key(self, tmp_path):
        storage = LocalBlobStorage(tmp_path / "out")
        blob = storage.upload(io.BytesIO(b"image"), "p1/tram.png", "image/png")

        assert storage.read(blob.key) == b"image"
        assert storage.url_for(blob.key) == blob.url

    def test_read_missing_key(self, tmp_path):
        storage = LocalBlobStorage(tmp_path / "out")
        with pytest.raises(StorageError, match="p1/missing.png"):
            storage.read("p1/missing.png")


class TestS3BlobStorage:
    def test_requires_bucket(self):
        with pytest.raises(StorageError):
            S3BlobStorage(bucket="")

    def test_upload_returns_presigned_url(self, fake_s3, clock):
        storage = S3BlobStorage("guides", prefix="books", presign_expiration=600, client=fake_s3)

        blob = storage.upload(io.BytesIO(b"pdf bytes"), "lisbon.pdf", "application/pdf")

        assert blob.key == "books/lisbon.pdf"
        assert blob.size == len(b"pdf bytes")
        assert blob.url == f"https://guides.s3.amazonaws.com/books/lisbon.pdf?Expires={int(clock() + 600)}"
        body, extra = fake_s3.uploaded[("guides", "books/lisbon.pdf")]
        assert body == b"pdf bytes"
        assert extra == {"ContentType": "application/pdf"}

    def test_upload_failure_raises_storage_error(self, fake_s3):
        fake_s3.fail_upload = True
        storage = S3BlobStorage("guides", client=fake_s3)
        with pytest.raises(StorageError, match="lisbon.pdf"):
            storage.upload(io.BytesIO(b"x"), "lisbon.pdf", "application/pdf")

    def test_read_by_key_after_url_expiry(self, fake_s3, clock):
        storage = S3BlobStorage("guides", presign_expiration=600, client=fake_s3)
        blob = storage.upload(io.BytesIO(b"image"), "p1/tram.png", "image/png")

        clock.advance(601)

        assert fake_s3.is_expired(blob.url)
        assert storage.read(blob.key) == b"image"

    def test_url_for_presigns_afresh(self, fake_s3, clock):
        storage = S3BlobStorage("guides", presign_expiration=600, client=fake_s3)
        blob = storage.upload(io.BytesIO(b"image"), "p1/tram.png", "image/png")

        clock.advance(601)
        url = storage.url_for(blob.key)

        assert url != blob.url
        assert not fake_s3.is_expired(url)

    def test_read_missing_key(self, fake_s3):
        storage = S3BlobStorage("guides", client=fake_s3)
        with pytest.raises(StorageError, match="p1/missing.png"):
            storage.read("p1/missing.png")

    def test_delete(self, fake_s3):
        storage = S3BlobStorage("guides", client=fake_s3)
        assert storage.delete("books/old.pdf") is True
        assert fake_s3.deleted == [("guides", "books/old.pdf")]
