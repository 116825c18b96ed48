"""Object storage for receipt images and export files.

Receipt images never pass through the API: clients upload straight to
MinIO with a short lived presigned PUT URL and the worker reads the
object back by key. Keys are namespaced per organisation
(``<org_id>/<receipt_id>/<safe filename>``) and persisted on the
receipt row.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from io import BytesIO
from typing import Optional

from minio import Minio
from minio.error import S3Error

from receiptsync.core.config import settings
from receiptsync.core.errors import FetchError, NotFoundError

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(filename: str) -> str:
    """Replace anything outside ``[A-Za-z0-9._-]`` with an underscore."""
    cleaned = _UNSAFE_CHARS.sub("_", filename or "").strip("._")
    return cleaned or "receipt"


def receipt_object_key(org_id: str, receipt_id: str, filename: str) -> str:
    return f"{org_id}/{receipt_id}/{safe_filename(filename)}"


def export_object_key(org_id: str, job_id: str, filename: str) -> str:
    return f"{org_id}/exports/{job_id}/{safe_filename(filename)}"


class StorageService:
    """Thin wrapper around a MinIO client bound to the receipts bucket."""

    def __init__(self, client: Optional[Minio] = None, bucket: Optional[str] = None) -> None:
        self._client = client or Minio(
            settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=bool(settings.MINIO_USE_SSL),
        )
        self.bucket = bucket or settings.MINIO_BUCKET_NAME
        self._bucket_checked = False

    def ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            if not self._client.bucket_exists(self.bucket):
                self._client.make_bucket(self.bucket)
        except S3Error as exc:
            logger.warning("[storage] bucket ensure failed bucket=%s err=%s", self.bucket, exc)
        self._bucket_checked = True

    def presigned_upload_url(self, key: str, expires_seconds: Optional[int] = None) -> str:
        self.ensure_bucket()
        expires = timedelta(seconds=expires_seconds or settings.UPLOAD_URL_EXPIRY_SECONDS)
        return self._client.presigned_put_object(self.bucket, key, expires=expires)

    def presigned_download_url(self, key: str, expires_seconds: Optional[int] = None) -> str:
        expires = timedelta(seconds=expires_seconds or settings.DOWNLOAD_URL_EXPIRY_SECONDS)
        return self._client.presigned_get_object(self.bucket, key, expires=expires)

    def object_exists(self, key: str) -> bool:
        try:
            self._client.stat_object(self.bucket, key)
            return True
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchObject", "NoSuchBucket"):
                return False
            raise FetchError(f"Storage stat failed for {key}: {exc}") from exc

    def read_object(self, key: str) -> bytes:
        """Load raw bytes for a stored object by key."""
        try:
            resp = self._client.get_object(self.bucket, key)
        except S3Error as exc:
            if exc.code in ("NoSuchKey", "NoSuchObject"):
                raise NotFoundError(f"File not found: {key}") from exc
            raise FetchError(f"Storage download failed for {key}: {exc}") from exc
        try:
            data = resp.read()
            logger.debug("[storage] get ok key=%s bytes=%d", key, len(data))
            return data
        finally:
            resp.close()
            resp.release_conn()

    def write_object(self, key: str, data: bytes, content_type: str) -> str:
        self.ensure_bucket()
        try:
            self._client.put_object(self.bucket, key, BytesIO(data), len(data), content_type=content_type)
        except S3Error as exc:
            raise FetchError(f"Storage upload failed for {key}: {exc}") from exc
        logger.info("[storage] put key=%s size=%d", key, len(data))
        return key


_storage: Optional[StorageService] = None


def get_storage() -> StorageService:
    """Process wide storage service, created on first use."""
    global _storage
    if _storage is None:
        _storage = StorageService()
    return _storage


def set_storage(storage: Optional[StorageService]) -> None:
    """Swap the process wide storage service (tests, scripts)."""
    global _storage
    _storage = storage


__all__ = [
    "StorageService",
    "get_storage",
    "set_storage",
    "safe_filename",
    "receipt_object_key",
    "export_object_key",
]
