"""Firebase Storage service for Domux.

Uploads certified PDFs and project images and builds durable download URLs.

Objects are namespaced projects/{userId}/{sessionId}/{filename}. Durable URLs
use a Firebase download token stored in the object metadata, so they do not
expire the way signed URLs do.
"""

import asyncio
import base64
import binascii
import os
from dataclasses import dataclass
from typing import Optional
from urllib.parse import quote, urlparse
from uuid import uuid4

import structlog
from firebase_admin import storage

from config.settings import settings
from config.errors import ErrorCode, ServiceError

logger = structlog.get_logger()

DOWNLOAD_HOST = "https://firebasestorage.googleapis.com"
DOWNLOAD_PATH_PREFIX = "/v0/b/"


@dataclass(frozen=True)
class StoredObject:
    """Handle to an uploaded object."""

    bucket: str
    path: str
    download_token: str
    content_type: str
    size: int


def project_storage_path(user_id: str, session_id: str, filename: str) -> str:
    return f"projects/{user_id}/{session_id}/{filename}"


def download_host() -> str:
    emulator_host = os.environ.get("FIREBASE_STORAGE_EMULATOR_HOST")
    return f"http://{emulator_host}" if emulator_host else DOWNLOAD_HOST


def is_durable_url(url: str) -> bool:
    """True for a token download URL served by the Firebase Storage host in use."""
    parsed = urlparse(url or "")
    host = urlparse(download_host())
    return (
        parsed.scheme == host.scheme
        and parsed.netloc == host.netloc
        and parsed.path.startswith(DOWNLOAD_PATH_PREFIX)
    )


class StorageService:
    """Service for Firebase Storage uploads.

    The Admin SDK is synchronous; uploads run in a worker thread so callers
    can bound them with a timeout.
    """

    def __init__(self, bucket=None, bucket_name: Optional[str] = None):
        """Initialize StorageService.

        Args:
            bucket: Optional storage bucket. If not provided, uses default.
            bucket_name: Bucket to open lazily (default from settings).
        """
        self._bucket = bucket
        self._bucket_name = bucket_name or settings.storage_bucket

    @property
    def bucket(self):
        """Get storage bucket (lazy initialization)."""
        if self._bucket is None:
            self._bucket = storage.bucket(self._bucket_name)
        return self._bucket

    def _upload_sync(self, path: str, data: bytes, content_type: str) -> StoredObject:
        token = str(uuid4())
        blob = self.bucket.blob(path)
        blob.metadata = {"firebaseStorageDownloadTokens": token}
        blob.upload_from_string(data, content_type=content_type)
        return StoredObject(
            bucket=self.bucket.name,
            path=path,
            download_token=token,
            content_type=content_type,
            size=len(data),
        )

    async def upload(
        self,
        path: str,
        data: bytes,
        content_type: str = "application/octet-stream"
    ) -> StoredObject:
        """Upload raw bytes.

        Raises:
            ServiceError: If the upload fails.
        """
        try:
            stored = await asyncio.to_thread(self._upload_sync, path, data, content_type)
        except Exception as e:
            logger.error("storage_upload_failed", path=path, error=str(e))
            raise ServiceError(
                code=ErrorCode.STORAGE_UPLOAD_FAILED,
                message=f"Failed to upload {path}: {str(e)}",
                stage="upload",
                details={"path": path}
            )

        logger.info("storage_upload", path=path, size=stored.size, content_type=content_type)
        return stored

    async def upload_base64(
        self,
        path: str,
        data: str,
        content_type: str = "image/jpeg"
    ) -> StoredObject:
        """Upload a base64 payload (a bare payload or a data URL)."""
        payload = data.split(",", 1)[1] if data.startswith("data:") else data
        try:
            raw = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ServiceError(
                code=ErrorCode.STORAGE_UPLOAD_FAILED,
                message=f"Invalid base64 payload for {path}: {str(e)}",
                stage="upload",
                details={"path": path}
            )
        return await self.upload(path, raw, content_type)

    def get_durable_url(self, stored: StoredObject) -> str:
        """Build the token download URL for an uploaded object."""
        encoded_path = quote(stored.path, safe="")
        return (
            f"{download_host()}/v0/b/{stored.bucket}/o/{encoded_path}"
            f"?alt=media&token={stored.download_token}"
        )
