"""
Cloud storage abstraction for element reference images.

Provides a unified upload interface over Firebase Storage (via fsspec's
'gs' filesystem) and AWS S3 (via boto3). The element library only needs a
publicly fetchable URL back; nothing else about the stored object matters
to it.

Usage:
    >>> storage = get_storage_backend()
    >>> url = await storage.upload_bytes(data, "projects/p1/elements/1700000000_hero.png", "image/png")
"""

import asyncio
from abc import ABC, abstractmethod
from functools import partial
from typing import Optional

import boto3
import fsspec
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from config import settings
from library.errors import StorageUploadError

logger = structlog.get_logger(__name__)


class StorageBackend(ABC):
    """
    Abstract interface for element image uploads.
    """

    def __init__(self, bucket: str, public_url: Optional[str] = None):
        self.bucket = bucket
        self.public_url = public_url.rstrip("/") if public_url else None

    @abstractmethod
    async def upload_bytes(
        self,
        data: bytes,
        cloud_path: str,
        content_type: Optional[str] = None
    ) -> str:
        """
        Upload raw bytes to cloud storage.

        Args:
            data: File contents
            cloud_path: Destination path in the bucket
                (e.g., "projects/p1/elements/1700000000_hero.png")
            content_type: Optional MIME type

        Returns:
            Public URL to access the file

        Raises:
            StorageUploadError: If upload fails
        """
        pass

    def _get_public_url(self, cloud_path: str) -> str:
        if self.public_url:
            return f"{self.public_url}/{cloud_path}"
        return self._default_public_url(cloud_path)

    @abstractmethod
    def _default_public_url(self, cloud_path: str) -> str:
        pass


class FirebaseStorageBackend(StorageBackend):
    """
    Firebase Storage implementation using Google Cloud Storage (gcsfs).

    Firebase Storage is built on Google Cloud Storage, so we use the
    'gs' filesystem from fsspec.

    Example:
        >>> storage = FirebaseStorageBackend(
        ...     bucket="my-app.appspot.com",
        ...     credentials_path="./serviceAccountKey.json"
        ... )
    """

    def __init__(self, bucket: str, credentials_path: str, public_url: Optional[str] = None):
        super().__init__(bucket, public_url)
        self.credentials_path = credentials_path

        # token parameter accepts path to service account key
        self.fs = fsspec.filesystem('gs', token=credentials_path)

        logger.info("firebase_storage_initialized", bucket=bucket)

    def _default_public_url(self, cloud_path: str) -> str:
        return f"https://storage.googleapis.com/{self.bucket}/{cloud_path}"

    async def upload_bytes(self, data: bytes, cloud_path: str, content_type: Optional[str] = None) -> str:
        """Upload bytes to Firebase Storage."""
        full_path = f"{self.bucket}/{cloud_path}"
        logger.info("storage_upload_started", backend="firebase", path=full_path, size_bytes=len(data))

        kwargs = {"content_type": content_type} if content_type else {}
        try:
            # Run blocking I/O in thread pool
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                partial(self.fs.pipe_file, full_path, data, **kwargs)
            )
        except (OSError, ValueError) as e:
            logger.error("storage_upload_failed", backend="firebase", path=full_path, error=str(e))
            raise StorageUploadError(f"Upload to gs://{full_path} failed: {e}", {"path": cloud_path}) from e

        url = self._get_public_url(cloud_path)
        logger.info("storage_upload_succeeded", backend="firebase", url=url)
        return url


class S3StorageBackend(StorageBackend):
    """
    AWS S3 storage implementation using boto3.

    Example:
        >>> storage = S3StorageBackend(
        ...     bucket="my-element-bucket",
        ...     aws_access_key="AKIA...",
        ...     aws_secret_key="...",
        ...     region="us-east-1"
        ... )
    """

    def __init__(
        self,
        bucket: str,
        aws_access_key: str,
        aws_secret_key: str,
        region: str = "us-east-1",
        public_url: Optional[str] = None,
    ):
        super().__init__(bucket, public_url)
        self.region = region

        self.s3_client = boto3.client(
            's3',
            aws_access_key_id=aws_access_key,
            aws_secret_access_key=aws_secret_key,
            region_name=region
        )

        logger.info("s3_storage_initialized", bucket=bucket, region=region)

    def _default_public_url(self, cloud_path: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{cloud_path}"

    async def upload_bytes(self, data: bytes, cloud_path: str, content_type: Optional[str] = None) -> str:
        """Upload bytes to S3."""
        logger.info("storage_upload_started", backend="s3", bucket=self.bucket, key=cloud_path, size_bytes=len(data))

        put_kwargs = {"Bucket": self.bucket, "Key": cloud_path, "Body": data}
        if content_type:
            put_kwargs["ContentType"] = content_type

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(
                None,
                partial(self.s3_client.put_object, **put_kwargs)
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("storage_upload_failed", backend="s3", key=cloud_path, error=str(e), exc_info=True)
            raise StorageUploadError(f"Upload to s3://{self.bucket}/{cloud_path} failed: {e}", {"path": cloud_path}) from e

        url = self._get_public_url(cloud_path)
        logger.info("storage_upload_succeeded", backend="s3", url=url)
        return url


def get_storage_backend() -> StorageBackend:
    """
    Factory function to get storage backend based on environment configuration.

    Reads STORAGE_BACKEND and returns the matching implementation.

    Raises:
        ValueError: If storage backend is invalid or required config is missing

    Example:
        >>> # In .env: STORAGE_BACKEND=firebase
        >>> storage = get_storage_backend()
        >>> isinstance(storage, FirebaseStorageBackend)
        True
    """
    settings.validate_storage_config()
    backend_type = settings.STORAGE_BACKEND.lower()

    if backend_type == "firebase":
        return FirebaseStorageBackend(
            bucket=settings.STORAGE_BUCKET,
            credentials_path=settings.FIREBASE_CREDENTIALS_PATH,
            public_url=settings.STORAGE_PUBLIC_URL,
        )

    elif backend_type == "s3":
        if not settings.AWS_ACCESS_KEY_ID:
            raise ValueError("AWS_ACCESS_KEY_ID environment variable is required")
        if not settings.AWS_SECRET_ACCESS_KEY:
            raise ValueError("AWS_SECRET_ACCESS_KEY environment variable is required")

        return S3StorageBackend(
            bucket=settings.STORAGE_BUCKET,
            aws_access_key=settings.AWS_ACCESS_KEY_ID,
            aws_secret_key=settings.AWS_SECRET_ACCESS_KEY,
            region=settings.AWS_REGION,
            public_url=settings.STORAGE_PUBLIC_URL,
        )

    else:
        raise ValueError(
            f"Invalid STORAGE_BACKEND: {backend_type}. "
            f"Must be 'firebase' or 's3'"
        )
