"""Storage for submitted invoice PDFs.

Two backends share one interface:
- LocalDocumentStorage keeps files under settings.upload_dir
- MinioDocumentStorage keeps them in an S3-compatible bucket

The workflow only ever holds the opaque file reference returned by save()
and reads bytes back during extraction.

Based on MinIO Python SDK:
https://min.io/docs/minio/linux/developers/python/API.html
"""

import io
import logging
import mimetypes
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from minio import Minio
from minio.error import S3Error
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from services.shared.config import Settings

logger = logging.getLogger(__name__)


def _is_transient_s3_error(error: BaseException) -> bool:
    return isinstance(error, S3Error) and error.code != "NoSuchKey"


class StorageResult(BaseModel):
    """Result of storage operation.

    Attributes:
        success: Whether operation succeeded
        object_name: Full object path in storage
        bucket: Bucket name
        error: Error message if operation failed
        etag: Object ETag (hash) if available
        size: Object size in bytes if available
    """

    success: bool
    object_name: str | None = None
    bucket: str | None = None
    error: str | None = None
    etag: str | None = None
    size: int | None = None


class DocumentStorage(ABC):
    """Interface for PDF storage backends."""

    @abstractmethod
    def save(self, data: bytes, filename: str) -> str:
        """Store a document and return its file reference.

        Raises:
            OSError: If the document cannot be written
        """

    @abstractmethod
    def read(self, file_ref: str) -> bytes:
        """Return the bytes of a stored document.

        Raises:
            FileNotFoundError: If no document exists for file_ref
        """

    @staticmethod
    def _new_object_name(filename: str) -> str:
        suffix = Path(filename).suffix.lower() or ".pdf"
        return f"{uuid.uuid4().hex}{suffix}"


class LocalDocumentStorage(DocumentStorage):
    """Documents stored as files under a single upload directory."""

    def __init__(self, settings: Settings) -> None:
        self.root = Path(settings.upload_dir).resolve()

    def _resolve(self, file_ref: str) -> Path:
        path = (self.root / file_ref).resolve()
        if not path.is_relative_to(self.root):
            raise FileNotFoundError(f"File reference outside upload directory: {file_ref}")
        return path

    def save(self, data: bytes, filename: str) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        file_ref = self._new_object_name(filename)
        self._resolve(file_ref).write_bytes(data)
        logger.info(f"Stored {filename} as {file_ref} ({len(data)} bytes)")
        return file_ref

    def read(self, file_ref: str) -> bytes:
        path = self._resolve(file_ref)
        if not path.is_file():
            raise FileNotFoundError(f"Document not found: {file_ref}")
        return path.read_bytes()


class MinioDocumentStorage(DocumentStorage):
    """S3-compatible object storage backend."""

    def __init__(self, settings: Settings) -> None:
        """Initialize storage service.

        Args:
            settings: Application settings with storage configuration
        """
        self.settings = settings
        self._client: Minio | None = None
        self._bucket_ready = False

    def _get_client(self) -> Minio:
        """Get or create MinIO client (lazy initialization).

        Raises:
            ValueError: If storage credentials are not configured
        """
        if self._client is None:
            if not self.settings.storage_access_key:
                raise ValueError(
                    "Storage access key not configured. "
                    "Set APP_STORAGE_ACCESS_KEY environment variable."
                )
            if not self.settings.storage_secret_key:
                raise ValueError(
                    "Storage secret key not configured. "
                    "Set APP_STORAGE_SECRET_KEY environment variable."
                )

            self._client = Minio(
                endpoint=self.settings.storage_endpoint,
                access_key=self.settings.storage_access_key,
                secret_key=self.settings.storage_secret_key,
                secure=self.settings.storage_secure,
            )
            logger.info(f"MinIO client initialized for endpoint: {self.settings.storage_endpoint}")

        return self._client

    def is_available(self) -> bool:
        return bool(self.settings.storage_access_key and self.settings.storage_secret_key)

    def _ensure_bucket(self) -> None:
        if self._bucket_ready:
            return

        client = self._get_client()
        bucket = self.settings.storage_bucket
        if not client.bucket_exists(bucket):
            client.make_bucket(bucket)
            logger.info(f"Created bucket: {bucket}")

        self._bucket_ready = True

    @retry(
        retry=retry_if_exception_type(S3Error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def upload_bytes(self, data: bytes, object_name: str) -> StorageResult:
        """Upload bytes to the configured bucket.

        Args:
            data: Bytes to upload
            object_name: Target object name in storage

        Returns:
            StorageResult with upload details
        """
        bucket = self.settings.storage_bucket
        client = self._get_client()
        self._ensure_bucket()

        content_type, _ = mimetypes.guess_type(object_name)
        result = client.put_object(
            bucket_name=bucket,
            object_name=object_name,
            data=io.BytesIO(data),
            length=len(data),
            content_type=content_type or "application/pdf",
        )

        logger.info(f"Uploaded {object_name} to {bucket} ({len(data)} bytes)")

        return StorageResult(
            success=True,
            object_name=object_name,
            bucket=bucket,
            etag=result.etag,
            size=len(data),
        )

    def save(self, data: bytes, filename: str) -> str:
        object_name = self._new_object_name(filename)
        try:
            result = self.upload_bytes(data, object_name)
        except S3Error as e:
            raise OSError(f"S3 error uploading {object_name}: {e.code} - {e.message}") from e
        return str(result.object_name)

    @retry(
        retry=retry_if_exception(_is_transient_s3_error),
        stop=stop_after_attempt(3),
        wait=wait_exponential_jitter(initial=1, max=10),
        reraise=True,
    )
    def _download(self, object_name: str) -> bytes:
        response = self._get_client().get_object(
            bucket_name=self.settings.storage_bucket, object_name=object_name
        )
        try:
            return response.read()
        finally:
            response.close()
            response.release_conn()

    def read(self, file_ref: str) -> bytes:
        try:
            return self._download(file_ref)
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise FileNotFoundError(f"Document not found: {file_ref}") from e
            raise


def create_document_storage(settings: Settings) -> DocumentStorage:
    """Create the storage backend named by settings.storage_backend."""
    if settings.storage_backend == "minio":
        return MinioDocumentStorage(settings)
    return LocalDocumentStorage(settings)
