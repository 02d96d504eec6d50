"""Document store for possession attachments.

Signed certificates, site photos and other supporting documents live in an
S3-compatible bucket. Records only keep the opaque reference returned by
``put_document``; the content itself is never interpreted here.

Example:
    from possession.services.storage import DocumentStore
    from possession.core.settings import get_settings

    store = DocumentStore.from_settings(get_settings().s3)
    stored = store.put_document(
        possession_id="0b7c...",
        slot=AttachmentSlot.CERTIFICATE,
        data=pdf_bytes,
        filename="certificate.pdf",
        content_type="application/pdf",
    )
    print(stored.reference)
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

if TYPE_CHECKING:
    from possession.core.config import S3Settings
    from possession.db.models.base import AttachmentSlot

logger = logging.getLogger(__name__)

REFERENCE_SCHEME = "s3://"


@dataclass(frozen=True)
class StoredDocument:
    """Result of storing a document.

    Attributes:
        reference: Opaque reference saved on the possession record.
        key: Object key in the bucket.
        sha256_digest: SHA-256 hex digest of the content.
        size_bytes: Content length.
    """

    reference: str
    key: str
    sha256_digest: str
    size_bytes: int


class StorageError(Exception):
    """Base exception for document store operations.

    Attributes:
        message: Human-readable error description.
        bucket: The bucket involved in the operation.
        key: The object key involved (if applicable).
        operation: The operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        bucket: str | None = None,
        key: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.bucket = bucket
        self.key = key
        self.operation = operation
        super().__init__(message)


class BucketNotFoundError(StorageError):
    """Raised when the document bucket does not exist."""


class DocumentStore:
    """S3-compatible storage for possession documents.

    Uses synchronous boto3; async callers run it in a worker thread.
    """

    def __init__(
        self,
        endpoint_url: str | None,
        access_key: str,
        secret_key: str,
        bucket: str,
        region: str = "us-east-1",
        *,
        connect_timeout: float = 5.0,
        read_timeout: float = 30.0,
        max_retries: int = 3,
    ) -> None:
        """Initialize the document store.

        Args:
            endpoint_url: S3-compatible endpoint URL (None for AWS itself).
            access_key: S3 access key ID.
            secret_key: S3 secret access key.
            bucket: Bucket holding the documents.
            region: AWS region (use us-east-1 for MinIO).
            connect_timeout: Connection timeout in seconds.
            read_timeout: Read timeout in seconds.
            max_retries: Maximum retry attempts for transient failures.
        """
        self.bucket = bucket
        self._region = region

        config = Config(
            connect_timeout=connect_timeout,
            read_timeout=read_timeout,
            retries={"max_attempts": max_retries, "mode": "standard"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
            config=config,
        )
        logger.debug("Initialized DocumentStore bucket=%s endpoint=%s", bucket, endpoint_url)

    @classmethod
    def from_settings(cls, settings: S3Settings) -> DocumentStore:
        """Create a store from S3Settings configuration."""
        return cls(
            endpoint_url=settings.endpoint,
            access_key=settings.access_key.get_secret_value(),
            secret_key=settings.secret_key.get_secret_value(),
            bucket=settings.bucket,
            region=settings.region,
        )

    def ensure_bucket(self) -> bool:
        """Create the document bucket if it is missing.

        Returns:
            True if the bucket was created, False if it already existed.

        Raises:
            StorageError: If the bucket cannot be checked or created.
        """
        try:
            self._client.head_bucket(Bucket=self.bucket)
            return False
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code not in ("404", "NoSuchBucket"):
                raise StorageError(
                    f"Failed to check bucket existence: {e}",
                    bucket=self.bucket,
                    operation="head_bucket",
                ) from e

        try:
            # For us-east-1, don't specify LocationConstraint
            if self._region == "us-east-1":
                self._client.create_bucket(Bucket=self.bucket)
            else:
                self._client.create_bucket(
                    Bucket=self.bucket,
                    CreateBucketConfiguration={"LocationConstraint": self._region},
                )
        except ClientError as e:
            raise StorageError(
                f"Failed to create bucket: {e}", bucket=self.bucket, operation="create_bucket"
            ) from e
        logger.info("Created bucket: %s", self.bucket)
        return True

    def put_document(
        self,
        *,
        possession_id: str,
        slot: AttachmentSlot,
        data: bytes,
        filename: str | None = None,
        content_type: str = "application/octet-stream",
    ) -> StoredDocument:
        """Store a document and return its reference.

        Keys are content-addressed under the record and slot, so re-uploading
        identical bytes yields the same reference.

        Raises:
            BucketNotFoundError: If the bucket does not exist.
            StorageError: If the upload fails.
        """
        digest = hashlib.sha256(data).hexdigest()
        key = f"possessions/{possession_id}/{slot.value}/{digest}"
        metadata = {"sha256-digest": digest}
        if filename:
            metadata["original-filename"] = filename

        try:
            self._client.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata=metadata,
            )
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code == "NoSuchBucket":
                raise BucketNotFoundError(
                    f"Bucket does not exist: {self.bucket}",
                    bucket=self.bucket,
                    key=key,
                    operation="put_document",
                ) from e
            raise StorageError(
                f"Upload failed: {e}", bucket=self.bucket, key=key, operation="put_document"
            ) from e

        logger.debug("Stored %s (%d bytes)", key, len(data))
        return StoredDocument(
            reference=f"{REFERENCE_SCHEME}{self.bucket}/{key}",
            key=key,
            sha256_digest=digest,
            size_bytes=len(data),
        )
