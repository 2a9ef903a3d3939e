"""
S3-Compatible Blob Store

Stores blobs as objects in one bucket, keyed ``{prefix}{sessionId}/{fileId}-{name}``.
Works against AWS S3 and S3-interoperable endpoints (Google Cloud Storage
interop, MinIO) through boto3. The storage reference is the object key.

Unlike the local store this backend can hand out presigned GET URLs, so
downloads can bypass the relay entirely.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, BinaryIO, Iterator, cast

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .base_blob_store import BlobStore
from .errors import NotFound, StorageFailure
from .storage_types import BlobBackend
from .utils.validation import content_disposition

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 5 * 1024**3  # 5 GB, the single PUT limit on S3
_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


def _is_missing(error: ClientError) -> bool:
    return str(error.response.get("Error", {}).get("Code")) in _MISSING_CODES


class S3BlobStore(BlobStore):
    """BlobStore backed by an S3-compatible bucket."""

    backend = BlobBackend.S3

    def __init__(
        self,
        bucket: str,
        *,
        client: Any | None = None,
        endpoint_url: str | None = None,
        region: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        max_size_bytes: int = DEFAULT_MAX_SIZE,
        prefix: str = "",
    ) -> None:
        """
        Initialize S3BlobStore.

        Args:
            bucket: Target bucket name
            client: Pre-built boto3 S3 client; one is created when omitted
            endpoint_url: Custom endpoint for S3-compatible providers
            region: Bucket region
            access_key_id: Explicit credentials; boto3's default chain otherwise
            secret_access_key: Explicit credentials
            max_size_bytes: Largest blob accepted by ``put``
            prefix: Key prefix shared by every object of this store
        """
        super().__init__(max_size_bytes)
        if not bucket:
            raise ValueError("bucket is required")
        self._bucket = bucket
        self._prefix = prefix
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def put(
        self,
        data: bytes,
        content_type: str,
        *,
        session_id: str,
        file_id: str,
        filename: str,
    ) -> str:
        self.check_size(len(data))
        key = f"{self._prefix}{session_id}/{filename}"
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                Metadata={"file-id": file_id, "session-id": session_id},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"Failed to upload {key}: {e}") from e
        logger.debug(f"Uploaded {len(data)} bytes to s3://{self._bucket}/{key}")
        return key

    def get_stream(self, storage_ref: str) -> BinaryIO:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=storage_ref)
        except ClientError as e:
            if _is_missing(e):
                raise NotFound(f"Blob not found: {storage_ref}") from e
            raise StorageFailure(f"Failed to download {storage_ref}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"Failed to download {storage_ref}: {e}") from e
        return cast(BinaryIO, response["Body"])

    def delete(self, storage_ref: str) -> None:
        # DeleteObject succeeds for absent keys
        try:
            self._client.delete_object(Bucket=self._bucket, Key=storage_ref)
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"Failed to delete {storage_ref}: {e}") from e

    def exists(self, storage_ref: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=storage_ref)
        except ClientError as e:
            if _is_missing(e):
                return False
            raise StorageFailure(f"Failed to stat {storage_ref}: {e}") from e
        except BotoCoreError as e:
            raise StorageFailure(f"Failed to stat {storage_ref}: {e}") from e
        return True

    def iter_refs(self) -> Iterator[tuple[str, datetime]]:
        kwargs: dict[str, Any] = {"Bucket": self._bucket, "Prefix": self._prefix}
        while True:
            try:
                page = self._client.list_objects_v2(**kwargs)
            except (ClientError, BotoCoreError) as e:
                raise StorageFailure(f"Failed to list bucket {self._bucket}: {e}") from e
            for item in page.get("Contents", []):
                modified = item["LastModified"]
                if modified.tzinfo is None:
                    modified = modified.replace(tzinfo=timezone.utc)
                yield item["Key"], modified
            if not page.get("IsTruncated"):
                return
            kwargs["ContinuationToken"] = page["NextContinuationToken"]

    def presigned_download_url(
        self, storage_ref: str, filename: str, expires_in: int
    ) -> str | None:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": self._bucket,
                    "Key": storage_ref,
                    "ResponseContentDisposition": content_disposition(filename),
                },
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageFailure(f"Failed to sign URL for {storage_ref}: {e}") from e
