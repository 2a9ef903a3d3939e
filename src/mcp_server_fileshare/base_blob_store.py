"""
Abstract Blob Store

This module contains the abstract base class that defines the interface for
raw file-byte storage (local disk, object storage, managed buckets).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import BinaryIO, Iterator

from .errors import BlobTooLarge
from .storage_types import BlobBackend


class BlobStore(ABC):
    """
    Abstract base class for blob storage.

    A ``storage_ref`` returned by ``put`` is opaque to callers: only the
    implementation that produced it can resolve it. Every operation may raise
    StorageFailure when the provider errors.
    """

    backend: BlobBackend

    def __init__(self, max_size_bytes: int) -> None:
        if max_size_bytes <= 0:
            raise ValueError("max_size_bytes must be positive")
        self.max_size_bytes = max_size_bytes

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release resources."""
        self.close()

    def close(self) -> None:
        """Release any resources held by the store."""

    def check_size(self, size: int) -> None:
        """Raise BlobTooLarge when ``size`` exceeds the configured maximum."""
        if size > self.max_size_bytes:
            raise BlobTooLarge(size, self.max_size_bytes)

    @abstractmethod
    def put(
        self,
        data: bytes,
        content_type: str,
        *,
        session_id: str,
        file_id: str,
        filename: str,
    ) -> str:
        """
        Store bytes and return a reference to them.

        Args:
            data: The complete file contents
            content_type: MIME type recorded with the object where supported
            session_id: Owning session, used for key layout
            file_id: File record id, used for key layout
            filename: Sanitised storage filename (``{fileId}-{original}``)

        Returns:
            Opaque storage reference

        Raises:
            BlobTooLarge: If ``data`` exceeds ``max_size_bytes``
        """
        pass

    @abstractmethod
    def get_stream(self, storage_ref: str) -> BinaryIO:
        """
        Open a stored blob for reading.

        Args:
            storage_ref: Reference returned by ``put``

        Returns:
            Readable binary stream; the caller closes it

        Raises:
            NotFound: If the reference is unknown or deleted
        """
        pass

    @abstractmethod
    def delete(self, storage_ref: str) -> None:
        """
        Delete a blob. Deleting an absent blob is not an error.

        Args:
            storage_ref: Reference returned by ``put``
        """
        pass

    @abstractmethod
    def exists(self, storage_ref: str) -> bool:
        """
        Check whether a blob is present.

        Args:
            storage_ref: Reference returned by ``put``

        Returns:
            True if the blob can be read
        """
        pass

    @abstractmethod
    def iter_refs(self) -> Iterator[tuple[str, datetime]]:
        """
        Enumerate every stored blob.

        Returns:
            Iterator of (storage_ref, created_at) pairs
        """
        pass

    def presigned_download_url(
        self, storage_ref: str, filename: str, expires_in: int
    ) -> str | None:
        """
        Build a time-boxed direct download URL.

        Args:
            storage_ref: Reference returned by ``put``
            filename: Name presented to the downloader
            expires_in: Lifetime of the URL in seconds

        Returns:
            The URL, or None when the backend cannot sign URLs
        """
        return None
