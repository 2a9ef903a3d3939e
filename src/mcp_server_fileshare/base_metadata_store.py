"""
Abstract Metadata Store

This module contains the abstract base class that defines the interface
for all session/file-record storage implementations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from .models import FileRecord, Session
from .storage_types import MetadataBackend


class MetadataStore(ABC):
    """
    Abstract base class for durable session and file-record metadata.

    The SessionEngine uses this interface to persist sessions and file records
    without knowing the underlying storage mechanism. Implementations must make
    ``increment_download_count`` a single atomic update and must reject a
    share code that is already held by a non-expired session.

    All lookups are exact-match.
    """

    backend: MetadataBackend

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release resources."""
        self.close()

    def close(self) -> None:
        """Release any resources held by the store."""

    @abstractmethod
    def create_session(self, session: Session) -> None:
        """
        Persist a new session.

        Args:
            session: The session to store

        Raises:
            ShareCodeConflict: If a session that is not expired as of
                ``session.created_at`` already uses the same share code
        """
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Session | None:
        """
        Get a session by id.

        Args:
            session_id: The session identifier

        Returns:
            The session, or None if not found
        """
        pass

    @abstractmethod
    def get_session_by_code(self, share_code: str) -> Session | None:
        """
        Get the newest session carrying a share code.

        Expired sessions are returned too; expiry is the caller's decision.

        Args:
            share_code: The exact share code

        Returns:
            The session, or None if no session uses the code
        """
        pass

    @abstractmethod
    def update_session(self, session: Session) -> None:
        """
        Overwrite a stored session.

        Args:
            session: The session with updated fields

        Raises:
            NotFound: If the session does not exist
        """
        pass

    @abstractmethod
    def delete_session(self, session_id: str) -> None:
        """
        Delete a session record. Deleting an absent session is not an error.

        Args:
            session_id: The session identifier
        """
        pass

    @abstractmethod
    def increment_download_count(self, session_id: str) -> int:
        """
        Atomically add one to a session's download counter.

        Args:
            session_id: The session identifier

        Returns:
            The counter value after the increment

        Raises:
            NotFound: If the session does not exist
        """
        pass

    @abstractmethod
    def create_file_record(self, record: FileRecord) -> None:
        """
        Persist a file record and append it to its session's file list.

        Args:
            record: The file record to store

        Raises:
            NotFound: If the owning session does not exist
        """
        pass

    @abstractmethod
    def get_file_record(self, file_id: str) -> FileRecord | None:
        """
        Get a file record by id.

        Args:
            file_id: The file identifier

        Returns:
            The file record, or None if not found
        """
        pass

    @abstractmethod
    def list_files_for_session(self, session_id: str) -> list[FileRecord]:
        """
        List the file records owned by a session.

        Args:
            session_id: The session identifier

        Returns:
            File records in upload order (empty for unknown sessions)
        """
        pass

    @abstractmethod
    def delete_file_record(self, file_id: str) -> None:
        """
        Delete a file record. Deleting an absent record is not an error.

        Args:
            file_id: The file identifier
        """
        pass

    @abstractmethod
    def list_expired_sessions(self, as_of: datetime) -> list[Session]:
        """
        List sessions whose ``expires_at`` is strictly before ``as_of``.

        Args:
            as_of: The reference instant

        Returns:
            Expired sessions, oldest expiry first
        """
        pass

    @abstractmethod
    def list_storage_refs(self) -> set[str]:
        """
        Get every blob reference known to the store.

        Returns:
            Set of ``storage_ref`` values across all file records
        """
        pass

    @abstractmethod
    def count_sessions(self) -> int:
        """
        Count stored sessions, expired or not.

        Returns:
            Number of session records
        """
        pass
