"""
Session Engine

Orchestrates share sessions over a MetadataStore (records) and a BlobStore
(bytes): create, lookup, upload, download, download accounting and cleanup.

Every store interaction runs on the engine's worker pool behind an explicit
deadline, so an unreachable provider surfaces as OperationTimeout instead of
a hung request. Errors outside the taxonomy in ``errors`` are wrapped in
StorageFailure with the underlying cause.
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, TypeVar

from .base_blob_store import BlobStore
from .base_metadata_store import MetadataStore
from .errors import (
    NonCriticalFailure,
    NotFound,
    ShareCodeConflict,
    ShareError,
    StorageFailure,
    SweepInProgress,
    ValidationError,
)
from .models import DownloadHandle, FileRecord, Session, SessionDetails, utcnow
from .share_codes import ShareCodeGenerator
from .storage_types import HealthReport
from .utils.deadline import wait_with_deadline
from .utils.validation import require_text, storage_filename, validate_share_code

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SESSION_TTL = timedelta(hours=24)
DEFAULT_MIME_TYPE = "application/octet-stream"
SESSION_GONE_MESSAGE = "Session not found or expired"


class SessionEngine:
    """
    The single authoritative share-session engine.

    The engine holds no mutable state of its own beyond its worker pool and
    the sweep guard; several engines (or processes) may share the same stores
    as long as the stores provide their atomicity guarantees.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        blob_store: BlobStore,
        *,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        max_downloads: int = 100,
        code_generator: ShareCodeGenerator | None = None,
        code_retries: int = 5,
        create_timeout: float = 15.0,
        request_timeout: float = 15.0,
        cleanup_timeout: float = 10.0,
        presigned_url_ttl: int = 900,
        clock: Callable[[], datetime] | None = None,
        max_workers: int = 8,
    ) -> None:
        """
        Initialize SessionEngine.

        Args:
            metadata_store: Where sessions and file records live
            blob_store: Where file bytes live
            session_ttl: Lifetime of a session from its creation
            max_downloads: Advisory download ceiling recorded on new sessions
            code_generator: Share code source (uniform A-Z0-9 by default)
            code_retries: Generation attempts before giving up on a unique code
            create_timeout: Deadline for ``create_session`` in seconds
            request_timeout: Deadline for every other per-request operation
            cleanup_timeout: Deadline for a whole cleanup pass
            presigned_url_ttl: Lifetime of signed download URLs in seconds
            clock: Returns the current UTC time; injectable for tests
            max_workers: Size of the worker pool running store calls
        """
        if session_ttl <= timedelta(0):
            raise ValueError("session_ttl must be positive")
        if max_downloads <= 0:
            raise ValueError("max_downloads must be positive")
        if code_retries <= 0:
            raise ValueError("code_retries must be positive")

        self._metadata = metadata_store
        self._blobs = blob_store
        self._session_ttl = session_ttl
        self._max_downloads = max_downloads
        self._codes = code_generator or ShareCodeGenerator()
        self._code_retries = code_retries
        self._create_timeout = create_timeout
        self._request_timeout = request_timeout
        self._cleanup_timeout = cleanup_timeout
        self._presigned_url_ttl = presigned_url_ttl
        self._clock = clock or utcnow
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="share-engine"
        )
        self._sweep_lock = threading.Lock()
        self._closed = False

    @property
    def metadata_store(self) -> MetadataStore:
        return self._metadata

    @property
    def blob_store(self) -> BlobStore:
        return self._blobs

    def now(self) -> datetime:
        return self._clock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # Execution helpers
    def _run(
        self, fn: Callable[..., T], *args: Any, timeout: float, operation: str
    ) -> T:
        """Run ``fn`` on the worker pool with a deadline and normalised errors."""
        future = self._executor.submit(fn, *args)
        return self._await(future, timeout=timeout, operation=operation)

    @staticmethod
    def _await(future, *, timeout: float, operation: str):
        try:
            return wait_with_deadline(future, timeout=timeout, operation=operation)
        except ShareError:
            raise
        except Exception as e:
            logger.exception(f"{operation} failed with an unexpected error")
            raise StorageFailure(f"{operation} failed: {e}") from e

    def _live_session(self, session: Session | None) -> Session:
        if session is None or session.is_expired(self._clock()):
            raise NotFound(SESSION_GONE_MESSAGE)
        return session

    # Sessions
    def create_session(self, requested_code: str | None = None) -> Session:
        """
        Create an empty session.

        Args:
            requested_code: Caller-chosen share code, used verbatim. When
                omitted a code is generated, retrying on collisions.

        Returns:
            The persisted session

        Raises:
            ValidationError: If ``requested_code`` is malformed
            ShareCodeConflict: If ``requested_code`` is held by a live session
            OperationTimeout: If the store does not answer within the deadline
            StorageFailure: If no unique code could be allocated
        """
        if requested_code is not None:
            validate_share_code(requested_code)
        return self._run(
            self._create_session,
            requested_code,
            timeout=self._create_timeout,
            operation="create_session",
        )

    def _create_session(self, requested_code: str | None) -> Session:
        attempts = 1 if requested_code is not None else self._code_retries
        for attempt in range(1, attempts + 1):
            code = requested_code if requested_code is not None else self._codes.generate()
            created_at = self._clock()
            session = Session(
                id=uuid.uuid4().hex,
                share_code=code,
                created_at=created_at,
                expires_at=created_at + self._session_ttl,
                max_downloads=self._max_downloads,
            )
            try:
                self._metadata.create_session(session)
            except ShareCodeConflict:
                if requested_code is not None:
                    raise
                logger.warning(
                    f"Share code collision on attempt {attempt}/{attempts}, regenerating"
                )
                continue
            logger.info(f"Created session {session.id} with share code {code}")
            return session

        raise StorageFailure(
            f"Could not allocate a unique share code after {attempts} attempts"
        )

    def get_session(self, share_code: str) -> SessionDetails:
        """
        Look up a live session by its exact share code.

        Raises:
            NotFound: If no session carries the code or it has expired,
                whether or not the sweeper has removed it yet
        """
        share_code = require_text(share_code, "shareCode")
        return self._run(
            self._get_session, share_code, timeout=self._request_timeout, operation="get_session"
        )

    def _get_session(self, share_code: str) -> SessionDetails:
        session = self._live_session(self._metadata.get_session_by_code(share_code))
        files = self._metadata.list_files_for_session(session.id)
        return SessionDetails(session=session, files=files)

    # Files
    def add_file(
        self,
        session_id: str,
        data: bytes,
        original_filename: str,
        mime_type: str | None = None,
    ) -> FileRecord:
        """
        Store one uploaded file in a live session.

        The blob is written first, then its record. If the record cannot be
        persisted the blob is deleted again on a best-effort basis; anything
        left behind is reclaimed by the orphan scan.

        Raises:
            ValidationError: If the session id or filename is missing
            BlobTooLarge: If ``data`` exceeds the blob store limit
            NotFound: If the session is unknown or expired
        """
        session_id = require_text(session_id, "sessionId")
        original_filename = require_text(original_filename, "file")
        if data is None:
            raise ValidationError("file is required")
        self._blobs.check_size(len(data))
        return self._run(
            self._add_file,
            session_id,
            data,
            original_filename,
            (mime_type or "").strip() or DEFAULT_MIME_TYPE,
            timeout=self._request_timeout,
            operation="add_file",
        )

    def _add_file(
        self, session_id: str, data: bytes, original_filename: str, mime_type: str
    ) -> FileRecord:
        self._live_session(self._metadata.get_session(session_id))

        file_id = uuid.uuid4().hex
        filename = storage_filename(file_id, original_filename)
        storage_ref = self._blobs.put(
            data, mime_type, session_id=session_id, file_id=file_id, filename=filename
        )
        record = FileRecord(
            id=file_id,
            session_id=session_id,
            filename=filename,
            original_filename=original_filename,
            file_size=len(data),
            mime_type=mime_type,
            storage_ref=storage_ref,
            created_at=self._clock(),
        )
        try:
            self._metadata.create_file_record(record)
        except Exception:
            try:
                self._blobs.delete(storage_ref)
            except Exception as cleanup_error:
                logger.error(
                    f"Failed to remove blob {storage_ref} after record failure: {cleanup_error}"
                )
            raise

        logger.info(
            f"Stored file {file_id} ({original_filename}, {len(data)} bytes) in session {session_id}"
        )
        return record

    def _require_file(self, file_id: str) -> FileRecord:
        record = self._metadata.get_file_record(file_id)
        if record is None:
            raise NotFound("File not found")
        return record

    def resolve_download(self, file_id: str) -> DownloadHandle:
        """
        Open a stored file for download.

        Returns:
            DownloadHandle with an open stream; the caller must consume or
            close it

        Raises:
            NotFound: If the record or its blob is missing
        """
        file_id = require_text(file_id, "fileId")
        return self._run(
            self._resolve_download,
            file_id,
            timeout=self._request_timeout,
            operation="resolve_download",
        )

    def _resolve_download(self, file_id: str) -> DownloadHandle:
        record = self._require_file(file_id)
        stream = self._blobs.get_stream(record.storage_ref)
        return DownloadHandle(
            stream=stream,
            original_filename=record.original_filename,
            mime_type=record.mime_type,
            size=record.file_size,
        )

    def download_url(self, file_id: str, fallback_url: str) -> str:
        """
        Pick the URL a receiver should fetch a file from.

        Returns:
            A signed direct URL when the blob store can issue one, otherwise
            ``fallback_url`` (the relay's own streaming route)
        """
        file_id = require_text(file_id, "fileId")
        return self._run(
            self._download_url,
            file_id,
            fallback_url,
            timeout=self._request_timeout,
            operation="download_url",
        )

    def _download_url(self, file_id: str, fallback_url: str) -> str:
        record = self._require_file(file_id)
        signed = self._blobs.presigned_download_url(
            record.storage_ref, record.original_filename, self._presigned_url_ttl
        )
        return signed or fallback_url

    def record_download(self, file_id: str) -> int | None:
        """
        Count one download against the owning session.

        Returns:
            The new download count, or None when the counter update failed.
            A failed update is logged and never raised.

        Raises:
            NotFound: If the file id is unknown
        """
        file_id = require_text(file_id, "fileId")
        record = self._run(
            self._require_file, file_id, timeout=self._request_timeout, operation="record_download"
        )
        try:
            return self._run(
                self._metadata.increment_download_count,
                record.session_id,
                timeout=self._request_timeout,
                operation="record_download",
            )
        except ShareError as e:
            failure = NonCriticalFailure(
                f"Download count update failed for session {record.session_id}: {e.message}"
            )
            logger.warning(failure.message)
            return None

    # Cleanup
    def _guarded_sweep(self, fn: Callable[..., T], *args: Any, operation: str) -> T:
        """Run a sweep pass while holding the sweep guard.

        The guard is released by the worker itself, so a pass that outlives
        its deadline still blocks the next one until it actually finishes.
        """
        if not self._sweep_lock.acquire(blocking=False):
            raise SweepInProgress()

        def run() -> T:
            try:
                return fn(*args)
            finally:
                self._sweep_lock.release()

        try:
            future = self._executor.submit(run)
        except BaseException:
            self._sweep_lock.release()
            raise
        return self._await(future, timeout=self._cleanup_timeout, operation=operation)

    def cleanup_expired(self, as_of: datetime | None = None) -> int:
        """
        Delete every session that expired before ``as_of`` with its files.

        Per file the blob goes first, then the record. A failure on one
        object is logged and the pass continues; a session is only removed
        once all its files are gone, otherwise it is retried on the next pass.

        Returns:
            Number of sessions fully removed

        Raises:
            SweepInProgress: If another pass is running on this engine
            OperationTimeout: If the pass exceeds the cleanup deadline
        """
        return self._guarded_sweep(
            self._cleanup_expired, as_of or self._clock(), operation="cleanup_expired"
        )

    def _cleanup_expired(self, as_of: datetime) -> int:
        cleaned = 0
        for session in self._metadata.list_expired_sessions(as_of):
            if self._purge_session(session):
                cleaned += 1
        if cleaned:
            logger.info(f"Cleaned up {cleaned} expired sessions")
        return cleaned

    def _purge_session(self, session: Session) -> bool:
        try:
            records = self._metadata.list_files_for_session(session.id)
        except Exception as e:
            logger.error(f"Failed to list files of session {session.id}: {e}")
            return False

        complete = True
        for record in records:
            try:
                self._blobs.delete(record.storage_ref)
                self._metadata.delete_file_record(record.id)
            except Exception as e:
                complete = False
                logger.error(f"Failed to delete file {record.id} of session {session.id}: {e}")

        if not complete:
            logger.warning(f"Keeping session {session.id} until all its files are deleted")
            return False

        try:
            self._metadata.delete_session(session.id)
        except Exception as e:
            logger.error(f"Failed to delete session {session.id}: {e}")
            return False
        return True

    def cleanup_orphans(
        self, as_of: datetime | None = None, grace: timedelta = timedelta(hours=1)
    ) -> int:
        """
        Delete blobs that no file record points to.

        Only blobs older than ``grace`` are considered, so uploads whose
        record is still being written are left alone.

        Returns:
            Number of blobs deleted
        """
        cutoff = (as_of or self._clock()) - grace
        return self._guarded_sweep(self._cleanup_orphans, cutoff, operation="cleanup_orphans")

    def _cleanup_orphans(self, cutoff: datetime) -> int:
        known = self._metadata.list_storage_refs()
        removed = 0
        for storage_ref, created_at in list(self._blobs.iter_refs()):
            if storage_ref in known or created_at >= cutoff:
                continue
            try:
                self._blobs.delete(storage_ref)
                removed += 1
            except Exception as e:
                logger.error(f"Failed to delete orphan blob {storage_ref}: {e}")
        if removed:
            logger.info(f"Removed {removed} orphan blobs")
        return removed

    # Health
    def health(self) -> HealthReport:
        """Report backend identities and the session count."""
        try:
            total = self._run(
                self._metadata.count_sessions,
                timeout=self._request_timeout,
                operation="health",
            )
        except ShareError as e:
            logger.warning(f"Health check could not reach the metadata store: {e.message}")
            return HealthReport(
                status="degraded",
                metadata_backend=self._metadata.backend,
                blob_backend=self._blobs.backend,
                total_sessions=0,
                timestamp=self._clock(),
                details={"error": e.message},
            )
        return HealthReport(
            status="healthy",
            metadata_backend=self._metadata.backend,
            blob_backend=self._blobs.backend,
            total_sessions=total,
            timestamp=self._clock(),
        )

    def close(self) -> None:
        """Stop the worker pool and close both stores."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._metadata.close()
        self._blobs.close()
