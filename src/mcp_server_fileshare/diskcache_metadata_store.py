"""
DiskCache-based Metadata Store Implementation

A filesystem-based metadata store using the diskcache library. diskcache keeps
everything in a SQLite database, so several server processes can share one
directory safely.

Key Benefits:
- Compound updates run inside ``Cache.transact()`` (one SQLite transaction)
- Download counters use ``Cache.incr``, which is atomic across processes
- No background threads; ``close()`` releases the database handles

Key layout:
- ``session:{id}``   -> session dict (wire format, counter kept separately)
- ``downloads:{id}`` -> integer download counter
- ``code:{code}``    -> list of session ids carrying the share code
- ``file:{id}``      -> file record dict
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

import diskcache

from .base_metadata_store import MetadataStore
from .errors import NotFound, ShareCodeConflict
from .models import FileRecord, Session
from .storage_types import MetadataBackend

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"
DOWNLOADS_PREFIX = "downloads:"
CODE_PREFIX = "code:"
FILE_PREFIX = "file:"


class DiskCacheMetadataStore(MetadataStore):
    """
    Filesystem-based MetadataStore using diskcache.

    Safe for concurrent use from multiple threads and multiple processes that
    point at the same directory.
    """

    backend = MetadataBackend.DISKCACHE

    def __init__(self, directory: str | Path, timeout: float = 60.0) -> None:
        """
        Initialize DiskCacheMetadataStore.

        Args:
            directory: Directory for the SQLite-backed cache
            timeout: Seconds to wait on the SQLite lock before failing
        """
        self._directory = Path(directory)
        self._directory.mkdir(parents=True, exist_ok=True)
        # No eviction: metadata must only disappear through cleanup
        self._cache = diskcache.Cache(
            directory=str(self._directory),
            timeout=timeout,
            eviction_policy="none",
        )

    def close(self) -> None:
        """Close the cache and cleanup resources."""
        if hasattr(self, "_cache"):
            self._cache.close()

    # Key helpers
    def _session_key(self, session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    def _downloads_key(self, session_id: str) -> str:
        return f"{DOWNLOADS_PREFIX}{session_id}"

    def _code_key(self, share_code: str) -> str:
        return f"{CODE_PREFIX}{share_code}"

    def _file_key(self, file_id: str) -> str:
        return f"{FILE_PREFIX}{file_id}"

    def _load_session(self, session_id: str) -> Session | None:
        data: dict[str, Any] | None = self._cache.get(self._session_key(session_id))
        if data is None:
            return None
        session = Session.from_dict(data)
        session.download_count = int(self._cache.get(self._downloads_key(session_id), 0))
        return session

    def _store_session(self, session: Session) -> None:
        data = session.to_dict()
        data.pop("downloadCount")
        self._cache.set(self._session_key(session.id), data)

    def _iter_sessions(self) -> Iterator[Session]:
        for key in list(self._cache):
            if not isinstance(key, str) or not key.startswith(SESSION_PREFIX):
                continue
            try:
                session = self._load_session(key[len(SESSION_PREFIX):])
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable session entry {key}: {e}")
                continue
            if session is not None:
                yield session

    def _iter_files(self) -> Iterator[FileRecord]:
        for key in list(self._cache):
            if not isinstance(key, str) or not key.startswith(FILE_PREFIX):
                continue
            data = self._cache.get(key)
            if data is None:
                continue
            try:
                yield FileRecord.from_dict(data)
            except (KeyError, ValueError, TypeError) as e:
                logger.error(f"Skipping unreadable file entry {key}: {e}")

    # MetadataStore interface
    def create_session(self, session: Session) -> None:
        with self._cache.transact():
            code_key = self._code_key(session.share_code)
            ids: list[str] = self._cache.get(code_key, [])
            for other_id in ids:
                other = self._load_session(other_id)
                if other is not None and not other.is_expired(session.created_at):
                    raise ShareCodeConflict(session.share_code)
            self._store_session(session)
            self._cache.set(self._downloads_key(session.id), session.download_count)
            self._cache.set(code_key, [*ids, session.id])

    def get_session(self, session_id: str) -> Session | None:
        return self._load_session(session_id)

    def get_session_by_code(self, share_code: str) -> Session | None:
        ids: list[str] = self._cache.get(self._code_key(share_code), [])
        candidates = [s for s in map(self._load_session, ids) if s is not None]
        if not candidates:
            return None
        return max(candidates, key=lambda s: s.created_at)

    def update_session(self, session: Session) -> None:
        with self._cache.transact():
            current = self._load_session(session.id)
            if current is None:
                raise NotFound(f"Session not found: {session.id}")
            if current.share_code != session.share_code:
                old_key = self._code_key(current.share_code)
                self._cache.set(
                    old_key, [sid for sid in self._cache.get(old_key, []) if sid != session.id]
                )
                new_key = self._code_key(session.share_code)
                self._cache.set(new_key, [*self._cache.get(new_key, []), session.id])
            self._store_session(session)
            self._cache.set(self._downloads_key(session.id), session.download_count)

    def delete_session(self, session_id: str) -> None:
        with self._cache.transact():
            session = self._load_session(session_id)
            if session is None:
                return
            code_key = self._code_key(session.share_code)
            remaining = [sid for sid in self._cache.get(code_key, []) if sid != session_id]
            if remaining:
                self._cache.set(code_key, remaining)
            else:
                self._cache.delete(code_key)
            self._cache.delete(self._session_key(session_id))
            self._cache.delete(self._downloads_key(session_id))

    def increment_download_count(self, session_id: str) -> int:
        with self._cache.transact():
            if self._session_key(session_id) not in self._cache:
                raise NotFound(f"Session not found: {session_id}")
            return int(self._cache.incr(self._downloads_key(session_id), 1, default=0))

    def create_file_record(self, record: FileRecord) -> None:
        with self._cache.transact():
            session = self._load_session(record.session_id)
            if session is None:
                raise NotFound(f"Session not found: {record.session_id}")
            self._cache.set(self._file_key(record.id), record.to_dict())
            session.files.append(record.id)
            self._store_session(session)

    def get_file_record(self, file_id: str) -> FileRecord | None:
        data = self._cache.get(self._file_key(file_id))
        return FileRecord.from_dict(data) if data is not None else None

    def list_files_for_session(self, session_id: str) -> list[FileRecord]:
        session = self._load_session(session_id)
        if session is None:
            owned = [r for r in self._iter_files() if r.session_id == session_id]
            return sorted(owned, key=lambda r: r.created_at)
        records = [self.get_file_record(fid) for fid in session.files]
        return [r for r in records if r is not None]

    def delete_file_record(self, file_id: str) -> None:
        with self._cache.transact():
            data = self._cache.get(self._file_key(file_id))
            if data is None:
                return
            self._cache.delete(self._file_key(file_id))
            session = self._load_session(data["sessionId"])
            if session is not None and file_id in session.files:
                session.files.remove(file_id)
                self._store_session(session)

    def list_expired_sessions(self, as_of: datetime) -> list[Session]:
        expired = [s for s in self._iter_sessions() if s.is_expired(as_of)]
        return sorted(expired, key=lambda s: s.expires_at)

    def list_storage_refs(self) -> set[str]:
        return {record.storage_ref for record in self._iter_files()}

    def count_sessions(self) -> int:
        return sum(
            1 for key in list(self._cache) if isinstance(key, str) and key.startswith(SESSION_PREFIX)
        )
