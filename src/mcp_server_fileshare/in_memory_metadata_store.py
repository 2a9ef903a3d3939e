"""
In-Memory Metadata Store Implementation (Cacheout-backed)

Provides a MetadataStore with no durability beyond the process lifetime. Used
for tests and for throwaway deployments where losing every share on restart
is acceptable.

Design notes:
- Three unbounded Cacheout caches: sessions by id, file records by id, and
  share code -> session ids.
- Entries never expire on their own; removal is the sweeper's job so blobs
  are always deleted together with their metadata.
- A single re-entrant lock guards compound updates (index maintenance,
  counter increments).
"""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Optional, cast

from cacheout import Cache

from .base_metadata_store import MetadataStore
from .errors import NotFound, ShareCodeConflict
from .models import FileRecord, Session
from .storage_types import MetadataBackend


class InMemoryMetadataStore(MetadataStore):
    """Non-durable MetadataStore kept in process memory."""

    backend = MetadataBackend.MEMORY

    def __init__(self) -> None:
        # maxsize=0 and ttl=0 disable eviction and expiry
        self._sessions = Cache(maxsize=0, ttl=0)
        self._files = Cache(maxsize=0, ttl=0)
        self._codes = Cache(maxsize=0, ttl=0)
        self._lock = threading.RLock()

    # Internal helpers
    def _session(self, session_id: str) -> Session | None:
        return cast(Optional[Session], self._sessions.get(session_id))

    def _code_ids(self, share_code: str) -> list[str]:
        return cast(list[str], self._codes.get(share_code) or [])

    # MetadataStore interface
    def create_session(self, session: Session) -> None:
        with self._lock:
            ids = self._code_ids(session.share_code)
            for other_id in ids:
                other = self._session(other_id)
                if other is not None and not other.is_expired(session.created_at):
                    raise ShareCodeConflict(session.share_code)
            self._sessions.set(session.id, replace(session, files=list(session.files)))
            self._codes.set(session.share_code, [*ids, session.id])

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._session(session_id)
            return replace(session, files=list(session.files)) if session else None

    def get_session_by_code(self, share_code: str) -> Session | None:
        with self._lock:
            candidates = [s for s in map(self._session, self._code_ids(share_code)) if s]
            if not candidates:
                return None
            newest = max(candidates, key=lambda s: s.created_at)
            return replace(newest, files=list(newest.files))

    def update_session(self, session: Session) -> None:
        with self._lock:
            current = self._session(session.id)
            if current is None:
                raise NotFound(f"Session not found: {session.id}")
            if current.share_code != session.share_code:
                self._codes.set(
                    current.share_code,
                    [sid for sid in self._code_ids(current.share_code) if sid != session.id],
                )
                self._codes.set(session.share_code, [*self._code_ids(session.share_code), session.id])
            self._sessions.set(session.id, replace(session, files=list(session.files)))

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            session = self._session(session_id)
            if session is None:
                return
            self._sessions.delete(session_id)
            remaining = [sid for sid in self._code_ids(session.share_code) if sid != session_id]
            if remaining:
                self._codes.set(session.share_code, remaining)
            else:
                self._codes.delete(session.share_code)

    def increment_download_count(self, session_id: str) -> int:
        with self._lock:
            session = self._session(session_id)
            if session is None:
                raise NotFound(f"Session not found: {session_id}")
            session.download_count += 1
            return session.download_count

    def create_file_record(self, record: FileRecord) -> None:
        with self._lock:
            session = self._session(record.session_id)
            if session is None:
                raise NotFound(f"Session not found: {record.session_id}")
            self._files.set(record.id, replace(record))
            session.files.append(record.id)

    def get_file_record(self, file_id: str) -> FileRecord | None:
        with self._lock:
            record = cast(Optional[FileRecord], self._files.get(file_id))
            return replace(record) if record else None

    def list_files_for_session(self, session_id: str) -> list[FileRecord]:
        with self._lock:
            session = self._session(session_id)
            if session is not None:
                records = [self._files.get(fid) for fid in session.files]
                return [replace(r) for r in records if r is not None]
            orphaned = [r for r in self._files.values() if r.session_id == session_id]
            return [replace(r) for r in sorted(orphaned, key=lambda r: r.created_at)]

    def delete_file_record(self, file_id: str) -> None:
        with self._lock:
            record = cast(Optional[FileRecord], self._files.get(file_id))
            if record is None:
                return
            self._files.delete(file_id)
            session = self._session(record.session_id)
            if session is not None and file_id in session.files:
                session.files.remove(file_id)

    def list_expired_sessions(self, as_of: datetime) -> list[Session]:
        with self._lock:
            expired = [s for s in self._sessions.values() if s.is_expired(as_of)]
            expired.sort(key=lambda s: s.expires_at)
            return [replace(s, files=list(s.files)) for s in expired]

    def list_storage_refs(self) -> set[str]:
        with self._lock:
            return {record.storage_ref for record in self._files.values()}

    def count_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)
