"""
JSON File Metadata Store

The reference MetadataStore: all sessions and file records live in memory,
indexed by share code and session id, and the whole document is flushed to a
single JSON file after every mutation.

Key properties:
- Atomic flushes (temp file + os.replace), so a crash never leaves a torn file
- A mutation whose flush fails is rolled back in memory as well
- Secondary indexes rebuilt on load, exact-match lookups in O(1)
- One re-entrant lock serialises every mutation, which makes the download
  counter increment atomic within the process

The store is single-process: two processes pointing at the same file will
overwrite each other's flushes. Use DiskCacheMetadataStore for that case.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator

from .base_metadata_store import MetadataStore
from .errors import NotFound, ShareCodeConflict, StorageFailure
from .models import FileRecord, Session
from .storage_types import MetadataBackend

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = 1


def _copy_session(session: Session) -> Session:
    return replace(session, files=list(session.files))


class JsonMetadataStore(MetadataStore):
    """MetadataStore backed by one JSON document on local disk."""

    backend = MetadataBackend.JSON

    def __init__(self, path: str | Path) -> None:
        """
        Initialize JsonMetadataStore.

        Args:
            path: Location of the JSON document; created on first write
        """
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

        self._sessions: dict[str, Session] = {}
        self._files: dict[str, FileRecord] = {}
        self._code_index: dict[str, list[str]] = {}  # share_code -> session ids

        self._load()

    @property
    def path(self) -> Path:
        return self._path

    # Persistence helpers
    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            document = json.loads(self._path.read_text(encoding="utf-8"))
            sessions = [Session.from_dict(item) for item in document.get("sessions", {}).values()]
            files = [FileRecord.from_dict(item) for item in document.get("files", {}).values()]
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise StorageFailure(f"Failed to load metadata document {self._path}: {e}") from e

        for session in sessions:
            self._sessions[session.id] = session
            self._index_code(session)
        for record in files:
            self._files[record.id] = record
        logger.info(
            f"Loaded {len(self._sessions)} sessions and {len(self._files)} files from {self._path}"
        )

    def _document(self) -> dict[str, Any]:
        return {
            "version": DOCUMENT_VERSION,
            "sessions": {sid: s.to_dict() for sid, s in self._sessions.items()},
            "files": {fid: f.to_dict() for fid, f in self._files.items()},
        }

    def _flush(self) -> None:
        payload = json.dumps(self._document(), indent=2)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.", suffix=".tmp", dir=self._path.parent
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageFailure(f"Failed to write metadata document {self._path}: {e}") from e

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Apply a mutation and flush it, restoring the previous state if the flush fails."""
        sessions = {sid: _copy_session(s) for sid, s in self._sessions.items()}
        files = dict(self._files)
        code_index = {code: list(ids) for code, ids in self._code_index.items()}
        try:
            yield
            self._flush()
        except BaseException:
            self._sessions, self._files, self._code_index = sessions, files, code_index
            raise

    def _index_code(self, session: Session) -> None:
        self._code_index.setdefault(session.share_code, []).append(session.id)

    def _unindex_code(self, session: Session) -> None:
        ids = self._code_index.get(session.share_code)
        if not ids:
            return
        if session.id in ids:
            ids.remove(session.id)
        if not ids:
            del self._code_index[session.share_code]

    # MetadataStore interface
    def create_session(self, session: Session) -> None:
        with self._lock:
            for other_id in self._code_index.get(session.share_code, []):
                other = self._sessions[other_id]
                if not other.is_expired(session.created_at):
                    raise ShareCodeConflict(session.share_code)
            with self._transaction():
                self._sessions[session.id] = _copy_session(session)
                self._index_code(session)

    def get_session(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(session_id)
            return _copy_session(session) if session else None

    def get_session_by_code(self, share_code: str) -> Session | None:
        with self._lock:
            candidates = [self._sessions[sid] for sid in self._code_index.get(share_code, [])]
            if not candidates:
                return None
            newest = max(candidates, key=lambda s: s.created_at)
            return _copy_session(newest)

    def update_session(self, session: Session) -> None:
        with self._lock:
            current = self._sessions.get(session.id)
            if current is None:
                raise NotFound(f"Session not found: {session.id}")
            with self._transaction():
                if current.share_code != session.share_code:
                    self._unindex_code(current)
                    self._index_code(session)
                self._sessions[session.id] = _copy_session(session)

    def delete_session(self, session_id: str) -> None:
        with self._lock:
            if session_id not in self._sessions:
                return
            with self._transaction():
                self._unindex_code(self._sessions.pop(session_id))

    def increment_download_count(self, session_id: str) -> int:
        with self._lock:
            if session_id not in self._sessions:
                raise NotFound(f"Session not found: {session_id}")
            with self._transaction():
                session = self._sessions[session_id]
                session.download_count += 1
            return session.download_count

    def create_file_record(self, record: FileRecord) -> None:
        with self._lock:
            if record.session_id not in self._sessions:
                raise NotFound(f"Session not found: {record.session_id}")
            with self._transaction():
                self._files[record.id] = replace(record)
                self._sessions[record.session_id].files.append(record.id)

    def get_file_record(self, file_id: str) -> FileRecord | None:
        with self._lock:
            record = self._files.get(file_id)
            return replace(record) if record else None

    def list_files_for_session(self, session_id: str) -> list[FileRecord]:
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                # Records whose session is already gone are still listable for cleanup
                owned = [f for f in self._files.values() if f.session_id == session_id]
                return [replace(f) for f in sorted(owned, key=lambda f: f.created_at)]
            return [replace(self._files[fid]) for fid in session.files if fid in self._files]

    def delete_file_record(self, file_id: str) -> None:
        with self._lock:
            if file_id not in self._files:
                return
            with self._transaction():
                record = self._files.pop(file_id)
                session = self._sessions.get(record.session_id)
                if session is not None and file_id in session.files:
                    session.files.remove(file_id)

    def list_expired_sessions(self, as_of: datetime) -> list[Session]:
        with self._lock:
            expired = [s for s in self._sessions.values() if s.is_expired(as_of)]
            return [_copy_session(s) for s in sorted(expired, key=lambda s: s.expires_at)]

    def list_storage_refs(self) -> set[str]:
        with self._lock:
            return {record.storage_ref for record in self._files.values()}

    def count_sessions(self) -> int:
        with self._lock:
            return len(self._sessions)
