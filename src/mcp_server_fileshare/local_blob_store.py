"""
Local Filesystem Blob Store

The reference BlobStore: one directory per session under a root directory,
files named ``{fileId}-{originalFilename}``. The storage reference is the
POSIX path relative to the root (``{sessionId}/{fileId}-{name}``).
"""

from __future__ import annotations

import logging
import os
import re
import tempfile
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Iterator

from .base_blob_store import BlobStore
from .errors import NotFound, StorageFailure
from .storage_types import BlobBackend

logger = logging.getLogger(__name__)

DEFAULT_MAX_SIZE = 5 * 1024**3  # 5 GB

# Session and file ids are uuid4 hex strings
_SESSION_DIR = re.compile(r"[0-9a-f]{32}")
_BLOB_NAME = re.compile(r"[0-9a-f]{32}-.+", re.DOTALL)


class LocalBlobStore(BlobStore):
    """Filesystem-backed BlobStore."""

    backend = BlobBackend.LOCAL

    def __init__(self, root: str | Path, max_size_bytes: int = DEFAULT_MAX_SIZE) -> None:
        """
        Initialize LocalBlobStore.

        Args:
            root: Directory that holds one sub-directory per session
            max_size_bytes: Largest blob accepted by ``put``
        """
        super().__init__(max_size_bytes)
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, storage_ref: str) -> Path:
        """Map a reference to a path, refusing anything outside the root."""
        relative = PurePosixPath(storage_ref)
        if relative.is_absolute() or ".." in relative.parts or len(relative.parts) != 2:
            raise NotFound(f"Invalid storage reference: {storage_ref}")
        return self._root.joinpath(*relative.parts)

    @staticmethod
    def _open_temp(session_dir: Path) -> tuple[int, str]:
        """Create the session directory and a temp file inside it.

        Retried once if a concurrent ``delete`` removes the directory in
        between.
        """
        session_dir.mkdir(parents=True, exist_ok=True)
        try:
            return tempfile.mkstemp(prefix=".upload-", dir=session_dir)
        except FileNotFoundError:
            logger.debug(f"Session directory {session_dir} vanished, recreating")
            session_dir.mkdir(parents=True, exist_ok=True)
            return tempfile.mkstemp(prefix=".upload-", dir=session_dir)

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
        storage_ref = f"{session_id}/{filename}"
        path = self._resolve(storage_ref)

        try:
            fd, tmp_name = self._open_temp(path.parent)
            try:
                with os.fdopen(fd, "wb") as handle:
                    handle.write(data)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StorageFailure(f"Failed to write blob {storage_ref}: {e}") from e

        logger.debug(f"Stored {len(data)} bytes at {path}")
        return storage_ref

    def get_stream(self, storage_ref: str) -> BinaryIO:
        path = self._resolve(storage_ref)
        try:
            return path.open("rb")
        except FileNotFoundError as e:
            raise NotFound(f"Blob not found: {storage_ref}") from e
        except OSError as e:
            raise StorageFailure(f"Failed to open blob {storage_ref}: {e}") from e

    def delete(self, storage_ref: str) -> None:
        try:
            path = self._resolve(storage_ref)
        except NotFound:
            return
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise StorageFailure(f"Failed to delete blob {storage_ref}: {e}") from e

        # Drop the session directory once its last file is gone
        try:
            path.parent.rmdir()
        except OSError:
            pass

    def exists(self, storage_ref: str) -> bool:
        try:
            return self._resolve(storage_ref).is_file()
        except NotFound:
            return False

    def iter_refs(self) -> Iterator[tuple[str, datetime]]:
        for session_dir in self._root.iterdir():
            # Anything not shaped like a session directory (a metadata cache,
            # a JSON document placed under the root) is not ours to list
            if not session_dir.is_dir() or not _SESSION_DIR.fullmatch(session_dir.name):
                continue
            for path in session_dir.iterdir():
                if not path.is_file() or not _BLOB_NAME.fullmatch(path.name):
                    continue
                created = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
                yield f"{session_dir.name}/{path.name}", created
