"""
Appwrite Backend

Metadata and blob stores for an Appwrite project, talking to its REST API
directly over httpx.

Collections (created once by the operator):
- sessions: shareCode, createdAt, expiresAt, downloadCount, maxDownloads
- files: sessionId, filename, originalFilename, fileSize, mimeType,
  storageFileId, createdAt

Document ids are our own session/file ids, and the storage file id of a blob
is the FileRecord id, so a file record and its bytes share one identifier.
The download counter uses Appwrite's atomic attribute increment endpoint.
"""

from __future__ import annotations

import io
import json
import logging
from datetime import datetime
from typing import Any, BinaryIO, Iterator

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .base_blob_store import BlobStore
from .base_metadata_store import MetadataStore
from .errors import NotFound, ShareCodeConflict, StorageFailure
from .models import FileRecord, Session, format_timestamp, parse_timestamp
from .storage_types import BlobBackend, MetadataBackend

logger = logging.getLogger(__name__)

DEFAULT_ENDPOINT = "https://cloud.appwrite.io/v1"
CHUNK_SIZE = 5 * 1024 * 1024  # Appwrite rejects single requests above 5 MiB
PAGE_SIZE = 100
DEFAULT_MAX_SIZE = 50 * 1024 * 1024


class AppwriteError(StorageFailure):
    """Non-success response from the Appwrite API."""

    def __init__(self, status: int, message: str):
        self.status = status
        super().__init__(f"Appwrite request failed ({status}): {message}")


def query(method: str, attribute: str | None = None, values: list[Any] | None = None) -> str:
    """Serialise one Appwrite query in the JSON form the REST API accepts."""
    payload: dict[str, Any] = {"method": method}
    if attribute is not None:
        payload["attribute"] = attribute
    if values is not None:
        payload["values"] = values
    return json.dumps(payload, separators=(",", ":"))


class AppwriteClient(httpx.Client):
    """httpx client preconfigured with Appwrite project credentials."""

    def __init__(
        self,
        *,
        project_id: str,
        api_key: str,
        endpoint: str = DEFAULT_ENDPOINT,
        **kwargs: Any,
    ):
        if not project_id or not api_key:
            raise ValueError("Appwrite project_id and api_key are required")
        headers = {
            "X-Appwrite-Project": project_id,
            "X-Appwrite-Key": api_key,
            **(kwargs.pop("headers", None) or {}),
        }
        timeout = kwargs.pop("timeout", httpx.Timeout(timeout=30.0, connect=10.0))
        super().__init__(
            base_url=endpoint.rstrip("/") + "/", headers=headers, timeout=timeout, **kwargs
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=8),
        retry=retry_if_exception_type(
            (
                httpx.ConnectError,
                httpx.TimeoutException,
                httpx.NetworkError,
                httpx.RemoteProtocolError,
            )
        ),
        reraise=True,
    )
    def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        return self.request(method, path.lstrip("/"), **kwargs)

    def call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping transport and HTTP errors to the error taxonomy.

        Raises:
            NotFound: On HTTP 404
            AppwriteError: On any other non-2xx status
            StorageFailure: When the request could not be delivered after retries
        """
        try:
            response = self._send(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise StorageFailure(f"Appwrite unreachable: {e}") from e

        if response.status_code == 404:
            raise NotFound(f"Appwrite resource not found: {path}")
        if response.is_error:
            try:
                message = response.json().get("message", response.text)
            except ValueError:
                message = response.text
            raise AppwriteError(response.status_code, message)
        return response

    def call_json(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        response = self.call(method, path, **kwargs)
        return response.json() if response.content else {}


class AppwriteMetadataStore(MetadataStore):
    """MetadataStore backed by two Appwrite database collections."""

    backend = MetadataBackend.APPWRITE

    def __init__(
        self,
        client: AppwriteClient,
        database_id: str,
        sessions_collection_id: str,
        files_collection_id: str,
        owns_client: bool = False,
    ) -> None:
        """
        Initialize AppwriteMetadataStore.

        Args:
            client: Configured Appwrite client
            database_id: Database holding both collections
            sessions_collection_id: Collection for sessions
            files_collection_id: Collection for file records
            owns_client: Close the client together with the store
        """
        self._client = client
        self._owns_client = owns_client
        self._sessions_path = (
            f"databases/{database_id}/collections/{sessions_collection_id}/documents"
        )
        self._files_path = f"databases/{database_id}/collections/{files_collection_id}/documents"

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    # Document mapping
    @staticmethod
    def _session_data(session: Session) -> dict[str, Any]:
        return {
            "shareCode": session.share_code,
            "createdAt": format_timestamp(session.created_at),
            "expiresAt": format_timestamp(session.expires_at),
            "downloadCount": session.download_count,
            "maxDownloads": session.max_downloads,
        }

    @staticmethod
    def _file_data(record: FileRecord) -> dict[str, Any]:
        return {
            "sessionId": record.session_id,
            "filename": record.filename,
            "originalFilename": record.original_filename,
            "fileSize": record.file_size,
            "mimeType": record.mime_type,
            "storageFileId": record.storage_ref,
            "createdAt": format_timestamp(record.created_at),
        }

    @staticmethod
    def _record_from_document(doc: dict[str, Any]) -> FileRecord:
        return FileRecord(
            id=doc["$id"],
            session_id=doc["sessionId"],
            filename=doc["filename"],
            original_filename=doc["originalFilename"],
            file_size=int(doc["fileSize"]),
            mime_type=doc["mimeType"],
            storage_ref=doc["storageFileId"],
            created_at=parse_timestamp(doc["createdAt"]),
        )

    def _session_from_document(self, doc: dict[str, Any]) -> Session:
        file_docs = self._list_documents(
            self._files_path,
            [query("equal", "sessionId", [doc["$id"]]), query("orderAsc", "createdAt")],
        )
        return Session(
            id=doc["$id"],
            share_code=doc["shareCode"],
            created_at=parse_timestamp(doc["createdAt"]),
            expires_at=parse_timestamp(doc["expiresAt"]),
            download_count=int(doc.get("downloadCount") or 0),
            max_downloads=int(doc.get("maxDownloads") or 100),
            files=[f["$id"] for f in file_docs],
        )

    def _list_documents(self, path: str, queries: list[str]) -> list[dict[str, Any]]:
        """Fetch every matching document, following cursor pagination."""
        documents: list[dict[str, Any]] = []
        cursor: str | None = None
        while True:
            page_queries = [*queries, query("limit", values=[PAGE_SIZE])]
            if cursor is not None:
                page_queries.append(query("cursorAfter", values=[cursor]))
            page = self._client.call_json("GET", path, params={"queries[]": page_queries})
            batch = page.get("documents", [])
            documents.extend(batch)
            if len(batch) < PAGE_SIZE:
                return documents
            cursor = batch[-1]["$id"]

    def _get_document(self, path: str, document_id: str) -> dict[str, Any] | None:
        try:
            return self._client.call_json("GET", f"{path}/{document_id}")
        except NotFound:
            return None

    # MetadataStore interface
    def create_session(self, session: Session) -> None:
        live = self._list_documents(
            self._sessions_path,
            [
                query("equal", "shareCode", [session.share_code]),
                query("greaterThanEqual", "expiresAt", [format_timestamp(session.created_at)]),
            ],
        )
        if live:
            raise ShareCodeConflict(session.share_code)
        try:
            self._client.call_json(
                "POST",
                self._sessions_path,
                json={"documentId": session.id, "data": self._session_data(session)},
            )
        except AppwriteError as e:
            # Unique index on shareCode, or a duplicate document id
            if e.status == 409:
                raise ShareCodeConflict(session.share_code) from e
            raise

    def get_session(self, session_id: str) -> Session | None:
        doc = self._get_document(self._sessions_path, session_id)
        return self._session_from_document(doc) if doc else None

    def get_session_by_code(self, share_code: str) -> Session | None:
        docs = self._list_documents(
            self._sessions_path,
            [query("equal", "shareCode", [share_code]), query("orderDesc", "createdAt")],
        )
        return self._session_from_document(docs[0]) if docs else None

    def update_session(self, session: Session) -> None:
        self._client.call_json(
            "PATCH",
            f"{self._sessions_path}/{session.id}",
            json={"data": self._session_data(session)},
        )

    def delete_session(self, session_id: str) -> None:
        try:
            self._client.call("DELETE", f"{self._sessions_path}/{session_id}")
        except NotFound:
            pass

    def increment_download_count(self, session_id: str) -> int:
        doc = self._client.call_json(
            "PATCH",
            f"{self._sessions_path}/{session_id}/downloadCount/increment",
            json={"value": 1},
        )
        return int(doc["downloadCount"])

    def create_file_record(self, record: FileRecord) -> None:
        if self._get_document(self._sessions_path, record.session_id) is None:
            raise NotFound(f"Session not found: {record.session_id}")
        self._client.call_json(
            "POST",
            self._files_path,
            json={"documentId": record.id, "data": self._file_data(record)},
        )

    def get_file_record(self, file_id: str) -> FileRecord | None:
        doc = self._get_document(self._files_path, file_id)
        return self._record_from_document(doc) if doc else None

    def list_files_for_session(self, session_id: str) -> list[FileRecord]:
        docs = self._list_documents(
            self._files_path,
            [query("equal", "sessionId", [session_id]), query("orderAsc", "createdAt")],
        )
        return [self._record_from_document(doc) for doc in docs]

    def delete_file_record(self, file_id: str) -> None:
        try:
            self._client.call("DELETE", f"{self._files_path}/{file_id}")
        except NotFound:
            pass

    def list_expired_sessions(self, as_of: datetime) -> list[Session]:
        docs = self._list_documents(
            self._sessions_path,
            [query("lessThan", "expiresAt", [format_timestamp(as_of)]), query("orderAsc", "expiresAt")],
        )
        return [self._session_from_document(doc) for doc in docs]

    def list_storage_refs(self) -> set[str]:
        docs = self._list_documents(self._files_path, [])
        return {doc["storageFileId"] for doc in docs}

    def count_sessions(self) -> int:
        page = self._client.call_json(
            "GET", self._sessions_path, params={"queries[]": [query("limit", values=[1])]}
        )
        return int(page.get("total", 0))


class AppwriteBlobStore(BlobStore):
    """BlobStore backed by an Appwrite storage bucket."""

    backend = BlobBackend.APPWRITE

    def __init__(
        self,
        client: AppwriteClient,
        bucket_id: str,
        max_size_bytes: int = DEFAULT_MAX_SIZE,
        owns_client: bool = False,
    ) -> None:
        super().__init__(max_size_bytes)
        self._client = client
        self._owns_client = owns_client
        self._files_path = f"storage/buckets/{bucket_id}/files"

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

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
        total = len(data)
        if total <= CHUNK_SIZE:
            self._client.call_json(
                "POST",
                self._files_path,
                data={"fileId": file_id},
                files={"file": (filename, data, content_type)},
            )
            return file_id

        for start in range(0, total, CHUNK_SIZE):
            chunk = data[start : start + CHUNK_SIZE]
            headers = {"Content-Range": f"bytes {start}-{start + len(chunk) - 1}/{total}"}
            if start:
                headers["x-appwrite-id"] = file_id
            self._client.call_json(
                "POST",
                self._files_path,
                data={"fileId": file_id},
                files={"file": (filename, chunk, content_type)},
                headers=headers,
            )
        logger.debug(f"Uploaded {total} bytes to Appwrite in chunks as {file_id}")
        return file_id

    def get_stream(self, storage_ref: str) -> BinaryIO:
        response = self._client.call("GET", f"{self._files_path}/{storage_ref}/download")
        return io.BytesIO(response.content)

    def delete(self, storage_ref: str) -> None:
        try:
            self._client.call("DELETE", f"{self._files_path}/{storage_ref}")
        except NotFound:
            pass

    def exists(self, storage_ref: str) -> bool:
        try:
            self._client.call("GET", f"{self._files_path}/{storage_ref}")
        except NotFound:
            return False
        return True

    def iter_refs(self) -> Iterator[tuple[str, datetime]]:
        cursor: str | None = None
        while True:
            queries = [query("limit", values=[PAGE_SIZE])]
            if cursor is not None:
                queries.append(query("cursorAfter", values=[cursor]))
            page = self._client.call_json("GET", self._files_path, params={"queries[]": queries})
            files = page.get("files", [])
            for item in files:
                yield item["$id"], parse_timestamp(item["$createdAt"])
            if len(files) < PAGE_SIZE:
                return
            cursor = files[-1]["$id"]
