"""
Share Session Models

This module contains the Session and FileRecord dataclasses shared by every
MetadataStore implementation, plus their wire (camelCase JSON) conversions.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render a timestamp as ISO-8601 in UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 timestamp, treating naive values as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        # Appwrite and JS clients emit a trailing "Z"
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Session:
    """A time-boxed grouping of uploaded files bound to one share code."""

    id: str
    share_code: str
    created_at: datetime
    expires_at: datetime
    download_count: int = 0
    max_downloads: int = 100
    files: list[str] = field(default_factory=list)  # FileRecord ids, upload order

    def is_expired(self, now: datetime) -> bool:
        """A session is still valid at exactly ``expires_at``."""
        return self.expires_at < now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "shareCode": self.share_code,
            "createdAt": format_timestamp(self.created_at),
            "expiresAt": format_timestamp(self.expires_at),
            "downloadCount": self.download_count,
            "maxDownloads": self.max_downloads,
            "files": list(self.files),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        return cls(
            id=data["id"],
            share_code=data["shareCode"],
            created_at=parse_timestamp(data["createdAt"]),
            expires_at=parse_timestamp(data["expiresAt"]),
            download_count=int(data.get("downloadCount", 0)),
            max_downloads=int(data.get("maxDownloads", 100)),
            files=list(data.get("files", [])),
        )


@dataclass
class FileRecord:
    """Metadata describing one uploaded file and a pointer to its bytes."""

    id: str
    session_id: str
    filename: str  # storage-internal, {fileId}-{original}
    original_filename: str
    file_size: int
    mime_type: str
    storage_ref: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "filename": self.filename,
            "originalFilename": self.original_filename,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "storageRef": self.storage_ref,
            "createdAt": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileRecord:
        return cls(
            id=data["id"],
            session_id=data["sessionId"],
            filename=data["filename"],
            original_filename=data["originalFilename"],
            file_size=int(data["fileSize"]),
            mime_type=data["mimeType"],
            storage_ref=data["storageRef"],
            created_at=parse_timestamp(data["createdAt"]),
        )


@dataclass
class SessionDetails:
    """A live session together with its resolved file records."""

    session: Session
    files: list[FileRecord]

    def to_dict(self) -> dict[str, Any]:
        payload = self.session.to_dict()
        payload["files"] = [record.to_dict() for record in self.files]
        return payload


@dataclass
class DownloadHandle:
    """An open blob stream plus the headers needed to serve it."""

    stream: BinaryIO
    original_filename: str
    mime_type: str
    size: int

    def iter_chunks(self, chunk_size: int = 1024 * 1024):
        """Yield the blob in chunks and close the stream when exhausted."""
        try:
            while chunk := self.stream.read(chunk_size):
                yield chunk
        finally:
            self.stream.close()

    def read_all(self) -> bytes:
        try:
            return self.stream.read()
        finally:
            self.stream.close()
