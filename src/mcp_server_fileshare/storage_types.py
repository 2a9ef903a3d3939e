"""
Storage Types and Data Classes

This module contains the backend identifiers and the health report returned by
the session engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class MetadataBackend(Enum):
    """Metadata store implementations selectable by configuration."""

    JSON = "json"
    MEMORY = "memory"
    DISKCACHE = "diskcache"
    APPWRITE = "appwrite"


class BlobBackend(Enum):
    """Blob store implementations selectable by configuration."""

    LOCAL = "local"
    S3 = "s3"
    APPWRITE = "appwrite"


@dataclass
class HealthReport:
    """Liveness snapshot for monitoring."""

    status: str
    metadata_backend: MetadataBackend
    blob_backend: BlobBackend
    total_sessions: int
    timestamp: datetime
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "metadataBackend": self.metadata_backend.value,
            "blobBackend": self.blob_backend.value,
            "sessions": self.total_sessions,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
