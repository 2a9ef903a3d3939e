"""
Configuration

Settings are read once at start-up from ``FILESHARE_*`` environment variables
(optionally seeded from a ``.env`` file) and threaded explicitly into the
stores, the engine and the sweeper. Nothing here keeps a module-level client.
"""

from __future__ import annotations

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Any

import humanfriendly
from dotenv import load_dotenv
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .appwrite_backend import (
    DEFAULT_ENDPOINT,
    AppwriteBlobStore,
    AppwriteClient,
    AppwriteMetadataStore,
)
from .base_blob_store import BlobStore
from .base_metadata_store import MetadataStore
from .diskcache_metadata_store import DiskCacheMetadataStore
from .errors import ConfigurationError
from .expiry_sweeper import ExpirySweeper
from .in_memory_metadata_store import InMemoryMetadataStore
from .json_metadata_store import JsonMetadataStore
from .local_blob_store import LocalBlobStore
from .s3_blob_store import S3BlobStore
from .session_engine import SessionEngine
from .storage_types import BlobBackend, MetadataBackend

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="FILESHARE_", extra="ignore")

    # Backends
    METADATA_BACKEND: MetadataBackend = MetadataBackend.JSON
    STORAGE_BACKEND: BlobBackend = BlobBackend.LOCAL
    STORAGE_PATH: Path = Path("./uploads")
    METADATA_PATH: Path | None = None

    # Limits and lifetimes
    MAX_FILE_SIZE: int = Field(default=humanfriendly.parse_size("5GB"), gt=0)
    SESSION_TTL_HOURS: float = Field(default=24, gt=0)
    MAX_DOWNLOADS: int = Field(default=100, gt=0)
    SHARE_CODE_RETRIES: int = Field(default=5, gt=0)

    # Deadlines
    CREATE_TIMEOUT_SECONDS: float = Field(default=15, gt=0)
    REQUEST_TIMEOUT_SECONDS: float = Field(default=15, gt=0)
    CLEANUP_TIMEOUT_SECONDS: float = Field(default=10, gt=0)

    # Sweeper
    SWEEP_INTERVAL_SECONDS: float = Field(default=3600, gt=0)
    SWEEP_STARTUP_DELAY_SECONDS: float = Field(default=30, ge=0)
    ORPHAN_SWEEP_ENABLED: bool = True
    ORPHAN_GRACE_SECONDS: float = Field(default=3600, ge=0)

    # HTTP
    HOST: str = "0.0.0.0"
    PORT: int = 3001
    PUBLIC_BASE_URL: str | None = None

    # S3-compatible object storage
    S3_BUCKET: str | None = None
    S3_ENDPOINT_URL: str | None = None
    S3_REGION: str | None = None
    S3_ACCESS_KEY_ID: str | None = None
    S3_SECRET_ACCESS_KEY: str | None = None
    S3_KEY_PREFIX: str = ""
    PRESIGNED_URL_TTL_SECONDS: int = Field(default=900, gt=0)

    # Appwrite
    APPWRITE_ENDPOINT: str = DEFAULT_ENDPOINT
    APPWRITE_PROJECT_ID: str | None = None
    APPWRITE_API_KEY: str | None = None
    APPWRITE_DATABASE_ID: str | None = None
    APPWRITE_SESSIONS_COLLECTION_ID: str | None = None
    APPWRITE_FILES_COLLECTION_ID: str | None = None
    APPWRITE_BUCKET_ID: str | None = None

    @field_validator("MAX_FILE_SIZE", mode="before")
    @classmethod
    def _parse_size(cls, value: Any) -> Any:
        # Accept human-readable sizes such as "50MB" or "5 GiB"
        if isinstance(value, str):
            try:
                return humanfriendly.parse_size(value)
            except humanfriendly.InvalidSize as e:
                raise ValueError(str(e)) from e
        return value

    @field_validator("METADATA_BACKEND", "STORAGE_BACKEND", mode="before")
    @classmethod
    def _lower_backend(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _check_provider_credentials(self) -> Settings:
        missing: list[str] = []
        if self.STORAGE_BACKEND is BlobBackend.S3 and not self.S3_BUCKET:
            missing.append("FILESHARE_S3_BUCKET")

        uses_appwrite = MetadataBackend.APPWRITE is self.METADATA_BACKEND or (
            BlobBackend.APPWRITE is self.STORAGE_BACKEND
        )
        required: dict[str, str | None] = {}
        if uses_appwrite:
            required["APPWRITE_PROJECT_ID"] = self.APPWRITE_PROJECT_ID
            required["APPWRITE_API_KEY"] = self.APPWRITE_API_KEY
        if self.METADATA_BACKEND is MetadataBackend.APPWRITE:
            required["APPWRITE_DATABASE_ID"] = self.APPWRITE_DATABASE_ID
            required["APPWRITE_SESSIONS_COLLECTION_ID"] = self.APPWRITE_SESSIONS_COLLECTION_ID
            required["APPWRITE_FILES_COLLECTION_ID"] = self.APPWRITE_FILES_COLLECTION_ID
        if self.STORAGE_BACKEND is BlobBackend.APPWRITE:
            required["APPWRITE_BUCKET_ID"] = self.APPWRITE_BUCKET_ID
        missing.extend(f"FILESHARE_{name}" for name, value in required.items() if not value)

        if missing:
            raise ValueError(f"Missing required settings: {', '.join(missing)}")
        return self

    @property
    def metadata_path(self) -> Path:
        """Location of the JSON document or diskcache directory."""
        if self.METADATA_PATH is not None:
            return self.METADATA_PATH
        if self.METADATA_BACKEND is MetadataBackend.DISKCACHE:
            # Dot-directory so the local blob store never mistakes it for a session
            return self.STORAGE_PATH / ".metadata"
        return self.STORAGE_PATH / "sessions.json"

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(hours=self.SESSION_TTL_HOURS)

    @property
    def backend_label(self) -> str:
        return f"{self.METADATA_BACKEND.value}/{self.STORAGE_BACKEND.value}"


def load_settings(env_file: str | Path | None = ".env", **overrides: Any) -> Settings:
    """
    Read settings from the environment.

    Args:
        env_file: Optional dotenv file loaded into the environment first;
            variables that are already set win
        **overrides: Explicit field values, mainly for tests

    Raises:
        ConfigurationError: If a value is invalid or a selected provider
            lacks credentials
    """
    if env_file is not None and os.path.exists(env_file):
        load_dotenv(env_file, override=False)
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def build_appwrite_client(settings: Settings) -> AppwriteClient:
    return AppwriteClient(
        endpoint=settings.APPWRITE_ENDPOINT,
        project_id=settings.APPWRITE_PROJECT_ID or "",
        api_key=settings.APPWRITE_API_KEY or "",
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )


def build_metadata_store(settings: Settings) -> MetadataStore:
    backend = settings.METADATA_BACKEND
    if backend is MetadataBackend.JSON:
        return JsonMetadataStore(settings.metadata_path)
    if backend is MetadataBackend.DISKCACHE:
        return DiskCacheMetadataStore(settings.metadata_path)
    if backend is MetadataBackend.MEMORY:
        logger.warning("Using in-memory metadata: every share is lost on restart")
        return InMemoryMetadataStore()
    return AppwriteMetadataStore(
        build_appwrite_client(settings),
        database_id=settings.APPWRITE_DATABASE_ID or "",
        sessions_collection_id=settings.APPWRITE_SESSIONS_COLLECTION_ID or "",
        files_collection_id=settings.APPWRITE_FILES_COLLECTION_ID or "",
        owns_client=True,
    )


def build_blob_store(settings: Settings) -> BlobStore:
    backend = settings.STORAGE_BACKEND
    if backend is BlobBackend.LOCAL:
        return LocalBlobStore(settings.STORAGE_PATH, max_size_bytes=settings.MAX_FILE_SIZE)
    if backend is BlobBackend.S3:
        return S3BlobStore(
            settings.S3_BUCKET or "",
            endpoint_url=settings.S3_ENDPOINT_URL,
            region=settings.S3_REGION,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
            max_size_bytes=settings.MAX_FILE_SIZE,
            prefix=settings.S3_KEY_PREFIX,
        )
    return AppwriteBlobStore(
        build_appwrite_client(settings),
        bucket_id=settings.APPWRITE_BUCKET_ID or "",
        max_size_bytes=settings.MAX_FILE_SIZE,
        owns_client=True,
    )


def build_engine(settings: Settings, **kwargs: Any) -> SessionEngine:
    """Build both stores and an engine around them; ``kwargs`` reach the engine."""
    metadata_store = build_metadata_store(settings)
    try:
        blob_store = build_blob_store(settings)
    except Exception:
        metadata_store.close()
        raise
    logger.info(f"Session engine using {settings.backend_label} backends")
    return SessionEngine(
        metadata_store,
        blob_store,
        session_ttl=settings.session_ttl,
        max_downloads=settings.MAX_DOWNLOADS,
        code_retries=settings.SHARE_CODE_RETRIES,
        create_timeout=settings.CREATE_TIMEOUT_SECONDS,
        request_timeout=settings.REQUEST_TIMEOUT_SECONDS,
        cleanup_timeout=settings.CLEANUP_TIMEOUT_SECONDS,
        presigned_url_ttl=settings.PRESIGNED_URL_TTL_SECONDS,
        **kwargs,
    )


def build_sweeper(settings: Settings, engine: SessionEngine) -> ExpirySweeper:
    return ExpirySweeper(
        engine,
        interval_seconds=settings.SWEEP_INTERVAL_SECONDS,
        startup_delay_seconds=settings.SWEEP_STARTUP_DELAY_SECONDS,
        include_orphans=settings.ORPHAN_SWEEP_ENABLED,
        orphan_grace_seconds=settings.ORPHAN_GRACE_SECONDS,
    )
