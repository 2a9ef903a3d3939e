"""Shared pytest fixtures for file share tests."""

from datetime import datetime, timedelta, timezone

import pytest

from mcp_server_fileshare.json_metadata_store import JsonMetadataStore
from mcp_server_fileshare.local_blob_store import LocalBlobStore
from mcp_server_fileshare.session_engine import SessionEngine

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    """A clock frozen at T0 until advanced."""
    return FakeClock()


@pytest.fixture
def metadata_store(tmp_path):
    """A JSON metadata store in a temporary directory."""
    store = JsonMetadataStore(tmp_path / "meta" / "sessions.json")
    yield store
    store.close()


@pytest.fixture
def blob_store(tmp_path):
    """A local blob store with a 1 KiB limit."""
    return LocalBlobStore(tmp_path / "blobs", max_size_bytes=1024)


@pytest.fixture
def engine(metadata_store, blob_store, clock):
    """An engine over the JSON and local stores driven by the fake clock."""
    engine = SessionEngine(metadata_store, blob_store, clock=clock, max_workers=4)
    yield engine
    engine.close()
