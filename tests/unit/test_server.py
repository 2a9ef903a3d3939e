"""
Unit tests for the HTTP routes and MCP tools.

Routes are exercised through Starlette's TestClient on the FastMCP HTTP app;
tools through an in-memory FastMCP client.
"""

import asyncio
from unittest.mock import patch

import pytest
from fastmcp import Client
from fastmcp.exceptions import ToolError
from starlette.testclient import TestClient

from mcp_server_fileshare.errors import OperationTimeout, StorageFailure
from mcp_server_fileshare.expiry_sweeper import ExpirySweeper
from mcp_server_fileshare.server import build_server, error_response
from mcp_server_fileshare.share_codes import SHARE_CODE_PATTERN


@pytest.fixture
def mcp(engine):
    return build_server(engine)


@pytest.fixture
def client(mcp):
    return TestClient(mcp.http_app())


def new_session(client, **body):
    response = client.post("/sessions", json=body)
    assert response.status_code == 201
    return response.json()


def upload(client, session_id, data=b"abc", name="a.txt", mime="text/plain"):
    return client.post(
        "/upload", data={"sessionId": session_id}, files={"file": (name, data, mime)}
    )


def call_tool(mcp, name, arguments=None):
    async def run():
        async with Client(mcp) as mcp_client:
            result = await mcp_client.call_tool(name, arguments or {})
            return result.structured_content

    return asyncio.run(run())


class TestErrorResponse:
    """Test suite for error mapping."""

    def test_status_and_body(self):
        response = error_response(OperationTimeout("get_session", 15))
        assert response.status_code == 503
        assert b"timed out" in response.body


class TestSessionRoutes:
    """Test suite for POST /sessions and GET /sessions/{code}."""

    def test_create_generated(self, client):
        body = new_session(client)
        assert SHARE_CODE_PATTERN.match(body["shareCode"])
        assert set(body) == {"sessionId", "shareCode", "expiresAt"}
        assert body["expiresAt"] == "2025-01-02T12:00:00+00:00"

    def test_create_without_body(self, client):
        assert client.post("/sessions").status_code == 201

    def test_create_with_code(self, client):
        assert new_session(client, shareCode="MYCODE42")["shareCode"] == "MYCODE42"

    def test_code_conflict(self, client):
        new_session(client, shareCode="MYCODE42")
        response = client.post("/sessions", json={"shareCode": "MYCODE42"})
        assert response.status_code == 409
        assert "MYCODE42" in response.json()["error"]

    @pytest.mark.parametrize(
        "payload", [{"json": {"shareCode": "bad"}}, {"json": {"shareCode": 12345678}},
                    {"content": b"{not json"}, {"json": ["MYCODE42"]}],
    )
    def test_bad_request(self, client, payload):
        response = client.post("/sessions", **payload)
        assert response.status_code == 400
        assert "error" in response.json()

    def test_lookup(self, client):
        created = new_session(client)
        upload(client, created["sessionId"])

        response = client.get(f"/sessions/{created['shareCode'].lower()}")
        assert response.status_code == 200
        body = response.json()
        assert body["id"] == created["sessionId"]
        assert body["downloadCount"] == 0
        assert [f["originalFilename"] for f in body["files"]] == ["a.txt"]

    def test_lookup_unknown(self, client):
        response = client.get("/sessions/ZZZZ9999")
        assert response.status_code == 404
        assert response.json() == {"error": "Session not found or expired"}

    def test_lookup_expired(self, client, clock):
        created = new_session(client)
        clock.advance(hours=24, seconds=1)
        assert client.get(f"/sessions/{created['shareCode']}").status_code == 404

    def test_timeout_maps_to_503(self, client, engine):
        with patch.object(
            engine, "create_session", side_effect=OperationTimeout("create_session", 15)
        ):
            response = client.post("/sessions")
        assert response.status_code == 503

    def test_storage_failure_maps_to_500(self, client, engine):
        with patch.object(engine, "get_session", side_effect=StorageFailure("disk full")):
            response = client.get("/sessions/ABCD1234")
        assert response.status_code == 500
        assert response.json() == {"error": "disk full"}


class TestUploadRoute:
    """Test suite for POST /upload."""

    def test_success(self, client):
        session_id = new_session(client)["sessionId"]
        response = upload(client, session_id)
        assert response.status_code == 201
        record = response.json()
        assert record["sessionId"] == session_id
        assert record["originalFilename"] == "a.txt"
        assert record["fileSize"] == 3
        assert record["mimeType"] == "text/plain"
        assert record["filename"] == f"{record['id']}-a.txt"

    def test_missing_file(self, client):
        session_id = new_session(client)["sessionId"]
        response = client.post("/upload", data={"sessionId": session_id})
        assert response.status_code == 400
        assert response.json() == {"error": "No file provided"}

    def test_missing_session_id(self, client):
        response = client.post("/upload", files={"file": ("a.txt", b"abc", "text/plain")})
        assert response.status_code == 400
        assert response.json() == {"error": "Session ID is required"}

    def test_unknown_session(self, client):
        assert upload(client, "nope").status_code == 404

    def test_too_large(self, client):
        session_id = new_session(client)["sessionId"]
        response = upload(client, session_id, data=b"x" * 2048)
        assert response.status_code == 413

    def test_system_status_logged_when_configured(self, engine, tmp_path):
        client = TestClient(build_server(engine, status_path=str(tmp_path)).http_app())
        session_id = new_session(client)["sessionId"]
        with patch("mcp_server_fileshare.server.log_system_status") as status:
            assert upload(client, session_id).status_code == 201
        status.assert_called_once_with("json/local", str(tmp_path))


class TestDownloadRoutes:
    """Test suite for download URL, streaming and accounting."""

    def test_download_url_points_at_streaming_route(self, client):
        record = upload(client, new_session(client)["sessionId"]).json()
        response = client.get(f"/download/{record['id']}")
        assert response.status_code == 200
        assert response.json() == {
            "downloadUrl": f"http://testserver/download/{record['id']}/file"
        }

    def test_public_base_url(self, engine):
        client = TestClient(
            build_server(engine, public_base_url="https://share.example/").http_app()
        )
        record = upload(client, new_session(client)["sessionId"]).json()
        url = client.get(f"/download/{record['id']}").json()["downloadUrl"]
        assert url == f"https://share.example/download/{record['id']}/file"

    def test_stream(self, client, engine):
        session = engine.create_session()
        record = engine.add_file(session.id, b"hello", "résumé.txt", "text/plain")
        response = client.get(f"/download/{record.id}/file")
        assert response.status_code == 200
        assert response.content == b"hello"
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["content-length"] == "5"
        disposition = response.headers["content-disposition"]
        assert disposition.startswith("attachment;")
        assert "filename*=UTF-8''r%C3%A9sum%C3%A9.txt" in disposition

    def test_unknown_file(self, client):
        assert client.get("/download/nope").status_code == 404
        assert client.get("/download/nope/file").status_code == 404

    def test_record_download(self, client):
        created = new_session(client)
        record = upload(client, created["sessionId"]).json()

        response = client.post(f"/files/{record['id']}/download")
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert client.get(f"/sessions/{created['shareCode']}").json()["downloadCount"] == 1

    def test_record_unknown_file(self, client):
        assert client.post("/files/nope/download").status_code == 404


class TestMaintenanceRoutes:
    """Test suite for /cleanup and /health."""

    def test_cleanup(self, client, clock):
        new_session(client)
        assert client.post("/cleanup").json() == {"cleaned": 0}
        clock.advance(hours=25)
        assert client.post("/cleanup").json() == {"cleaned": 1}

    def test_health(self, client):
        new_session(client)
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["metadataBackend"] == "json"
        assert body["blobBackend"] == "local"
        assert body["sessions"] == 1
        assert body["sweeper"] is None

    def test_health_reports_sweeper(self, engine):
        sweeper = ExpirySweeper(engine)
        sweeper.run_once()
        client = TestClient(build_server(engine, sweeper).http_app())
        status = client.get("/health").json()["sweeper"]
        assert status["running"] is False
        assert status["lastCleaned"] == 0

    def test_health_degraded(self, client, engine):
        with patch.object(
            engine.metadata_store, "count_sessions", side_effect=StorageFailure("offline")
        ):
            response = client.get("/health")
        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["error"] == "offline"


class TestTools:
    """Test suite for the MCP tools."""

    def test_create_and_get(self, mcp):
        created = call_tool(mcp, "create_share_session", {"share_code": "TOOLS123"})
        assert created["shareCode"] == "TOOLS123"

        session = call_tool(mcp, "get_share_session", {"share_code": "tools123"})
        assert session["id"] == created["sessionId"]
        assert session["files"] == []

    def test_errors_become_tool_errors(self, mcp):
        with pytest.raises(ToolError, match="Session not found or expired"):
            call_tool(mcp, "get_share_session", {"share_code": "ZZZZ9999"})

    def test_record_download_and_cleanup(self, mcp, engine, clock):
        session = engine.create_session()
        record = engine.add_file(session.id, b"abc", "a.txt", "text/plain")

        counted = call_tool(mcp, "record_file_download", {"file_id": record.id})
        assert counted == {"fileId": record.id, "downloadCount": 1}

        clock.advance(hours=25)
        assert call_tool(mcp, "cleanup_expired_sessions") == {"cleaned": 1}

    def test_storage_health(self, mcp):
        health = call_tool(mcp, "storage_health")
        assert health["status"] == "healthy"
        assert health["sweeper"] is None
