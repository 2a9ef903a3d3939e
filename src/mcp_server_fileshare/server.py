import logging
import sys
from typing import Any

# FastMCP 2.0 import
from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import UploadFile
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse

from .config import build_engine, build_sweeper, load_settings
from .errors import ShareError, ValidationError
from .expiry_sweeper import ExpirySweeper
from .session_engine import SessionEngine
from .storage_types import BlobBackend
from .system_utils import log_system_status
from .utils.validation import content_disposition, normalize_share_code

logger = logging.getLogger(__name__)
# Ensure logs are visible in the FastMCP subprocess even if no handlers configured
_package_logger = logging.getLogger(__package__ or "mcp_server_fileshare")
if not _package_logger.handlers:
    _handler = logging.StreamHandler(sys.stdout)
    _handler.setLevel(logging.INFO)
    _formatter = logging.Formatter("%(asctime)s - %(levelname)s - %(message)s")
    _handler.setFormatter(_formatter)
    _package_logger.addHandler(_handler)
_package_logger.setLevel(logging.INFO)

SERVER_TITLE = "File Share Relay 📦"


def error_response(exc: ShareError) -> JSONResponse:
    """Map a taxonomy error to its status code and ``{"error": message}`` body."""
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__}: {exc.message}", exc_info=exc)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


async def _json_body(request: Request) -> dict[str, Any]:
    raw = await request.body()
    if not raw.strip():
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def build_server(
    engine: SessionEngine,
    sweeper: ExpirySweeper | None = None,
    *,
    public_base_url: str | None = None,
    status_path: str | None = None,
) -> FastMCP:
    """
    Create the FastMCP server exposing the transfer routes and MCP tools.

    Args:
        engine: Engine every route and tool delegates to
        sweeper: Background sweeper whose status is reported by /health
        public_base_url: External base URL used in download links; the
            request's own base URL when omitted
        status_path: Upload volume to report in system status logs

    Returns:
        Configured FastMCP instance; serve it with ``run`` or ``http_app``
    """
    mcp = FastMCP(SERVER_TITLE)

    def base_url(request: Request) -> str:
        return (public_base_url or str(request.base_url)).rstrip("/")

    # === TRANSFER ROUTES ===
    @mcp.custom_route("/sessions", methods=["POST"])
    async def create_session(request: Request) -> Response:
        try:
            body = await _json_body(request)
            requested = body.get("shareCode") or None
            if requested is not None and not isinstance(requested, str):
                raise ValidationError("shareCode must be a string")
            session = await run_in_threadpool(engine.create_session, requested)
        except ShareError as e:
            return error_response(e)
        return JSONResponse(
            {
                "sessionId": session.id,
                "shareCode": session.share_code,
                "expiresAt": session.to_dict()["expiresAt"],
            },
            status_code=201,
        )

    @mcp.custom_route("/sessions/{share_code}", methods=["GET"])
    async def get_session(request: Request) -> Response:
        try:
            # The receive form upper-cases whatever the user typed
            code = normalize_share_code(request.path_params["share_code"])
            details = await run_in_threadpool(engine.get_session, code)
        except ShareError as e:
            return error_response(e)
        return JSONResponse(details.to_dict())

    @mcp.custom_route("/upload", methods=["POST"])
    async def upload(request: Request) -> Response:
        try:
            form = await request.form()
            try:
                upload_file = form.get("file")
                session_id = form.get("sessionId")
                if not isinstance(upload_file, UploadFile) or not upload_file.filename:
                    raise ValidationError("No file provided")
                if not isinstance(session_id, str) or not session_id.strip():
                    raise ValidationError("Session ID is required")
                if upload_file.size is not None:
                    engine.blob_store.check_size(upload_file.size)
                data = await upload_file.read()
            finally:
                await form.close()

            record = await run_in_threadpool(
                engine.add_file,
                session_id,
                data,
                upload_file.filename,
                upload_file.content_type,
            )
        except ShareError as e:
            return error_response(e)

        if status_path:
            log_system_status(
                f"{engine.metadata_store.backend.value}/{engine.blob_store.backend.value}",
                status_path,
            )
        return JSONResponse(record.to_dict(), status_code=201)

    @mcp.custom_route("/download/{file_id}", methods=["GET"])
    async def download_url(request: Request) -> Response:
        file_id = request.path_params["file_id"]
        fallback = f"{base_url(request)}/download/{file_id}/file"
        try:
            url = await run_in_threadpool(engine.download_url, file_id, fallback)
        except ShareError as e:
            return error_response(e)
        return JSONResponse({"downloadUrl": url})

    @mcp.custom_route("/download/{file_id}/file", methods=["GET"])
    async def download_file(request: Request) -> Response:
        try:
            handle = await run_in_threadpool(
                engine.resolve_download, request.path_params["file_id"]
            )
        except ShareError as e:
            return error_response(e)
        return StreamingResponse(
            handle.iter_chunks(),
            media_type=handle.mime_type,
            headers={
                "Content-Disposition": content_disposition(handle.original_filename),
                "Content-Length": str(handle.size),
            },
        )

    @mcp.custom_route("/files/{file_id}/download", methods=["POST"])
    async def record_download(request: Request) -> Response:
        try:
            await run_in_threadpool(engine.record_download, request.path_params["file_id"])
        except ShareError as e:
            return error_response(e)
        return JSONResponse({"success": True})

    @mcp.custom_route("/cleanup", methods=["POST"])
    async def cleanup(request: Request) -> Response:
        try:
            cleaned = await run_in_threadpool(engine.cleanup_expired)
        except ShareError as e:
            return error_response(e)
        return JSONResponse({"cleaned": cleaned})

    @mcp.custom_route("/health", methods=["GET"])
    async def health(request: Request) -> Response:
        report = await run_in_threadpool(engine.health)
        payload = report.to_dict()
        payload["sweeper"] = sweeper.status() if sweeper is not None else None
        return JSONResponse(payload, status_code=200 if report.status == "healthy" else 503)

    # === TOOLS ===
    @mcp.tool
    def create_share_session(share_code: str | None = None) -> dict[str, Any]:
        """Create an empty share session and return its id, share code and expiry.

        Args:
            share_code: Optional 8-character code from A-Z and 0-9; generated when omitted
        """
        try:
            session = engine.create_session(share_code or None)
        except ShareError as e:
            raise ToolError(e.message) from e
        return {
            "sessionId": session.id,
            "shareCode": session.share_code,
            "expiresAt": session.to_dict()["expiresAt"],
        }

    @mcp.tool
    def get_share_session(share_code: str) -> dict[str, Any]:
        """Look up a live share session and its files by share code."""
        try:
            return engine.get_session(normalize_share_code(share_code)).to_dict()
        except ShareError as e:
            raise ToolError(e.message) from e

    @mcp.tool
    def record_file_download(file_id: str) -> dict[str, Any]:
        """Count one download of a file against its session.

        Returns the new count, or null when the counter could not be updated.
        """
        try:
            count = engine.record_download(file_id)
        except ShareError as e:
            raise ToolError(e.message) from e
        return {"fileId": file_id, "downloadCount": count}

    @mcp.tool
    def cleanup_expired_sessions() -> dict[str, Any]:
        """Delete expired sessions with their files now instead of waiting for the sweeper."""
        try:
            return {"cleaned": engine.cleanup_expired()}
        except ShareError as e:
            raise ToolError(e.message) from e

    @mcp.tool
    def storage_health() -> dict[str, Any]:
        """Report backend identities, session count and sweeper status."""
        payload = engine.health().to_dict()
        payload["sweeper"] = sweeper.status() if sweeper is not None else None
        return payload

    return mcp


# === MAIN ENTRY POINT ===
def main():
    """Main entry point: load settings, start the sweeper and serve HTTP."""
    try:
        settings = load_settings()
        engine = build_engine(settings)
    except (ShareError, ValueError) as e:
        logger.critical(f"Refusing to start: {e}")
        raise SystemExit(1) from e

    sweeper = build_sweeper(settings, engine)
    status_path = str(settings.STORAGE_PATH) if settings.STORAGE_BACKEND is BlobBackend.LOCAL else "/"
    log_system_status(settings.backend_label, status_path)

    mcp = build_server(
        engine,
        sweeper,
        public_base_url=settings.PUBLIC_BASE_URL,
        status_path=status_path,
    )
    logger.info(f"Starting {SERVER_TITLE} on {settings.HOST}:{settings.PORT}")
    sweeper.start()
    try:
        mcp.run(transport="http", host=settings.HOST, port=settings.PORT)
    finally:
        sweeper.stop()
        engine.close()


if __name__ == "__main__":
    main()
