"""
vodpack HTTP API.

Routes under the video prefix (default /api/videos):
    POST   /upload                 upload and process a video
    GET    /                       list assets, newest first
    GET    /{asset_id}             asset details
    DELETE /{asset_id}             delete an asset and its files
    GET    /stream/{asset_id}/...  HLS playlists and segments

Plus /health and /metrics at the root.
"""

import hmac
import logging
import re
from contextlib import asynccontextmanager
from typing import Optional

from databases import Database
from fastapi import APIRouter, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded

from api.catalog import CatalogStore, VideoAsset
from api.common import (
    RequestIDMiddleware,
    SecurityHeadersMiddleware,
    check_health,
    get_real_ip,
    rate_limit_exceeded_handler,
)
from api.database import create_tables
from api.database import database as default_database
from api.enums import AssetStatus
from api.errors import FileTooLargeError, NotFoundError, PipelineError, public_error_message
from api.metrics import get_metrics, init_app_info
from api.schemas import (
    DeleteResponse,
    RenditionResponse,
    UploadResponse,
    VideoDetailResponse,
    VideoListResponse,
    VideoResponse,
)
from config import (
    API_PORT,
    API_SECRET,
    CORS_ALLOWED_ORIGINS,
    LOG_LEVEL,
    RATE_LIMIT_DEFAULT,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URL,
    RATE_LIMIT_UPLOAD,
    PipelineConfig,
    load_pipeline_config,
)
from pipeline.receiver import UploadReceiver, check_content_length

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security.api_auth")

APP_VERSION = "0.1.0"

# Asset ids are uuid4 hex strings
ASSET_ID_PATTERN = re.compile(r"^[0-9a-f]{32}$")

limiter = Limiter(
    key_func=get_real_ip,
    storage_uri=RATE_LIMIT_STORAGE_URL if RATE_LIMIT_ENABLED else None,
    enabled=RATE_LIMIT_ENABLED,
)

router = APIRouter()


def configure_logging(level: str = LOG_LEVEL) -> None:
    """Configure root logging for the API server process."""
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class ApiAuthMiddleware:
    """
    Require a shared secret for mutating API requests.

    When a secret is configured, POST and DELETE requests under /api must
    carry a matching X-API-Secret header: 401 if it is missing, 403 if it is
    wrong. Reads and streaming stay open. With no secret configured every
    request is allowed.
    """

    PROTECTED_METHODS = ("POST", "DELETE")

    def __init__(self, app, secret: str = ""):
        self.app = app
        self.secret = secret

    async def __call__(self, scope, receive, send):
        if (
            scope["type"] != "http"
            or not self.secret
            or scope.get("method", "") not in self.PROTECTED_METHODS
            or not scope.get("path", "").startswith("/api")
        ):
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        client = scope.get("client")
        client_ip = client[0] if client else "unknown"
        headers = dict(scope.get("headers", []))
        provided = headers.get(b"x-api-secret", b"").decode("utf-8", errors="ignore")

        if not provided:
            security_logger.warning(
                "API auth failed: no credentials",
                extra={"event": "auth_failure", "reason": "no_credentials", "path": path, "client_ip": client_ip},
            )
            response = JSONResponse(status_code=401, content={"success": False, "error": "Authentication required"})
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(provided, self.secret):
            security_logger.warning(
                "API auth failed: invalid secret header",
                extra={"event": "auth_failure", "reason": "invalid_secret", "path": path, "client_ip": client_ip},
            )
            response = JSONResponse(status_code=403, content={"success": False, "error": "Invalid API secret"})
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


class UploadSizeLimitMiddleware:
    """Reject uploads whose Content-Length is far past the limit, before the body is read."""

    def __init__(self, app, upload_path: str, max_size: int):
        self.app = app
        self.upload_path = upload_path
        self.max_size = max_size

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http" and scope.get("method") == "POST" and scope.get("path") == self.upload_path:
            headers = dict(scope.get("headers", []))
            content_length = headers.get(b"content-length", b"").decode("latin-1")
            try:
                check_content_length(content_length, self.max_size)
            except FileTooLargeError as e:
                response = JSONResponse(status_code=413, content={"success": False, "error": str(e)})
                await response(scope, receive, send)
                return
        await self.app(scope, receive, send)


class StreamingStaticFiles(StaticFiles):
    """
    Static files handler for HLS output.

    Only assets present in the catalog are served, so partial output of an
    in-flight upload and orphaned directories stay hidden. Playlists are never
    cached; segments are immutable once written.
    """

    def __init__(self, *args, catalog: CatalogStore, **kwargs):
        super().__init__(*args, **kwargs)
        self.catalog = catalog

    async def get_response(self, path: str, scope) -> Response:
        asset_id = path.replace("\\", "/").split("/", 1)[0]
        if not ASSET_ID_PATTERN.match(asset_id):
            raise HTTPException(status_code=404)
        try:
            await self.catalog.get(asset_id)
        except NotFoundError:
            raise HTTPException(status_code=404)

        try:
            response = await super().get_response(path, scope)
        except (OSError, PermissionError) as e:
            logger.warning(f"Storage unavailable for streaming file {path}: {e}")
            return JSONResponse(
                status_code=503,
                content={"success": False, "error": "Video storage temporarily unavailable. Please try again later."},
                headers={"Retry-After": "30"},
            )

        # Cross-origin playback from players hosted elsewhere
        response.headers["Access-Control-Allow-Origin"] = "*"

        if path.endswith(".m3u8"):
            response.headers["Content-Type"] = "application/vnd.apple.mpegurl"
            response.headers["Cache-Control"] = "no-cache"
        elif path.endswith(".ts"):
            response.headers["Content-Type"] = "video/mp2t"
            response.headers["Cache-Control"] = "public, max-age=31536000, immutable"
        else:
            response.headers["Cache-Control"] = "public, max-age=31536000"
        return response


def asset_to_response(asset: VideoAsset, receiver: UploadReceiver) -> VideoResponse:
    return VideoResponse(
        id=asset.id,
        title=asset.title,
        description=asset.description,
        original_filename=asset.original_filename,
        size_bytes=asset.size_bytes,
        mime_type=asset.mime_type,
        duration=asset.duration,
        status=asset.status.value,
        source_path=asset.source_path,
        created_at=asset.created_at,
        renditions=[
            RenditionResponse(
                label=r.label,
                video_bitrate=r.video_bitrate,
                audio_bitrate=r.audio_bitrate,
                playlist_path=r.playlist_path,
            )
            for r in asset.renditions
        ],
        hls_playlist=receiver.master_playlist_url(asset.id) if asset.status == AssetStatus.READY else None,
        stream_url=receiver.stream_base_url(asset.id),
    )


def _validated_asset_id(asset_id: str) -> str:
    if not ASSET_ID_PATTERN.match(asset_id):
        raise NotFoundError(asset_id)
    return asset_id


@router.post("/upload", status_code=201, response_model=UploadResponse)
@limiter.limit(RATE_LIMIT_UPLOAD)
async def upload_video(
    request: Request,
    video: Optional[UploadFile] = File(None),
    title: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
):
    """Upload a video, transcode it to HLS and add it to the catalog."""
    receiver: UploadReceiver = request.app.state.receiver
    result = await receiver.receive(
        video,
        title=title,
        description=description,
        content_length=request.headers.get("content-length"),
    )
    if result.asset.status == AssetStatus.UNPROCESSED:
        message = "Video stored without processing (encoder unavailable)"
    else:
        message = "Video uploaded and processed successfully"
    return UploadResponse(message=message, video=asset_to_response(result.asset, receiver))


@router.get("", response_model=VideoListResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def list_videos(request: Request):
    """List all assets, newest first."""
    receiver: UploadReceiver = request.app.state.receiver
    assets = await request.app.state.catalog.list()
    return VideoListResponse(count=len(assets), videos=[asset_to_response(a, receiver) for a in assets])


@router.get("/{asset_id}", response_model=VideoDetailResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def get_video(request: Request, asset_id: str):
    """Get one asset."""
    asset = await request.app.state.catalog.get(_validated_asset_id(asset_id))
    return VideoDetailResponse(video=asset_to_response(asset, request.app.state.receiver))


@router.delete("/{asset_id}", response_model=DeleteResponse)
@limiter.limit(RATE_LIMIT_DEFAULT)
async def delete_video(request: Request, asset_id: str):
    """Delete an asset record and all of its files."""
    await request.app.state.catalog.delete(_validated_asset_id(asset_id))
    return DeleteResponse(message="Video deleted successfully")


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Map pipeline errors to their status code with a sanitized message."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {type(exc).__name__}: {exc}")
    headers = {"Retry-After": "30"} if exc.status_code == 503 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": public_error_message(exc)},
        headers=headers,
    )


def create_app(
    config: Optional[PipelineConfig] = None,
    database: Optional[Database] = None,
    api_secret: str = API_SECRET,
) -> FastAPI:
    """
    Build the API application.

    Args:
        config: Pipeline settings (defaults to the environment)
        database: Catalog database (defaults to the shared api.database instance)
        api_secret: Shared secret for mutating requests; empty disables the check
    """
    config = config or load_pipeline_config()
    database = database or default_database

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown."""
        if RATE_LIMIT_ENABLED and RATE_LIMIT_STORAGE_URL == "memory://":
            logger.warning(
                "Rate limiting is using in-memory storage. "
                "For deployments with multiple instances, configure "
                "VODPACK_RATE_LIMIT_STORAGE_URL=redis://localhost:6379"
            )
        for directory in (config.uploads_dir, config.temp_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.warning(f"Could not create {directory}: {e}")
        create_tables(str(database.url))
        await database.connect()
        init_app_info(APP_VERSION)
        yield
        await database.disconnect()

    app = FastAPI(title="vodpack", description="Video upload and HLS packaging API", lifespan=lifespan)

    catalog = CatalogStore(database, config.uploads_dir)
    app.state.config = config
    app.state.database = database
    app.state.catalog = catalog
    app.state.receiver = UploadReceiver(config, catalog)

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(
        UploadSizeLimitMiddleware,
        upload_path=f"{config.url_prefix}/upload",
        max_size=config.max_upload_size,
    )
    app.add_middleware(ApiAuthMiddleware, secret=api_secret)

    # If CORS_ALLOWED_ORIGINS is empty, allow same-origin only (no CORS headers)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ALLOWED_ORIGINS,
        allow_credentials=bool(CORS_ALLOWED_ORIGINS),
        allow_methods=["GET", "HEAD", "OPTIONS", "POST", "DELETE"],
        allow_headers=["Content-Type", "X-API-Secret", "X-Request-ID"],
        expose_headers=["Content-Length", "Content-Range", "Accept-Ranges", "X-Request-ID"],
    )

    app.mount(
        f"{config.url_prefix}/stream",
        StreamingStaticFiles(directory=str(config.uploads_dir), check_dir=False, catalog=catalog),
        name="stream",
    )
    app.include_router(router, prefix=config.url_prefix)

    @app.get("/health")
    async def health_check():
        """
        Health check endpoint for monitoring and load balancers.

        Returns 503 if the database or storage is unhealthy, or if the encoder
        is missing and the unprocessed fallback is disabled.
        """
        result = await check_health(database, config)
        return JSONResponse(
            status_code=result["status_code"],
            content={
                "status": "healthy" if result["healthy"] else "unhealthy",
                "checks": result["checks"],
            },
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics in text exposition format."""
        return Response(content=get_metrics(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=API_PORT)
