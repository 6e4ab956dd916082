"""
HTTP plumbing shared by the API app: client IP resolution, request IDs,
security headers, rate-limit responses and health checks.
"""

import asyncio
import logging
import shutil
import uuid
from pathlib import Path

from databases import Database
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from config import STORAGE_CHECK_TIMEOUT, TRUSTED_PROXIES, PipelineConfig

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, respecting X-Forwarded-For header only from trusted proxies.

    X-Forwarded-For is only trusted when the direct client IP is in TRUSTED_PROXIES,
    so clients cannot spoof the header to dodge rate limiting.
    """
    client_ip = get_remote_address(request)

    if TRUSTED_PROXIES and client_ip in TRUSTED_PROXIES:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            # client, proxy1, proxy2, ... - the first one is the original client
            return forwarded.split(",")[0].strip()

    return client_ip


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate X-Request-ID from the client, or generate one, and echo it on the response."""

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "SAMEORIGIN"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        return response


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors with a proper JSON response."""
    return JSONResponse(
        status_code=429,
        content={
            "success": False,
            "error": f"Rate limit exceeded: {exc.detail}",
        },
    )


def _check_storage_sync(uploads_dir: Path, temp_dir: Path) -> bool:
    """
    Verify the storage directories exist and are writable.

    Runs in a thread pool; a write test catches read-only mounts and full disks.
    """
    try:
        if not uploads_dir.exists() or not temp_dir.exists():
            return False

        test_file = temp_dir / f".health_check_{uuid.uuid4().hex}"
        test_file.write_text("health check")
        test_file.unlink()
        return True
    except OSError:
        return False


async def check_health(database: Database, config: PipelineConfig) -> dict:
    """
    Perform health checks for database, storage and the encoder.

    Returns a dict with:
        - checks: dict of individual check results
        - healthy: bool indicating overall health
        - status_code: HTTP status code (200 if healthy, 503 if not)
    """
    checks = {
        "database": False,
        "storage": False,
        "encoder": shutil.which(config.ffmpeg_path) is not None,
    }

    try:
        await database.fetch_one("SELECT 1")
        checks["database"] = True
    except Exception as e:
        logger.warning(f"Database health check failed: {e}")

    # Bounded so a stale network mount cannot hang the health check
    try:
        loop = asyncio.get_running_loop()
        checks["storage"] = await asyncio.wait_for(
            loop.run_in_executor(None, _check_storage_sync, config.uploads_dir, config.temp_dir),
            timeout=STORAGE_CHECK_TIMEOUT,
        )
    except asyncio.TimeoutError:
        logger.warning("Storage health check timed out - possible stale mount")
    except Exception as e:
        logger.warning(f"Storage health check failed: {e}")

    # A missing encoder degrades uploads to the unprocessed fallback
    critical = ("database", "storage") if config.encoder_fallback else ("database", "storage", "encoder")
    healthy = all(checks[name] for name in critical)

    return {
        "checks": checks,
        "healthy": healthy,
        "status_code": 200 if healthy else 503,
    }
