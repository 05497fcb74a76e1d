"""
FastAPI Web Application for the Galarie media index

Endpoints:
  GET  /healthz                   - Liveness + cache summary
  GET  /api/v1/media              - Tag/attribute search (paginated)
  GET  /api/v1/media/{id}         - Single media record
  POST /api/v1/index/rebuild      - Trigger an index rebuild
  GET  /api/v1/index/status       - Rebuild coordinator status

Search query string:
  tags=sunset,coast               AND across tags
  attributes[rating]=5,4          OR within a key, AND across keys
  page=1&pageSize=60

Errors are always returned as ``{"error": {"code": ..., "message": ...}}``.
"""

import argparse
import asyncio
import re
import time
from contextlib import asynccontextmanager
from typing import Dict, List, Optional

import uvicorn
from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import AppConfig
from .errors import GalarieError, InvalidQuery, MediaNotFound
from .logging_setup import configure_logging
from .rebuild import RebuildCoordinator
from .search import DEFAULT_PAGE_SIZE, build_filter, search
from .snapshot_store import SnapshotStore

_ATTRIBUTE_PARAM = re.compile(r"^attributes\[(?P<key>[^\]]+)\]$")

_HTTP_CODES = {
    400: "VALIDATION_FAILED",
    404: "RESOURCE_NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    503: "SERVICE_UNAVAILABLE",
}


def error_envelope(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse({"error": {"code": code, "message": message}}, status_code=status_code)


# ---------------------------------------------------------------------------
# Query-string parsing
# ---------------------------------------------------------------------------

def parse_tags(raw: Optional[str]) -> List[str]:
    """Split ``tags=a,b``. An explicitly empty list is rejected."""
    if raw is None:
        return []
    tags = [t.strip().lower() for t in raw.split(",") if t.strip()]
    if not tags:
        raise InvalidQuery("tags query parameter must contain at least one value")
    return tags


def parse_attributes(items: List[tuple]) -> Dict[str, List[str]]:
    """Collect every ``attributes[key]=v1,v2`` pair; repeated keys are merged."""
    attributes: Dict[str, List[str]] = {}
    for name, value in items:
        match = _ATTRIBUTE_PARAM.match(name)
        if not match:
            continue
        values = attributes.setdefault(match.group("key").strip().lower(), [])
        values.extend(v.strip().lower() for v in value.split(",") if v.strip())
    return attributes


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class RebuildRequest(BaseModel):
    force: bool = False
    wait: bool = False


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    config: AppConfig,
    coordinator: Optional[RebuildCoordinator] = None,
    initialize: bool = True,
) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        config:      Validated configuration.
        coordinator: Pre-built coordinator (tests); one is created from
                     ``config`` when omitted.
        initialize:  Load the cache / walk the root during startup.
    """
    if coordinator is None:
        coordinator = RebuildCoordinator(
            media_root=config.media_root,
            store=SnapshotStore(config.cache_dir),
            max_age_seconds=config.cache_ttl_seconds,
        )

    @asynccontextmanager
    async def lifespan(app_instance: FastAPI):
        # Startup
        if initialize:
            loop = asyncio.get_running_loop()
            snapshot = await loop.run_in_executor(None, coordinator.initialize)
            logger.info(f"Galarie ready. {len(snapshot)} media records published.")

        yield

        # Shutdown
        coordinator.shutdown()

    app = FastAPI(title="Galarie", lifespan=lifespan)
    app.state.config = config
    app.state.coordinator = coordinator
    app.state.boot_time = time.monotonic()

    if config.cors_allowed_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_allowed_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        )

    _register_error_handlers(app)
    _register_routes(app, config, coordinator)
    return app


def _register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(GalarieError)
    async def galarie_error(request: Request, exc: GalarieError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.code} {exc.message}")
        else:
            logger.warning(f"{request.method} {request.url.path} rejected: {exc.code} {exc.message}")
        return error_envelope(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
            for err in exc.errors()
        )
        return error_envelope(400, "VALIDATION_FAILED", details or "invalid request")

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        code = _HTTP_CODES.get(exc.status_code, "INTERNAL_SERVER_ERROR")
        message = exc.detail if isinstance(exc.detail, str) else "request failed"
        if exc.status_code == 404 and message == "Not Found":
            message = "route not found"
        return error_envelope(exc.status_code, code, message)

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception):
        logger.opt(exception=exc).error(f"Unhandled error on {request.method} {request.url.path}")
        return error_envelope(500, "INTERNAL_SERVER_ERROR", "internal server error")


def _register_routes(app: FastAPI, config: AppConfig, coordinator: RebuildCoordinator) -> None:

    @app.get("/healthz")
    async def healthz():
        snapshot = coordinator.current()
        return {
            "status": "ok",
            "environment": config.environment,
            "mediaRoot": str(config.media_root),
            "cacheDir": str(config.cache_dir),
            "uptimeSeconds": time.monotonic() - app.state.boot_time,
            "cacheItems": len(snapshot),
            "cacheGeneratedAt": snapshot.generated_at.isoformat(),
        }

    @app.get("/api/v1/media")
    def media_search(
        request: Request,
        tags: Optional[str] = None,
        page: int = 1,
        page_size: int = Query(DEFAULT_PAGE_SIZE, alias="pageSize"),
    ):
        """Search the published snapshot. Runs in the threadpool; never waits on a rebuild."""
        tag_filter = build_filter(
            tags=parse_tags(tags),
            attributes=parse_attributes(request.query_params.multi_items()),
            page=page,
            page_size=page_size,
        )
        result = search(tag_filter, coordinator.current())
        return JSONResponse(result.to_wire())

    @app.get("/api/v1/media/{media_id}")
    async def media_detail(media_id: str):
        media = coordinator.current().get(media_id)
        if media is None:
            raise MediaNotFound("media not found")
        return JSONResponse(media.to_wire())

    @app.post("/api/v1/index/rebuild")
    def index_rebuild(body: Optional[RebuildRequest] = None):
        """Queue a rebuild (202), or run it to completion when ``wait`` is set (200)."""
        body = body or RebuildRequest()
        if body.wait:
            status = coordinator.rebuild(force=body.force)
            return JSONResponse(status.to_wire(), status_code=200)
        status = coordinator.start_rebuild(force=body.force)
        return JSONResponse(status.to_wire(), status_code=202)

    @app.get("/api/v1/index/status")
    async def index_status():
        return coordinator.status()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Filesystem-backed media tag search API")
    parser.add_argument("--media-root", default=None, help="Root directory containing tagged media files")
    parser.add_argument("--cache-dir", default=None, help="Directory for the index cache")
    parser.add_argument("--host", default=None)
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    config = AppConfig.from_env(
        media_root=args.media_root,
        cache_dir=args.cache_dir,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    ).validate_paths()
    configure_logging(config.log_level)

    logger.info(
        f"Starting Galarie [{config.environment}] on {config.host}:{config.port} "
        f"(media root {config.media_root})"
    )
    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
