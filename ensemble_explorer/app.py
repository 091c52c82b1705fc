#!/usr/bin/env python3
"""Ensemble Explorer FastAPI backend: multi-panel viewer over Zarr ensemble stores."""

import os
import time
import uuid
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import EmbedConfig
from .constants import CHUNK_CACHE_MAX_ITEMS
from .errors import (
    DecodeFailure,
    DiscoveryFailure,
    ExplorerError,
    InvalidRequest,
    NotInitialized,
    PanelNotFound,
)
from .logging_config import setup_logging
from .routers.core import build_core_router
from .routers.panels import build_panels_router
from .services.data_loader import ChunkCache
from .services.viewer_state import ViewerStateMachine

logger = setup_logging("ensemble_explorer")

ERROR_STATUS = (
    (PanelNotFound, 404),
    (InvalidRequest, 400),
    (NotInitialized, 409),
    (DiscoveryFailure, 502),
    (DecodeFailure, 502),
)


def status_for_error(exc: ExplorerError) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 500


def create_app(
    viewer: Optional[ViewerStateMachine] = None,
    initial_config: Optional[EmbedConfig] = None,
) -> FastAPI:
    if viewer is None:
        viewer = ViewerStateMachine(chunk_cache=ChunkCache(CHUNK_CACHE_MAX_ITEMS))
    elif viewer.chunk_cache is None:
        viewer.chunk_cache = ChunkCache(CHUNK_CACHE_MAX_ITEMS)
    chunk_cache = viewer.chunk_cache

    app = FastAPI(title="Ensemble Explorer API")
    app.state.viewer = viewer
    api_error_counters = {"4xx": 0, "5xx": 0}
    app.state.api_error_counters = api_error_counters

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        rid = getattr(request.state, "request_id", None) or uuid.uuid4().hex[:12]
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "requestId": rid}, headers={"X-Request-Id": rid})

    @app.exception_handler(ExplorerError)
    async def explorer_error_handler(request: Request, exc: ExplorerError):
        rid = getattr(request.state, "request_id", None) or uuid.uuid4().hex[:12]
        status = status_for_error(exc)
        if status >= 500:
            logger.error(f"{exc.__class__.__name__} rid={rid}: {exc}")
        return JSONResponse(status_code=status, content={"detail": str(exc), "requestId": rid}, headers={"X-Request-Id": rid})

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        rid = getattr(request.state, "request_id", None) or uuid.uuid4().hex[:12]
        logger.exception(f"Unhandled error rid={rid}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error", "requestId": rid}, headers={"X-Request-Id": rid})

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log API requests with method, path, and response time."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        request.state.request_id = request_id

        response = await call_next(request)

        duration_ms = (time.time() - start_time) * 1000
        response.headers["X-Request-Id"] = request_id

        if 400 <= response.status_code < 500:
            api_error_counters["4xx"] += 1
        elif response.status_code >= 500:
            api_error_counters["5xx"] += 1

        # Skip routine polling endpoints
        skip_paths = ["/api/health", "/api/state", "/api/value"]
        if request.url.path not in skip_paths or response.status_code >= 400:
            logger.info(
                f"{request.method} {request.url.path} - {response.status_code} - {duration_ms:.2f}ms - rid={request_id}"
            )

        return response

    @app.on_event("startup")
    async def startup_event():
        logger.info("Ensemble Explorer API server starting")
        logger.info(f"Chunk cache capacity: {chunk_cache.max_items}")
        if initial_config is not None:
            logger.info(f"Store: {initial_config.store_url} (ref {initial_config.store_ref})")
            try:
                await viewer.initialize(initial_config)
            except DiscoveryFailure as e:
                # Surfaced via /api/health; POST /api/initialize can retry
                logger.error(f"Initial discovery failed: {e}")

    @app.on_event("shutdown")
    async def shutdown_event():
        viewer.cancel_pending_reload()

    app.include_router(build_core_router(get_viewer=lambda: app.state.viewer, chunk_cache=chunk_cache))
    app.include_router(build_panels_router(get_viewer=lambda: app.state.viewer))
    return app


def _initial_config_from_env() -> Optional[EmbedConfig]:
    if not os.environ.get("EXPLORER_STORE_URL"):
        return None
    return EmbedConfig.from_env()


app = create_app(initial_config=_initial_config_from_env())


def main():
    import uvicorn

    host = os.environ.get("EXPLORER_HOST", "0.0.0.0")
    port = int(os.environ.get("EXPLORER_PORT", "8502"))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
