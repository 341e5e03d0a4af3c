"""
Main FastAPI application entry point.
Responsibilities: App setup, router registration, error rendering,
startup/shutdown hooks.
"""
import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse

from .config import Settings, get_settings
from .errors import CogniVaultError
from .logging_config import logger, setup_logging
from .routes import dashboard, graph, incognito, timeline, upload
from .runtime import Runtime, build_runtime
from .schemas import ErrorResponse
from .utils.helpers import isoformat, utcnow


def _error_body(error: str, code: str, detail: Optional[str] = None) -> dict:
    return ErrorResponse(
        error=error,
        code=code,
        detail=detail,
        timestamp=isoformat(utcnow()),
    ).model_dump()


def create_app(settings: Optional[Settings] = None, runtime: Optional[Runtime] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Defaults to the environment settings
        runtime: A prebuilt runtime (tests); built on startup when omitted
    """
    settings = settings or (runtime.settings if runtime else get_settings())
    setup_logging(settings.log_level, settings.log_json, settings.environment)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if getattr(app.state, "runtime", None) is None:
            app.state.runtime = build_runtime(settings)
        rt: Runtime = app.state.runtime
        try:
            logger.info("Preloading embedding model...", provider=rt.embeddings.name)
            await asyncio.to_thread(rt.embeddings.warm_up)
            logger.info("Embedding model ready")
        except Exception as e:
            logger.error("Startup initialization error", exc_info=e)
            # Continue anyway: the fallback embeddings keep the app usable
        yield
        logger.info("Application shutting down")
        await rt.close()

    app = FastAPI(title="CogniVault", version="1.0.0", lifespan=lifespan)
    app.state.runtime = runtime

    # ==================== Middleware ====================

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()
        response = await call_next(request)
        duration_ms = round((time.perf_counter() - start) * 1000, 2)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time-Ms"] = f"{duration_ms:.2f}"
        logger.info(
            "request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=duration_ms,
        )
        return response

    # ==================== Error handlers ====================

    @app.exception_handler(CogniVaultError)
    async def domain_error_handler(_request: Request, exc: CogniVaultError):
        if exc.status_code >= 500:
            logger.error("Request failed", code=exc.code, error=exc.message, detail=exc.detail)
        else:
            logger.info("Request rejected", code=exc.code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=_error_body(exc.message, exc.code, exc.detail))

    @app.exception_handler(HTTPException)
    async def http_error_handler(_request: Request, exc: HTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(str(exc.detail), f"HTTP_{exc.status_code}"),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(_request: Request, exc: Exception):
        logger.error("Unhandled exception", exc_info=exc)
        detail = str(exc) if settings.environment != "production" else None
        return JSONResponse(status_code=500, content=_error_body("Internal server error", "INTERNAL_ERROR", detail))

    # ==================== Routes ====================

    app.include_router(upload.router)
    app.include_router(graph.router)
    app.include_router(timeline.router)
    app.include_router(dashboard.router)
    app.include_router(incognito.router)

    @app.get("/health")
    async def health(request: Request):
        """Store reachability for the configured backend. No auth required."""
        rt: Runtime = request.app.state.runtime
        stores = await asyncio.to_thread(rt.ping)
        healthy = all(status == "ok" for status in stores.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={
                "status": "healthy" if healthy else "degraded",
                "store_backend": rt.settings.store_backend,
                "llm_provider": rt.llm.name,
                "embedding_provider": rt.embeddings.name,
                "stores": stores,
            },
        )

    return app


app = create_app()
