from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from rbac_admin.api.error_handling import register_exception_handlers
from rbac_admin.api.routes import current_runtime, router
from rbac_admin.config import Settings
from rbac_admin.logging import get_logger, set_correlation_id
from rbac_admin.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


def _allowed_origins(settings: Settings) -> List[str]:
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime or get_runtime()
    await runtime.start()
    logger.info("app_started", version=__version__, store_type=runtime.store.kind)
    try:
        yield
    finally:
        try:
            await runtime.close()
            logger.info("runtime_cleanup_complete")
        except Exception as exc:
            logger.error("shutdown_failed", error_type=type(exc).__name__, error=str(exc))


def create_app(
    runtime: Optional[Runtime] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the HTTP application.

    Without an explicit ``runtime`` requests resolve the process runtime on
    each call, so tests can swap it with ``reset_runtime_for_tests``.
    """
    settings = settings or (runtime.settings if runtime else Settings.from_env())
    app = FastAPI(title="RBAC Admin", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID", "API-Version"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Echo or mint an ``X-Request-ID`` and bind it to the log context."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("API-Version", __version__)
        if request.url.path.startswith("/v1/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz", tags=["health"])
    async def health(request: Request) -> Dict[str, Any]:
        active = current_runtime(request)
        return {"status": "ok", "store": active.store.kind, "version": __version__}

    return app


app = create_app()
