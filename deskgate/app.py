from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from deskgate.api.error_handling import register_exception_handlers
from deskgate.api.routes import router
from deskgate.config import Settings
from deskgate.logging import get_logger, sanitize_error_message, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so misconfiguration fails fast; close storage on shutdown."""
    from deskgate.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", store_type=type(runtime.store).__name__)

    yield

    try:
        await get_runtime().store.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=sanitize_error_message(str(exc)))


app = FastAPI(title="deskgate", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts only; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its X-Request-ID (generated when absent)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Session tokens travel in these bodies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health():
    """Report storage reachability; 503 when the store does not answer in time."""
    from deskgate.service.runtime import get_runtime

    runtime = get_runtime()
    storage_ok = False
    try:
        storage_ok = await asyncio.wait_for(
            runtime.store.ping(), HEALTH_CHECK_TIMEOUT_SECONDS
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="storage")
    except Exception as exc:
        logger.error("health_check_storage_failed", error=sanitize_error_message(str(exc)))

    body = {
        "status": "healthy" if storage_ok else "unhealthy",
        "version": __version__,
        "checks": {
            "storage": {
                "status": "ok" if storage_ok else "error",
                "type": type(runtime.store).__name__,
            }
        },
    }
    return JSONResponse(status_code=200 if storage_ok else 503, content=body)


def create_app() -> FastAPI:
    return app
