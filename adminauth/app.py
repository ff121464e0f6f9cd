from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request

from adminauth.api.error_handling import register_exception_handlers
from adminauth.api.routes import router
from adminauth.logging import get_logger, set_request_id

logger = get_logger(__name__)

__version__ = "0.1.0"

_BASELINE_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

# token-bearing responses must never land in a shared cache
_NO_STORE = "no-store, no-cache, must-revalidate, private"


def _runtime():
    from adminauth.service.runtime import get_runtime

    return get_runtime()


@asynccontextmanager
async def lifespan(application: FastAPI):
    runtime = _runtime()
    logger.info(
        "admin_auth_started",
        version=__version__,
        cache_backend=type(runtime.cache).__name__,
    )
    try:
        yield
    finally:
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("admin_auth_shutdown_failed", error=str(exc))
        else:
            logger.info("admin_auth_stopped")


async def stamp_response(request: Request, call_next):
    """Tag the request for log correlation and harden the response headers.

    A client-supplied ``X-Request-ID`` is reused so callers can follow one
    request across services; otherwise a fresh id is generated.
    """
    request_id = set_request_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    for name, value in _BASELINE_HEADERS.items():
        response.headers.setdefault(name, value)
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", _NO_STORE)
    return response


async def healthz() -> Dict[str, Any]:
    return {
        "status": "ok",
        "version": __version__,
        "cache_backend": type(_runtime().cache).__name__,
    }


def create_app() -> FastAPI:
    application = FastAPI(
        title="Avigate Admin Auth", version=__version__, lifespan=lifespan
    )
    application.middleware("http")(stamp_response)
    register_exception_handlers(application)
    application.include_router(router)
    application.add_api_route("/healthz", healthz, methods=["GET"], tags=["health"])
    return application


app = create_app()
