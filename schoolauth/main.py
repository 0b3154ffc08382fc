"""FastAPI application entrypoint, error rendering and health reporting.

Invariants:
- Every ``AuthError`` is rendered as ``{"detail", "code"}`` with its own status.
- A stale refresh that knows the winning pair hands it back in headers.
- A pair rotated during the request reaches the client on every response status.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from schoolauth.api.deps import NEW_ACCESS_TOKEN_HEADER, NEW_REFRESH_TOKEN_HEADER
from schoolauth.api.router import api_router
from schoolauth.core.config import settings
from schoolauth.core.errors import AuthError, RefreshTokenStale
from schoolauth.jobs.schedule_registry import ensure_schedules
from schoolauth.services.session_registry import SessionRegistry
from schoolauth.services.task_queue import task_queue

LOG_FORMAT = "%(asctime)s %(name)s [%(levelname)s] %(message)s"

logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
logger = logging.getLogger("schoolauth.main")

app = FastAPI(title=settings.app_name)
app.state.session_registry = SessionRegistry.from_settings(settings)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[NEW_ACCESS_TOKEN_HEADER, NEW_REFRESH_TOKEN_HEADER],
)
app.include_router(api_router, prefix=settings.api_prefix)


@app.middleware("http")
async def _attach_rotated_tokens(request: Request, call_next):
    """Deliver a courtesy-rotated pair even when the route itself failed."""
    response = await call_next(request)
    tokens = getattr(request.state, "rotated_tokens", None)
    if tokens is not None and NEW_ACCESS_TOKEN_HEADER not in response.headers:
        response.headers[NEW_ACCESS_TOKEN_HEADER] = tokens.access_token
        response.headers[NEW_REFRESH_TOKEN_HEADER] = tokens.refresh_token
    return response


@app.exception_handler(AuthError)
async def _auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    headers: dict[str, str] = {}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = "Bearer"
    if isinstance(exc, RefreshTokenStale) and exc.replacement is not None:
        headers[NEW_ACCESS_TOKEN_HEADER] = exc.replacement.access_token
        headers[NEW_REFRESH_TOKEN_HEADER] = exc.replacement.refresh_token
    if exc.code in {"reused", "revoked"}:
        logger.warning("%s %s rejected: %s", request.method, request.url.path, exc.code)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "code": exc.code},
        headers=headers,
    )


@app.on_event("startup")
async def _register_schedules() -> None:
    """Register scheduled jobs on startup."""
    ensure_schedules()


@app.get("/health", tags=["internal"])
@app.get(f"{settings.api_prefix}/health", tags=["internal"])
async def health() -> dict[str, Any]:
    """Return liveness plus whether background jobs run on a worker or inline."""
    return {
        "status": "ok",
        "environment": settings.environment,
        "queue": "online" if task_queue.enabled else "inline",
    }
