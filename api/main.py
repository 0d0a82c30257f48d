"""
api/main.py -- FastAPI application entry point for sanctum.

Exposes the Credential & Session Authority over HTTP: login, refresh
rotation, logout, token verification, password change and the
administrator read-outs (users, security events).

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. CORSMiddleware        -- adds CORS headers for allowed browser origins
  3. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter

Lifespan handles startup (authority + backends, maintenance task) and
shutdown (cancel maintenance task, close backends) symmetrically.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.v1.auth import router as auth_router
from auth.authority import Authority
from auth.errors import AuthError, StoreUnavailable
from core.config import get_settings

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sanctum.api")

# ---------------------------------------------------------------------------
# Background maintenance task
# ---------------------------------------------------------------------------


async def _maintenance_loop(app: FastAPI, interval: int) -> None:
    """Prune the audit log and purge expired refresh tokens every `interval` seconds.

    The work itself is blocking database I/O, so it runs in a worker thread
    via asyncio.to_thread. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly. A
    failed run is logged and retried on the next tick.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            result = await asyncio.to_thread(app.state.authority.run_maintenance)
        except StoreUnavailable:
            logger.exception("Maintenance run failed; retrying in %ds", interval)
            continue
        logger.info(
            "Maintenance: pruned %d event(s), purged %d refresh token(s)",
            result["events_pruned"],
            result["refresh_tokens_purged"],
        )


# ---------------------------------------------------------------------------
# Lifespan -- modern startup / shutdown pattern (replaces @app.on_event)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Everything before yield runs on startup; everything after yield runs on
    shutdown. The authority is the only owner of the credential store and the
    audit log; routes reach it through app.state.authority.
    """
    settings = get_settings()
    logger.info("sanctum API starting up")
    app.state.authority = Authority.from_settings(settings)
    if not app.state.authority.store.has_users():
        logger.warning("Credential store is empty. Provision users with: python main.py seed")
    app.state.maintenance_task = asyncio.create_task(
        _maintenance_loop(app, settings.maintenance_interval_seconds)
    )

    yield

    app.state.maintenance_task.cancel()
    app.state.authority.close()
    logger.info("sanctum API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------


def create_app(lifespan_handler=lifespan) -> FastAPI:
    """Build the application. Tests pass their own lifespan to inject backends."""
    settings = get_settings()
    application = FastAPI(
        title="sanctum",
        description="Credential & Session Authority: password login, JWT sessions, lockout and audit.",
        version=__version__,
        lifespan=lifespan_handler,
    )

    # -----------------------------------------------------------------------
    # Middleware stack
    #
    # Register in the order you want the request to encounter them:
    # TrustedHost -> CORS -> SlowAPI.
    # -----------------------------------------------------------------------

    application.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)
    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
        max_age=3600,
    )
    application.add_middleware(SlowAPIMiddleware)

    # SlowAPI looks for app.state.limiter by convention.
    application.state.limiter = limiter

    # -----------------------------------------------------------------------
    # Request logging and no-store headers
    #
    # Every /auth response carries or withholds a credential, so none of them
    # may be cached by browsers or intermediaries.
    # -----------------------------------------------------------------------

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        ms = (time.perf_counter() - start) * 1000
        if request.url.path.startswith("/api/v1/auth/"):
            response.headers["Cache-Control"] = "no-store"
            response.headers["Pragma"] = "no-cache"
        logger.info(
            "%s %s %d %.1fms %s",
            request.method,
            request.url.path,
            response.status_code,
            ms,
            request.client.host if request.client else "unknown",
        )
        return response

    application.include_router(auth_router, prefix="/api/v1", tags=["Auth"])
    _register_exception_handlers(application)

    @application.get("/api/v1/health", tags=["Health"])
    def health(request: Request) -> JSONResponse:
        """Return API liveness, version and credential store reachability.

        No rate limit -- health checks from load balancers must not be throttled.
        """
        reachable = request.app.state.authority.healthy()
        body = HealthResponse(
            status="healthy" if reachable else "degraded",
            version=__version__,
            components={"app": "ok", "database": "ok" if reachable else "error"},
        )
        return JSONResponse(status_code=200 if reachable else 503, content=body.model_dump())

    return application


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error(status_code: int, code: str, message: str, detail: str | None = None, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail, **extra)).model_dump(),
    )


def _register_exception_handlers(application: FastAPI) -> None:
    @application.exception_handler(AuthError)
    async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
        """Render any authentication/authorization failure with its own status and code.

        Only the client-safe message and extra fields are returned; the
        internal reason (e.g. which token check failed) stays in the audit log.
        """
        response = _error(exc.status_code, exc.code, exc.message, **exc.extra())
        for name, value in exc.headers().items():
            response.headers[name] = value
        return response

    @application.exception_handler(StoreUnavailable)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailable) -> JSONResponse:
        """Credential store connectivity loss is fatal for the request.

        Full detail goes to the server log only.
        """
        logger.error("Credential store unavailable on %s %s: %s", request.method, request.url.path, exc)
        return _error(500, "internal_error", "An unexpected error occurred.")

    @application.exception_handler(RateLimitExceeded)
    async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Return 429 with a structured error when a rate limit is exceeded.

        Retry-After tells clients how many seconds to wait before retrying.
        """
        retry_after = int(getattr(exc, "retry_after", 60))
        response = _error(429, "rate_limited", "Too many requests.", detail=str(exc.detail))
        response.headers["Retry-After"] = str(retry_after)
        return response

    @application.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Malformed request shape renders as 400 invalid_input."""
        fields = sorted({".".join(str(p) for p in err.get("loc", ())[1:]) for err in exc.errors()})
        return _error(400, "invalid_input", "Invalid input.", detail=", ".join(f for f in fields if f) or None)

    @application.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Structured error for framework-raised HTTP errors (404, 405, ...)."""
        response = _error(exc.status_code, f"http_{exc.status_code}", str(exc.detail))
        for name, value in (exc.headers or {}).items():
            response.headers[name] = value
        return response

    @application.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Catch-all handler for unexpected server errors.

        The raw exception is written to the server log only, never to the
        response body.
        """
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
        return _error(500, "internal_error", "An unexpected error occurred.")


app = create_app()
