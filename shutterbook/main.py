"""
Shutterbook Notifications — FastAPI Application Factory
=========================================================

What:  Creates and configures the FastAPI application instance.
How:   create_app() assembles middleware, exception handlers and routers;
       lifespan() owns the change feed and the stream session registry.
Who:   uvicorn (`uvicorn shutterbook.main:app`).

Application Architecture:
    ┌───────────────────────────────────────────────────────────┐
    │                       FastAPI App                         │
    │                                                           │
    │  Middleware:  Rate Limit → Request ID → Logging → CORS    │
    │                                                           │
    │  Routes:      /api/notifications/*   /api/.../stream      │
    │               /health                                     │
    │                                                           │
    │  app.state:   change_feed ──subscribe──◄ StreamSession    │
    │               session_registry ◄─register─┘               │
    └───────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:
    1. Configure logging
    2. Validate configuration (logged, does not block boot)
    3. Build and start the change feed for CHANGE_FEED_BACKEND
    4. Create the session registry; expose both on app.state

    Shutdown (order matters):
    1. registry.shutdown_all()  → every stream closed, subscriptions released
    2. feed.stop()              → LISTEN connection closed
    3. dispose_engine()         → pool connections closed
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional, Tuple

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from shutterbook import __version__
from shutterbook.config import settings
from shutterbook.database import dispose_engine
from shutterbook.exceptions import (
    AuthenticationError,
    ChangeFeedError,
    DatabaseError,
    ForbiddenError,
    NotFoundError,
    RateLimitExceededError,
    ShutterbookError,
    ValidationError,
)
from shutterbook.middleware.logging import RequestLoggingMiddleware
from shutterbook.middleware.rate_limit import RateLimitMiddleware
from shutterbook.middleware.request_id import RequestIDMiddleware, request_id_var
from shutterbook.routes import health, notifications, stream
from shutterbook.services.change_capture import OrmChangeCapture
from shutterbook.services.change_feed import ChangeFeed, InMemoryChangeFeed, PostgresChangeFeed
from shutterbook.services.session_registry import SessionRegistry

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once, at startup.

    Format: %(asctime)s [%(levelname)s] %(name)s: %(message)s
    """
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Change Feed Construction
# ══════════════════════════════════════════════════════════════════════════

def build_change_feed() -> Tuple[ChangeFeed, Optional[OrmChangeCapture]]:
    """
    Feed for the configured backend.

    The memory backend also returns the ORM capture that feeds it; the
    caller installs and uninstalls it.
    """
    if settings.change_feed_backend == "memory":
        feed = InMemoryChangeFeed()
        return feed, OrmChangeCapture(feed)

    feed = PostgresChangeFeed(
        dsn=settings.change_feed_dsn,
        channel=settings.change_feed_channel,
        retry_max_attempts=settings.feed_retry_max_attempts,
        retry_min_wait=settings.feed_retry_min_wait,
        retry_max_wait=settings.feed_retry_max_wait,
    )
    return feed, None


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("Shutterbook Notifications %s starting up...", __version__)

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    feed, capture = build_change_feed()
    if capture is not None:
        capture.install()
    try:
        await feed.start()
    except ChangeFeedError as e:
        # REST keeps working; stream opens answer 503 and /health says degraded
        logger.error("Change feed unavailable at startup: %s", e.message)

    registry = SessionRegistry()
    app.state.change_feed = feed
    app.state.session_registry = registry

    logger.info(
        "Change feed backend: %s (running=%s)",
        settings.change_feed_backend,
        feed.is_running,
    )
    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("Shutterbook Notifications shutting down...")
    registry.shutdown_all()
    await feed.stop()
    if capture is not None:
        capture.uninstall()
    await dispose_engine()
    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_body(error: str, message: str, details: Optional[dict] = None) -> dict:
    body = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        body["details"] = details
    return body


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map the exception hierarchy onto HTTP responses.

    Handler hierarchy:
        ValidationError         → 400
        AuthenticationError     → 401
        ForbiddenError          → 403
        NotFoundError           → 404
        RateLimitExceededError  → 429
        DatabaseError           → 500 (context logged, never returned)
        ChangeFeedError         → 503 + Retry-After
        ShutterbookError (base) → 500
        Exception (fallback)    → 500
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("[%s] Validation error: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=400,
            content=_error_body("validation_error", exc.message, exc.context),
        )

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        return JSONResponse(
            status_code=401,
            content=_error_body("unauthorized", exc.message),
            headers={"WWW-Authenticate": "Bearer"},
        )

    @app.exception_handler(ForbiddenError)
    async def handle_forbidden(request: Request, exc: ForbiddenError):
        logger.warning("[%s] Forbidden: %s | %s", request_id_var.get(""), exc.message, exc.context)
        return JSONResponse(
            status_code=403,
            content=_error_body("forbidden", exc.message),
        )

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return JSONResponse(
            status_code=404,
            content=_error_body("not_found", exc.message),
        )

    @app.exception_handler(RateLimitExceededError)
    async def handle_rate_limit(request: Request, exc: RateLimitExceededError):
        return JSONResponse(
            status_code=429,
            content=_error_body("rate_limit_exceeded", exc.message, exc.context),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        rid = request_id_var.get("")
        logger.error("[%s] Database error: %s | Context: %s", rid, exc.message, exc.context)
        return JSONResponse(
            status_code=500,
            content=_error_body("server_error", "An internal error occurred. Please try again later."),
        )

    @app.exception_handler(ChangeFeedError)
    async def handle_change_feed_error(request: Request, exc: ChangeFeedError):
        logger.error("[%s] Change feed unavailable: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=503,
            content=_error_body("service_unavailable", exc.message, {"retry_after": exc.retry_after}),
            headers={"Retry-After": str(exc.retry_after)},
        )

    @app.exception_handler(ShutterbookError)
    async def handle_shutterbook_error(request: Request, exc: ShutterbookError):
        logger.error("[%s] Unhandled application error: %s", request_id_var.get(""), exc.message)
        return JSONResponse(
            status_code=500,
            content=_error_body("server_error", exc.message),
        )

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("[%s] Unexpected error: %s", request_id_var.get(""), str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "internal_server_error",
                "An unexpected error occurred. Please try again or contact support.",
            ),
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app() -> FastAPI:
    app = FastAPI(
        title="Shutterbook Notifications API",
        description=(
            "Real-time notification delivery for the Shutterbook photographer "
            "booking marketplace: notification REST endpoints and a per-user "
            "server-sent event stream."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Executed in reverse order of addition: RateLimit runs first
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,  # session cookie
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.add_middleware(RateLimitMiddleware)

    register_exception_handlers(app)

    app.include_router(stream.router)
    app.include_router(notifications.router)
    app.include_router(health.router)

    return app


app = create_app()
