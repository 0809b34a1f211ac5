"""
Shutterbook Notifications — Health Check Route
================================================

What:  GET /health for container health checks and load balancers.
How:   SELECT 1 against the database, plus the change feed state and the
       number of open streams from app.state.

Status levels:
    healthy    database reachable, change feed listening         (200)
    degraded   database reachable, change feed down: REST works,
               new streams are refused with 503                  (200)
    unhealthy  database unreachable                              (503)
"""

import logging
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from shutterbook import __version__
from shutterbook.database import engine
from shutterbook.schemas.notification import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"description": "Database unreachable", "model": HealthResponse}},
    summary="Service health check",
)
async def health_check(request: Request):
    db_status = "connected"
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        logger.warning("Health check: database unreachable: %s", str(e))

    feed = getattr(request.app.state, "change_feed", None)
    registry = getattr(request.app.state, "session_registry", None)
    feed_status = "listening" if feed is not None and feed.is_running else "stopped"

    if db_status != "connected":
        overall = "unhealthy"
    elif feed_status != "listening":
        overall = "degraded"
    else:
        overall = "healthy"

    health = HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        change_feed=feed_status,
        active_streams=registry.active_count if registry is not None else 0,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
    if overall == "unhealthy":
        return JSONResponse(status_code=503, content=health.model_dump())
    return health
