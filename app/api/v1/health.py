"""Liveness and dependency health."""

import structlog
from fastapi import APIRouter, Request
from sqlalchemy import text

from app.core.config import settings
from app.db.postgres import async_session_factory

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict:
    """Report Postgres reachability plus the transports chosen at startup."""
    database = "ok"
    try:
        async with async_session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("health_database_unreachable", error=str(e))
        database = "unreachable"

    return {
        "status": "ok" if database == "ok" else "degraded",
        "env": settings.app_env,
        "database": database,
        "chat_transport": settings.chat_transport,
        "push_backend": settings.push_backend,
        "scheduler_running": bool(getattr(request.app.state, "scheduler", None)),
    }
