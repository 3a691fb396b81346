"""FastAPI application entrypoint.

Pipeline routes live under /api/rag; the document source the processing
service downloads lives under /api/documents. Auto-generated OpenAPI docs
at /docs.

The push channel (in-memory or Redis) and chat transport (webhook, queue
or hybrid) are built once during the lifespan and stored on app.state for
injection via Depends(). APScheduler runs the webhook retry tick, the stuck
chat monitor and traffic pruning.
"""

from contextlib import asynccontextmanager
import logging
from typing import AsyncGenerator

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.v1.callbacks import router as callbacks_router
from app.api.v1.chat import router as chat_router
from app.api.v1.documents import router as documents_router
from app.api.v1.health import router as health_router
from app.api.v1.search import router as search_router
from app.api.v1.source import router as source_router
from app.api.v1.stream import router as stream_router
from app.core.config import settings
from app.core.exceptions import BadRequestError, PipelineError, QueueConnectionError
from app.db.postgres import close_postgres, session_scope
from app.db.qdrant import close_qdrant
from app.db.redis import close_redis, get_redis
from app.services.chat.push import InMemoryPushChannel, PushChannel, RedisPushChannel
from app.services.chat.queue import ChatQueue, ChatResponseConsumer
from app.services.chat.service import ChatService
from app.services.chat.transport import build_transport
from app.services.webhooks.retry import RetryQueue
from app.services.webhooks.traffic import prune_webhook_traffic


def _configure_logging() -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("aio_pika").setLevel(logging.WARNING)


_configure_logging()

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Scheduled jobs (each opens its own session)
# ---------------------------------------------------------------------------

async def _webhook_retry_tick(push: PushChannel) -> None:
    """Drain due retry-queue rows. Called by APScheduler every retry interval."""
    try:
        async with session_scope() as db:
            await RetryQueue(db=db, push=push).run_once()
    except Exception as e:
        logger.error("webhook_retry_tick_failed", error=str(e))


async def _stuck_chat_monitor() -> None:
    """Log exchanges stuck in awaiting_response. Never fails them."""
    try:
        async with session_scope() as db:
            stuck = await ChatService(db=db).find_stuck()
        if stuck:
            logger.warning(
                "chat_exchanges_stuck",
                count=len(stuck),
                older_than_minutes=settings.chat_stuck_after_minutes,
                oldest_message_id=str(stuck[0].message_id),
            )
    except Exception as e:
        logger.error("stuck_chat_monitor_failed", error=str(e))


async def _webhook_traffic_prune() -> None:
    try:
        async with session_scope() as db:
            await prune_webhook_traffic(db)
    except Exception as e:
        logger.error("webhook_traffic_prune_failed", error=str(e))


async def _build_push_channel() -> PushChannel:
    if settings.push_backend == "redis":
        return RedisPushChannel(await get_redis())
    return InMemoryPushChannel()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    # --- Startup ---
    logger.info(
        "app_startup",
        env=settings.app_env,
        chat_transport=settings.chat_transport,
        push_backend=settings.push_backend,
    )

    push = await _build_push_channel()
    app.state.push_channel = push

    queue: ChatQueue | None = None
    if settings.uses_chat_queue:
        queue = ChatQueue()
        try:
            await queue.connect()
            await queue.consume_responses(ChatResponseConsumer(push=push))
        except QueueConnectionError as e:
            # Requests still go through; queue publishes fail until the broker is back.
            logger.error("chat_queue_unavailable", error=e.message)
    app.state.chat_queue = queue
    app.state.chat_transport = build_transport(settings.chat_transport, queue)

    scheduler = AsyncIOScheduler()
    scheduler.add_job(
        _webhook_retry_tick,
        "interval",
        seconds=settings.retry_interval_seconds,
        args=[push],
        id="webhook_retry",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _stuck_chat_monitor,
        "interval",
        minutes=5,
        id="stuck_chat_monitor",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        _webhook_traffic_prune,
        "interval",
        hours=6,
        id="webhook_traffic_prune",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    app.state.scheduler = scheduler

    logger.info("app_ready")
    yield

    # --- Shutdown ---
    logger.info("app_shutdown")

    scheduler.shutdown(wait=False)

    if queue is not None:
        await queue.close()
    await push.close()
    await close_redis()
    await close_qdrant()
    await close_postgres()


app = FastAPI(
    title="Onboarding Processing Pipeline API",
    description="Tenant-scoped document and chat processing via external webhooks.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS: permissive for development, locked down in production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if not settings.is_production else [],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    """Structured error response for all pipeline exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed bodies/params are a BadRequest with the same envelope."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    error = BadRequestError(f"{location}: {first.get('msg', 'invalid request')}")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


# Mount routers
app.include_router(health_router)
app.include_router(documents_router, prefix="/api")
app.include_router(callbacks_router, prefix="/api")
app.include_router(search_router, prefix="/api")
app.include_router(chat_router, prefix="/api")
app.include_router(stream_router, prefix="/api")
app.include_router(source_router, prefix="/api")
