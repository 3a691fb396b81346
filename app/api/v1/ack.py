"""Response shaping shared by the inbound callback endpoints.

Boundary errors (401/404/409/400) go back to the caller as-is; nothing has
been mutated when they are raised. Any other failure while applying an
authenticated callback is logged and acknowledged with 200 and
``{"success": false}``, so the processing service does not retry-storm on
our internal problems.

Every call is captured to the traffic log after the response is sent.
"""

from typing import Awaitable, Callable

import structlog
from fastapi import BackgroundTasks, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import PipelineError
from app.services.webhooks.traffic import capture_request, record_webhook_traffic

logger = structlog.get_logger(__name__)


async def respond(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession,
    category: str,
    handler: Callable[[], Awaitable[BaseModel]],
    acknowledge_failures: bool = True,
) -> JSONResponse:
    try:
        body = await handler()
        status_code, content = 200, body.model_dump(mode="json")
    except PipelineError as e:
        await db.rollback()
        if e.status_code < 500 or not acknowledge_failures:
            status_code, content = e.status_code, e.to_dict()
        else:
            logger.error("callback_processing_failed", category=category, code=e.code, error=e.message)
            status_code, content = 200, {"success": False, "message": e.message}
    except Exception as e:
        await db.rollback()
        if not acknowledge_failures:
            raise
        logger.exception("callback_processing_failed", category=category, error=str(e))
        status_code = 200
        content = {"success": False, "message": "Callback received but processing failed"}

    record = await capture_request(request, category, status_code)
    background_tasks.add_task(record_webhook_traffic, record)
    return JSONResponse(status_code=status_code, content=content, background=background_tasks)
