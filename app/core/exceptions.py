"""Custom exception classes for structured error handling.

Boundary errors (401/404/409/400) are raised at the callback and API
receivers before any mutation. DeliveryFailure and ExhaustedRetriesError
never reach an HTTP caller: the first is absorbed into the retry queue,
the second only ever shows up as a ``failed`` status.
"""

from typing import Any


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, code: str, message: str, status_code: int = 500) -> None:
        self.code = code
        self.message = message
        self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "error": {"code": self.code, "message": self.message}}


# ---------------------------------------------------------------------------
# Callback / request boundary
# ---------------------------------------------------------------------------

class UnauthorizedError(PipelineError):
    def __init__(self, message: str = "Invalid callback credentials") -> None:
        super().__init__(code="UNAUTHORIZED", message=message, status_code=401)


class InvalidAPIKeyError(PipelineError):
    def __init__(self, message: str = "Invalid or missing API key") -> None:
        super().__init__(code="INVALID_API_KEY", message=message, status_code=401)


class NotFoundError(PipelineError):
    def __init__(self, message: str = "Resource not found", code: str = "NOT_FOUND") -> None:
        super().__init__(code=code, message=message, status_code=404)


class DocumentNotFoundError(NotFoundError):
    def __init__(self, message: str = "Document not found") -> None:
        super().__init__(message=message, code="DOCUMENT_NOT_FOUND")


class ChatExchangeNotFoundError(NotFoundError):
    def __init__(self, message: str = "Chat message not found") -> None:
        super().__init__(message=message, code="MESSAGE_NOT_FOUND")


class ConversationNotFoundError(NotFoundError):
    def __init__(self, message: str = "Conversation not found") -> None:
        super().__init__(message=message, code="CONVERSATION_NOT_FOUND")


class ConflictError(PipelineError):
    def __init__(self, message: str = "Resource is not in a state that accepts this request") -> None:
        super().__init__(code="CONFLICT", message=message, status_code=409)


class BadRequestError(PipelineError):
    def __init__(self, message: str = "Malformed request", code: str = "BAD_REQUEST") -> None:
        super().__init__(code=code, message=message, status_code=400)


class DimensionMismatchError(BadRequestError):
    def __init__(self, expected: int, got: int | None) -> None:
        super().__init__(
            message=f"Invalid embedding dimension. Expected {expected}, got {got}",
            code="DIMENSION_MISMATCH",
        )
        self.expected = expected
        self.got = got


class InvalidFileTypeError(BadRequestError):
    def __init__(self, message: str = "Unsupported file type") -> None:
        super().__init__(message=message, code="INVALID_FILE_TYPE")


# ---------------------------------------------------------------------------
# Outbound delivery
# ---------------------------------------------------------------------------

class DeliveryFailure(PipelineError):
    """Outbound webhook returned non-2xx or failed in transport (incl. timeout)."""

    def __init__(self, message: str = "Webhook delivery failed", status: int | None = None) -> None:
        super().__init__(code="DELIVERY_FAILURE", message=message, status_code=502)
        self.upstream_status = status


class ExhaustedRetriesError(PipelineError):
    def __init__(self, message: str = "Webhook delivery retries exhausted") -> None:
        super().__init__(code="EXHAUSTED_RETRIES", message=message, status_code=500)


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------

class DatabaseConnectionError(PipelineError):
    def __init__(self, message: str = "Database connection failed") -> None:
        super().__init__(code="DATABASE_CONNECTION_ERROR", message=message, status_code=503)


class RedisConnectionError(PipelineError):
    def __init__(self, message: str = "Redis connection failed") -> None:
        super().__init__(code="REDIS_CONNECTION_ERROR", message=message, status_code=503)


class QdrantConnectionError(PipelineError):
    def __init__(self, message: str = "Qdrant connection failed") -> None:
        super().__init__(code="QDRANT_CONNECTION_ERROR", message=message, status_code=503)


class QueueConnectionError(PipelineError):
    def __init__(self, message: str = "Message queue connection failed") -> None:
        super().__init__(code="QUEUE_CONNECTION_ERROR", message=message, status_code=503)
