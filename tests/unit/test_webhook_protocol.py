"""Unit tests for the auth-scheme table and traffic redaction.

Tests:
  - document/chat endpoints use bearer, vector endpoints use X-Callback-Token
  - extract_token reads only the scheme the endpoint expects
  - credentials redacted and oversized bodies truncated in the traffic log
  - a failing traffic write never propagates
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import pytest
from starlette.requests import Request

from app.services.webhooks.protocol import (
    AUTH_SCHEMES,
    AuthScheme,
    Endpoint,
    auth_headers,
    extract_token,
)
from app.services.webhooks.traffic import (
    MAX_BODY_CHARS,
    REDACTED,
    TrafficRecord,
    record_webhook_traffic,
    redact_headers,
    truncate_body,
)


def _request(headers: dict[str, str]) -> Request:
    return Request(
        {
            "type": "http",
            "method": "POST",
            "path": "/api/rag/callback/abc",
            "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        }
    )


class TestAuthSchemes:
    def test_vector_endpoints_use_callback_header(self) -> None:
        assert AUTH_SCHEMES[Endpoint.VECTOR_CALLBACK] is AuthScheme.CALLBACK_HEADER
        assert AUTH_SCHEMES[Endpoint.VECTOR_SEARCH] is AuthScheme.CALLBACK_HEADER

    def test_document_and_chat_use_bearer(self) -> None:
        for endpoint in (
            Endpoint.DOCUMENT_CALLBACK,
            Endpoint.CHAT_CALLBACK,
            Endpoint.DOCUMENT_SOURCE,
            Endpoint.DOCUMENT_PROCESSING,
            Endpoint.PROCESS_CHAT_MESSAGE,
        ):
            assert AUTH_SCHEMES[endpoint] is AuthScheme.BEARER

    def test_outbound_headers(self) -> None:
        assert auth_headers(AuthScheme.BEARER, "t1") == {"Authorization": "Bearer t1"}
        assert auth_headers("callback_header", "t1") == {"X-Callback-Token": "t1"}


class TestExtractToken:
    def test_bearer_token(self) -> None:
        request = _request({"Authorization": "Bearer abc123"})
        assert extract_token(request, Endpoint.CHAT_CALLBACK) == "abc123"

    def test_bearer_scheme_is_case_insensitive(self) -> None:
        request = _request({"Authorization": "bearer abc123"})
        assert extract_token(request, Endpoint.DOCUMENT_CALLBACK) == "abc123"

    def test_wrong_scheme_not_accepted(self) -> None:
        """A callback header on a bearer endpoint counts as no token."""
        request = _request({"X-Callback-Token": "abc123"})
        assert extract_token(request, Endpoint.DOCUMENT_CALLBACK) is None

    def test_bearer_on_vector_endpoint_not_accepted(self) -> None:
        request = _request({"Authorization": "Bearer abc123"})
        assert extract_token(request, Endpoint.VECTOR_CALLBACK) is None

    def test_callback_header(self) -> None:
        request = _request({"X-Callback-Token": "abc123"})
        assert extract_token(request, Endpoint.VECTOR_SEARCH) == "abc123"

    def test_empty_bearer(self) -> None:
        request = _request({"Authorization": "Bearer   "})
        assert extract_token(request, Endpoint.CHAT_CALLBACK) is None


class TestTrafficCapture:
    def test_sensitive_headers_redacted(self) -> None:
        headers = {
            "Authorization": "Bearer secret",
            "X-Callback-Token": "secret",
            "X-API-Key": "secret",
            "Content-Type": "application/json",
        }
        redacted = redact_headers(headers)
        assert redacted["Authorization"] == REDACTED
        assert redacted["X-Callback-Token"] == REDACTED
        assert redacted["X-API-Key"] == REDACTED
        assert redacted["Content-Type"] == "application/json"

    def test_long_body_truncated(self) -> None:
        body = "x" * (MAX_BODY_CHARS + 50)
        truncated = truncate_body(body.encode())
        assert truncated is not None
        assert truncated.endswith("...[truncated]")
        assert len(truncated) == MAX_BODY_CHARS + len("...[truncated]")

    def test_short_body_unchanged(self) -> None:
        assert truncate_body(b'{"a": 1}') == '{"a": 1}'
        assert truncate_body(None) is None

    @pytest.mark.asyncio
    async def test_capture_failure_is_swallowed(self) -> None:
        @asynccontextmanager
        async def broken_session() -> AsyncIterator[None]:
            raise RuntimeError("database down")
            yield  # pragma: no cover

        record = TrafficRecord(
            endpoint_category="vector_callback",
            request_method="POST",
            request_url="http://test/api/rag/callback/abc",
            response_status=200,
        )
        await record_webhook_traffic(record, session_factory=broken_session)
