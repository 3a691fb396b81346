"""Fixed auth-scheme table for every endpoint the processing service touches.

The counterparty expects a bearer token on document and chat endpoints and
an ``X-Callback-Token`` header on vector endpoints. That asymmetry is part
of its protocol; it is kept as a lookup table, not unified.
"""

from __future__ import annotations

from enum import Enum

from fastapi import Request

CALLBACK_HEADER = "X-Callback-Token"


class AuthScheme(str, Enum):
    BEARER = "bearer"
    CALLBACK_HEADER = "callback_header"


class Endpoint(str, Enum):
    # inbound
    DOCUMENT_CALLBACK = "document_callback"
    VECTOR_CALLBACK = "vector_callback"
    CHAT_CALLBACK = "chat_callback"
    VECTOR_SEARCH = "vector_search"
    DOCUMENT_SOURCE = "document_source"
    # outbound
    DOCUMENT_PROCESSING = "document-processing"
    PROCESS_CHAT_MESSAGE = "process-chat-message"


AUTH_SCHEMES: dict[Endpoint, AuthScheme] = {
    Endpoint.DOCUMENT_CALLBACK: AuthScheme.BEARER,
    Endpoint.VECTOR_CALLBACK: AuthScheme.CALLBACK_HEADER,
    Endpoint.CHAT_CALLBACK: AuthScheme.BEARER,
    Endpoint.VECTOR_SEARCH: AuthScheme.CALLBACK_HEADER,
    Endpoint.DOCUMENT_SOURCE: AuthScheme.BEARER,
    Endpoint.DOCUMENT_PROCESSING: AuthScheme.BEARER,
    Endpoint.PROCESS_CHAT_MESSAGE: AuthScheme.BEARER,
}

# Headers never written to the traffic log verbatim.
SENSITIVE_HEADERS = frozenset({"authorization", CALLBACK_HEADER.lower(), "x-api-key", "cookie"})


def auth_headers(scheme: AuthScheme | str, token: str) -> dict[str, str]:
    """Outbound headers carrying ``token`` the way ``scheme`` expects."""
    if AuthScheme(scheme) is AuthScheme.BEARER:
        return {"Authorization": f"Bearer {token}"}
    return {CALLBACK_HEADER: token}


def extract_token(request: Request, endpoint: Endpoint) -> str | None:
    """Pull the presented callback token off an inbound request, or None."""
    if AUTH_SCHEMES[endpoint] is AuthScheme.CALLBACK_HEADER:
        return request.headers.get(CALLBACK_HEADER) or None

    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
