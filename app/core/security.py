"""API key hashing and callback credential utilities."""

import hashlib
import secrets


def hash_api_key(raw_key: str) -> str:
    """SHA-256 hash of raw API key for storage."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_callback_token() -> str:
    """High-entropy per-tenant callback secret (64 hex chars)."""
    return secrets.token_hex(32)


def generate_callback_id() -> str:
    """Opaque id correlating a document's vector callback."""
    return secrets.token_hex(16)


def tokens_match(presented: str | None, expected: str | None) -> bool:
    """Constant-time token comparison. Missing values never match."""
    if not presented or not expected:
        # Still burn a comparison so a missing tenant costs the same as a bad token.
        secrets.compare_digest("0" * 64, "1" * 64)
        return False
    return secrets.compare_digest(
        presented.encode("utf-8"), expected.encode("utf-8")
    )
