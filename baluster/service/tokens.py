from __future__ import annotations

import hashlib
import secrets

# Bytes of entropy behind every issued credential
TOKEN_BYTES = 32


def generate_token() -> str:
    """Return a fresh URL-safe credential for a service key or API key."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used as the stored and lookup form of a credential.

    Credentials are high-entropy random values, so a fast content hash is
    sufficient and keeps lookups by equality possible.
    """
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


__all__ = ["TOKEN_BYTES", "generate_token", "hash_token"]
