"""Bundle identifier generation."""

from __future__ import annotations

import secrets


def gen_bundle_uuid() -> str:
    """Return 32 random bytes as a 64-character lower-case hex string."""
    return secrets.token_bytes(32).hex()