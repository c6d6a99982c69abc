"""HMAC-SHA256 request signing shared by the ingestion gate and the CLI scripts."""
from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Union


def compute_signature(body: Union[bytes, str], secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: Union[bytes, str], signature: Optional[str], secret: str) -> bool:
    if not signature:
        return False
    expected = compute_signature(body, secret)
    # Compare bytes: compare_digest rejects non-ASCII str, and headers arrive as latin-1.
    provided = signature.strip().lower().encode("utf-8", "replace")
    return hmac.compare_digest(expected.encode("ascii"), provided)
