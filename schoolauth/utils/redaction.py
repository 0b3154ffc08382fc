"""Simple redaction helpers for logs and diagnostics."""

from __future__ import annotations

import re

_URL_USERINFO_RE = re.compile(r"([a-z][a-z0-9+.-]*://)([^@/]+)@", re.IGNORECASE)
_QUERY_SECRET_RE = re.compile(
    r"(?i)(token|secret|password|access_token|refresh_token|accesstoken|refreshtoken)=([^&\s]+)"
)
_BEARER_RE = re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)")
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")


def redact_secrets(text: str) -> str:
    """Redact common secret patterns from a log string."""
    if not text:
        return text
    redacted = _URL_USERINFO_RE.sub(r"\1***@", text)
    redacted = _QUERY_SECRET_RE.sub(r"\1=***", redacted)
    redacted = _BEARER_RE.sub(r"\1***", redacted)
    redacted = _JWT_RE.sub("<jwt:***>", redacted)
    return redacted


def token_fingerprint(token: str | None) -> str:
    """Short, non-reversible label for correlating a token across log lines."""
    if not token:
        return "none"
    return f"...{token[-6:]}"
