"""Connection quality detection used to size session lifetimes.

Lower qualities map to longer session lifetimes (see ``Settings.session_lifetimes``).
"""

from __future__ import annotations

import re
from typing import Mapping

STABLE = "stable"
UNSTABLE = "unstable"
OFFLINE = "offline"
QUALITIES = (STABLE, UNSTABLE, OFFLINE)

QUALITY_HEADER = "X-Connection-Quality"

_MOBILE_RE = re.compile(r"Mobile|Android|iPhone|iPad", re.IGNORECASE)
_SLOW_EFFECTIVE_TYPES = {"slow-2g", "2g"}


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value.strip() if isinstance(value, str) else None


def normalize_quality(value: str | None) -> str:
    """Clamp arbitrary input to one of the known qualities."""
    candidate = (value or "").strip().lower()
    return candidate if candidate in QUALITIES else STABLE


def detect_connection_quality(headers: Mapping[str, str]) -> str:
    """Classify a request's connection from explicit hints and client hints."""
    explicit = _header(headers, QUALITY_HEADER)
    if explicit and explicit.lower() in QUALITIES:
        return explicit.lower()
    effective_type = (_header(headers, "ECT") or "").lower()
    if effective_type in _SLOW_EFFECTIVE_TYPES:
        return UNSTABLE
    if (_header(headers, "Save-Data") or "").lower() == "on":
        return UNSTABLE
    return STABLE


def detected_factors(headers: Mapping[str, str]) -> dict[str, str | bool | None]:
    """Raw signals behind a classification, for the connection-status endpoint."""
    user_agent = _header(headers, "User-Agent")
    return {
        "userAgent": user_agent,
        "isMobile": bool(user_agent and _MOBILE_RE.search(user_agent)),
        "hasProxy": bool(_header(headers, "Via") or _header(headers, "X-Forwarded-For")),
        "effectiveType": _header(headers, "ECT"),
        "saveData": (_header(headers, "Save-Data") or "").lower() == "on",
        "explicitQuality": _header(headers, QUALITY_HEADER),
    }


def describe_duration(minutes: int) -> str:
    """Human label for a session lifetime."""
    if minutes % (60 * 24) == 0:
        days = minutes // (60 * 24)
        return f"{days} day" if days == 1 else f"{days} days"
    if minutes % 60 == 0:
        hours = minutes // 60
        return f"{hours} hour" if hours == 1 else f"{hours} hours"
    return f"{minutes} minutes"
