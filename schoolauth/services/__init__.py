from . import account_service, connection_quality, session_registry

__all__ = [
    "account_service",
    "connection_quality",
    "session_registry",
]
"""Service-layer helpers for API operations."""
