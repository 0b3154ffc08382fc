"""Client-side session handling for the school admin API."""

from schoolauth.client.interceptor import AuthenticatedClient, CallState
from schoolauth.client.session_manager import ClientSessionManager, PersistedSession, Tokens
from schoolauth.client.storage import FileStorage, MemoryStorage

__all__ = [
    "AuthenticatedClient",
    "CallState",
    "ClientSessionManager",
    "FileStorage",
    "MemoryStorage",
    "PersistedSession",
    "Tokens",
]
