from schoolauth.models.account import Account, AccountRole
from schoolauth.models.auth import AuthSession

__all__ = [
    "Account",
    "AccountRole",
    "AuthSession",
]
