"""Password hashing and strength helpers for auth flows."""

import re

from passlib.context import CryptContext

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

_PASSWORD_RULES = (
    re.compile(r"[a-z]"),
    re.compile(r"[A-Z]"),
    re.compile(r"\d"),
    re.compile(r"[^A-Za-z0-9]"),
)
MIN_PASSWORD_LENGTH = 8


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plaintext password against a stored hash."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password using the configured context."""
    return pwd_context.hash(password)


def is_strong_password(password: str) -> bool:
    """Require lower, upper, digit, and special characters with a minimum length."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return False
    return all(rule.search(password) for rule in _PASSWORD_RULES)
