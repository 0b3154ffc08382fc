"""Import all models here for Alembic autogenerate."""

from schoolauth.db.base_class import Base
from schoolauth.models import account, auth  # noqa: F401

__all__ = ["Base"]
