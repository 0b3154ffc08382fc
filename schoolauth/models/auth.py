from __future__ import annotations

import typing
import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from schoolauth.db.base_class import Base
from schoolauth.utils.datetime import utcnow

if typing.TYPE_CHECKING:  # pragma: no cover
    from schoolauth.models.account import Account


class AuthSession(Base):
    """One login (device) and its single current refresh-token identifier."""
    __tablename__ = "auth_sessions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("accounts.id", ondelete="CASCADE"), index=True, nullable=False
    )
    refresh_jti: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    previous_refresh_jti: Mapped[str | None] = mapped_column(String(64))
    rotated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rotation_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remember_me: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    connection_quality: Mapped[str] = mapped_column(String(16), nullable=False, default="stable")
    user_agent: Mapped[str | None] = mapped_column(String(512))
    ip_address: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True, nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked_reason: Mapped[str | None] = mapped_column(String(255))

    account: Mapped["Account"] = relationship("Account", back_populates="sessions")
