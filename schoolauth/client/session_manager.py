"""Client-side persistence of the signed-in session.

Invariants:
- The envelope lives under exactly one key: the durable tier when the user
  chose remember-me, the ephemeral tier otherwise.
- An envelope whose ``version`` is not ``CURRENT_VERSION`` is dropped, never
  partially trusted.
- Legacy layouts are migrated when they still hold a refresh token and are
  discarded otherwise; a malformed entry never raises out of ``load``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from pydantic import Field, ValidationError

from schoolauth.client.storage import MemoryStorage, Storage
from schoolauth.schema.base import CamelModel
from schoolauth.utils.datetime import utcnow

logger = logging.getLogger("schoolauth.client.session_manager")

CURRENT_VERSION = 5
DURABLE_KEY = "auth_session"
EPHEMERAL_KEY = "auth_session_tab"

LEGACY_ENVELOPE_KEY = "auth_data"
LEGACY_ENVELOPE_VERSION = "4.0"
LEGACY_BACKUP_KEY = "auth_backup"
LEGACY_TOKEN_KEYS = ("auth_token", "token")


class TokenSource(Protocol):
    access_token: str
    refresh_token: str


@dataclass(frozen=True, slots=True)
class Tokens:
    access_token: str
    refresh_token: str


class PersistedSession(CamelModel):
    access_token: str
    refresh_token: str
    account: dict[str, Any] = Field(default_factory=dict)
    remember_me: bool = False
    saved_at: datetime
    version: int
    session_metadata: dict[str, Any] = Field(default_factory=dict)


def _legacy_saved_at(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utcnow()


class ClientSessionManager:
    """Reads and writes the persisted session envelope across two storage tiers."""

    def __init__(
        self,
        durable: Storage,
        ephemeral: Storage | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.durable = durable
        self.ephemeral = ephemeral if ephemeral is not None else MemoryStorage()
        self._clock = clock

    def _tier(self, remember_me: bool) -> tuple[Storage, str]:
        return (self.durable, DURABLE_KEY) if remember_me else (self.ephemeral, EPHEMERAL_KEY)

    def _read(self, storage: Storage, key: str) -> PersistedSession | None:
        raw = storage.get_item(key)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Discarding unreadable session entry %s", key)
            storage.remove_item(key)
            return None
        if not isinstance(data, dict) or data.get("version") != CURRENT_VERSION:
            logger.info("Discarding session entry %s with unsupported version", key)
            storage.remove_item(key)
            return None
        try:
            return PersistedSession.model_validate(data)
        except ValidationError:
            logger.warning("Discarding malformed session entry %s", key)
            storage.remove_item(key)
            return None

    def _write(self, envelope: PersistedSession) -> None:
        storage, key = self._tier(envelope.remember_me)
        other_storage, other_key = self._tier(not envelope.remember_me)
        storage.set_item(key, envelope.model_dump_json(by_alias=True))
        other_storage.remove_item(other_key)

    def _migrate_legacy(self) -> PersistedSession | None:
        """Upgrade a v4 ``auth_data`` envelope; drop single-token leftovers."""
        migrated: PersistedSession | None = None
        for storage in (self.durable, self.ephemeral):
            raw = storage.get_item(LEGACY_ENVELOPE_KEY)
            if raw is not None and migrated is None:
                migrated = self._upgrade_v4(raw, durable=storage is self.durable)
            for key in (LEGACY_ENVELOPE_KEY, LEGACY_BACKUP_KEY, *LEGACY_TOKEN_KEYS):
                if storage.get_item(key) is not None:
                    storage.remove_item(key)
                    logger.info("Removed legacy session key %s", key)
        if migrated is not None:
            self._write(migrated)
        return migrated

    def _upgrade_v4(self, raw: str, *, durable: bool) -> PersistedSession | None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or str(data.get("version")) != LEGACY_ENVELOPE_VERSION:
            return None
        access_token = data.get("accessToken")
        refresh_token = data.get("refreshToken")
        if not isinstance(access_token, str) or not isinstance(refresh_token, str):
            return None
        metadata = data.get("sessionMetadata") if isinstance(data.get("sessionMetadata"), dict) else {}
        if data.get("connectionQuality") and "connectionQuality" not in metadata:
            metadata = {**metadata, "connectionQuality": data["connectionQuality"]}
        account = data.get("user") if isinstance(data.get("user"), dict) else {}
        logger.info("Migrated legacy v%s session envelope", LEGACY_ENVELOPE_VERSION)
        return PersistedSession(
            access_token=access_token,
            refresh_token=refresh_token,
            account=account,
            remember_me=bool(data.get("rememberMe", durable)),
            saved_at=_legacy_saved_at(data.get("savedAt")),
            version=CURRENT_VERSION,
            session_metadata=metadata,
        )

    def load(self) -> PersistedSession | None:
        """Return the stored session, or ``None`` when absent or unusable."""
        for storage, key in (self._tier(True), self._tier(False)):
            envelope = self._read(storage, key)
            if envelope is not None:
                return envelope
        return self._migrate_legacy()

    def save(
        self,
        pair: TokenSource,
        account: dict[str, Any],
        remember_me: bool,
        metadata: dict[str, Any] | None = None,
    ) -> PersistedSession:
        envelope = PersistedSession(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            account=account,
            remember_me=remember_me,
            saved_at=self._clock(),
            version=CURRENT_VERSION,
            session_metadata=metadata or {},
        )
        self._write(envelope)
        return envelope

    def update_tokens(
        self,
        pair: TokenSource,
        *,
        account: dict[str, Any] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> PersistedSession | None:
        """Swap in a rotated pair, keeping the tier chosen at sign-in."""
        current = self.load()
        if current is None:
            return None
        updated = current.model_copy(
            update={
                "access_token": pair.access_token,
                "refresh_token": pair.refresh_token,
                "saved_at": self._clock(),
                "account": account if account is not None else current.account,
                "session_metadata": {**current.session_metadata, **(metadata or {})},
            }
        )
        self._write(updated)
        return updated

    def clear(self) -> None:
        for storage in (self.durable, self.ephemeral):
            for key in (DURABLE_KEY, EPHEMERAL_KEY, LEGACY_ENVELOPE_KEY, LEGACY_BACKUP_KEY, *LEGACY_TOKEN_KEYS):
                storage.remove_item(key)

    def current_access_token(self) -> str | None:
        envelope = self.load()
        return envelope.access_token if envelope else None
