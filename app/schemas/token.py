"""Pydantic schemas for OAuth credentials and session reporting."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Three 30-day months, the application-level session boundary.
SESSION_TTL_MS = 3 * 30 * 24 * 60 * 60 * 1000


def now_ms() -> int:
    """Return the current time as epoch milliseconds."""
    return int(time.time() * 1000)


def ms_to_iso(value: int | None) -> str | None:
    if value is None:
        return None
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class TokenRecord(BaseModel):
    """The persisted credential bundle for the configured identity."""

    model_config = ConfigDict(extra="ignore")

    access_token: str
    refresh_token: str | None = None
    expiry_date: int | None = None
    token_type: str | None = None
    scope: str | None = None
    id_token: str | None = None
    session_expiry: int | None = None

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)

    @property
    def scopes(self) -> list[str] | None:
        if not self.scope:
            return None
        return self.scope.split(" ")

    def access_token_expired(self, now: int) -> bool:
        return self.expiry_date is not None and self.expiry_date < now

    def session_expired(self, now: int) -> bool:
        return self.session_expiry is not None and self.session_expiry < now


class SessionState(str, Enum):
    NO_SESSION = "no_session"
    ACTIVE = "active"
    ACCESS_EXPIRED_REFRESHABLE = "access_expired_refreshable"
    SESSION_EXPIRED = "session_expired"


def session_state(record: TokenRecord | None, now: int) -> SessionState:
    """Derive the session state from a stored record and the clock.

    An expired access token without a refresh token cannot be renewed, so it
    is reported as ``SESSION_EXPIRED`` alongside a passed session boundary.
    """

    if record is None:
        return SessionState.NO_SESSION
    if record.session_expired(now):
        return SessionState.SESSION_EXPIRED
    if record.access_token_expired(now):
        if record.refresh_token:
            return SessionState.ACCESS_EXPIRED_REFRESHABLE
        return SessionState.SESSION_EXPIRED
    return SessionState.ACTIVE


class UserIdentity(BaseModel):
    id: str
    email: str = ""
    name: str = ""
    picture: str | None = None


class SessionStatus(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    authenticated: bool
    token_expired: bool | None = None
    session_expired: bool | None = None
    has_refresh_token: bool | None = None
    session_expires_at: str | None = None
    user: UserIdentity | None = None
    scopes: list[str] | None = None
