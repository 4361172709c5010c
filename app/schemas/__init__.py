"""Pydantic schemas for the OAuth gateway."""

from .token import (
    SESSION_TTL_MS,
    SessionState,
    SessionStatus,
    TokenRecord,
    UserIdentity,
    ms_to_iso,
    now_ms,
    session_state,
)

__all__ = [
    "SESSION_TTL_MS",
    "SessionState",
    "SessionStatus",
    "TokenRecord",
    "UserIdentity",
    "ms_to_iso",
    "now_ms",
    "session_state",
]
