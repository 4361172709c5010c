"""Google OAuth token storage model."""
from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base


class StoredToken(Base):
    """Persisted OAuth credential bundle, one row per storage key."""

    __tablename__ = "oauth_tokens"

    storage_key: Mapped[str] = mapped_column(String(255), primary_key=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON(), nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger(), nullable=False)
