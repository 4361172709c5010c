"""Database models for the SQL token store backend."""

from .base import Base
from .google import StoredToken

__all__ = [
    "Base",
    "StoredToken",
]
