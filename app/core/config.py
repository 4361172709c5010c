"""Configuration management for the OAuth gateway."""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator

load_dotenv()

DEFAULT_GOOGLE_SCOPES: list[str] = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
    "https://www.googleapis.com/auth/gmail.modify",
    "https://www.googleapis.com/auth/calendar",
    "https://www.googleapis.com/auth/calendar.events",
    "https://www.googleapis.com/auth/analytics.readonly",
    "openid",
    "email",
    "profile",
]

TOKEN_STORAGE_BACKENDS = ("file", "database", "firestore", "rtdb")


class Settings(BaseModel):
    """Application configuration loaded from environment variables."""

    app_env: str = "dev"
    version: str = "0.1.0"
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=list)
    google_client_id: str = ""
    google_client_secret: str = ""
    google_redirect_uri: str = "http://localhost:8000/api/v1/auth/callback"
    google_scopes: list[str] = Field(default_factory=lambda: list(DEFAULT_GOOGLE_SCOPES))
    token_storage: str = "file"
    token_storage_key: str = "default"
    token_file_path: str = "./tokens.json"
    database_url: str = "sqlite:///./tokens.db"
    firebase_project_id: str = ""
    firebase_client_email: str = ""
    firebase_private_key: str = ""
    firebase_database_url: str = ""

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            if not value:
                return []
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        if isinstance(value, list):
            return value
        return []

    @field_validator("google_scopes", mode="before")
    @classmethod
    def assemble_google_scopes(cls, value: Any) -> list[str]:
        if isinstance(value, str):
            scopes = [scope for scope in value.replace(",", " ").split() if scope]
            return scopes or list(DEFAULT_GOOGLE_SCOPES)
        if isinstance(value, list):
            return value
        return list(DEFAULT_GOOGLE_SCOPES)

    @field_validator("token_storage", mode="before")
    @classmethod
    def normalise_token_storage(cls, value: Any) -> str:
        backend = str(value or "file").strip().lower()
        if backend not in TOKEN_STORAGE_BACKENDS:
            raise ValueError(
                f"Unsupported TOKEN_STORAGE {backend!r}; expected one of {', '.join(TOKEN_STORAGE_BACKENDS)}"
            )
        return backend

    @property
    def google_oauth_configured(self) -> bool:
        return bool(
            self.google_client_id and self.google_client_secret and self.google_redirect_uri
        )

    @property
    def firebase_credentials(self) -> dict[str, str]:
        # Hosting platforms commonly store the PEM with escaped newlines.
        return {
            "type": "service_account",
            "project_id": self.firebase_project_id,
            "client_email": self.firebase_client_email,
            "private_key": self.firebase_private_key.replace("\\n", "\n"),
            "token_uri": "https://oauth2.googleapis.com/token",
        }

    @property
    def async_database_url(self) -> str:
        if self.database_url.startswith("sqlite+aiosqlite://"):
            return self.database_url
        if self.database_url.startswith("sqlite:///"):
            return self.database_url.replace("sqlite:///", "sqlite+aiosqlite:///")
        if self.database_url.startswith("sqlite://"):
            return self.database_url.replace("sqlite://", "sqlite+aiosqlite://")
        return self.database_url


def _build_settings() -> Settings:
    raw_values: dict[str, Any] = {
        "app_env": os.getenv("APP_ENV"),
        "version": os.getenv("APP_VERSION"),
        "log_level": os.getenv("LOG_LEVEL"),
        "cors_origins": os.getenv("CORS_ORIGINS"),
        "google_client_id": os.getenv("GOOGLE_CLIENT_ID"),
        "google_client_secret": os.getenv("GOOGLE_CLIENT_SECRET"),
        "google_redirect_uri": os.getenv("GOOGLE_REDIRECT_URI"),
        "google_scopes": os.getenv("GOOGLE_SCOPES"),
        "token_storage": os.getenv("TOKEN_STORAGE"),
        "token_storage_key": os.getenv("TOKEN_STORAGE_KEY"),
        "token_file_path": os.getenv("TOKEN_FILE_PATH"),
        "database_url": os.getenv("DATABASE_URL"),
        "firebase_project_id": os.getenv("FIREBASE_PROJECT_ID"),
        "firebase_client_email": os.getenv("FIREBASE_CLIENT_EMAIL"),
        "firebase_private_key": os.getenv("FIREBASE_PRIVATE_KEY"),
        "firebase_database_url": os.getenv("FIREBASE_DATABASE_URL"),
    }
    filtered_values = {key: value for key, value in raw_values.items() if value is not None}
    return Settings(**filtered_values)


@lru_cache()
def get_settings() -> Settings:
    """Return a cached settings instance."""
    return _build_settings()
