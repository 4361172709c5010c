"""Persistence backends for the single OAuth credential record."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any

import anyio
from firebase_admin import db as firebase_db
from firebase_admin import exceptions as firebase_exceptions
from firebase_admin import firestore
from google.api_core import exceptions as google_api_exceptions
from google.auth import exceptions as google_auth_exceptions
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import Settings
from app.core.firebase import get_firebase_app
from app.models import StoredToken
from app.schemas import TokenRecord, now_ms

TOKEN_COLLECTION = "oauth_tokens"
UPDATED_AT_FIELD = "updatedAt"

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the token backend cannot be read or written."""


class TokenStore(ABC):
    """Key-value persistence for one :class:`TokenRecord` under ``storage_key``."""

    backend_name = "abstract"

    def __init__(self, storage_key: str = "default", *, clock: Callable[[], int] = now_ms):
        self.storage_key = storage_key
        self._clock = clock

    async def save(self, record: TokenRecord) -> None:
        document = {**record.to_storage(), UPDATED_AT_FIELD: self._clock()}
        await self._write(document)
        logger.info(
            "Stored OAuth tokens",
            extra={"backend": self.backend_name, "storage_key": self.storage_key},
        )

    async def load(self) -> TokenRecord | None:
        document = await self._read()
        if not document:
            return None
        document = {key: value for key, value in document.items() if key != UPDATED_AT_FIELD}
        try:
            return TokenRecord.model_validate(document)
        except ValidationError as exc:
            raise StorageError(f"Stored token record for {self.storage_key!r} is malformed") from exc

    async def delete(self) -> None:
        await self._remove()
        logger.info(
            "Deleted OAuth tokens",
            extra={"backend": self.backend_name, "storage_key": self.storage_key},
        )

    @abstractmethod
    async def _write(self, document: dict[str, Any]) -> None: ...

    @abstractmethod
    async def _read(self) -> dict[str, Any] | None: ...

    @abstractmethod
    async def _remove(self) -> None: ...


class FileTokenStore(TokenStore):
    """Store records in a JSON file mapping storage keys to documents."""

    backend_name = "file"

    def __init__(self, path: Path, storage_key: str = "default", *, clock: Callable[[], int] = now_ms):
        super().__init__(storage_key, clock=clock)
        self.path = path

    def _read_all(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Unable to read token file {self.path}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Token file {self.path} does not contain a JSON object")
        return data

    def _write_all(self, data: dict[str, Any]) -> None:
        try:
            if not data:
                self.path.unlink(missing_ok=True)
                return
            self.path.parent.mkdir(parents=True, exist_ok=True)
            handle = tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            )
        except OSError as exc:
            raise StorageError(f"Unable to write token file {self.path}") from exc

        # Readers see either the previous file or the complete new one.
        temp_path = Path(handle.name)
        try:
            with handle:
                json.dump(data, handle, indent=2)
            os.replace(temp_path, self.path)
        except OSError as exc:
            temp_path.unlink(missing_ok=True)
            raise StorageError(f"Unable to write token file {self.path}") from exc

    async def _write(self, document: dict[str, Any]) -> None:
        def _update() -> None:
            data = self._read_all()
            data[self.storage_key] = document
            self._write_all(data)

        await anyio.to_thread.run_sync(_update)

    async def _read(self) -> dict[str, Any] | None:
        data = await anyio.to_thread.run_sync(self._read_all)
        return data.get(self.storage_key)

    async def _remove(self) -> None:
        def _discard() -> None:
            data = self._read_all()
            if self.storage_key not in data:
                return
            del data[self.storage_key]
            self._write_all(data)

        await anyio.to_thread.run_sync(_discard)


class DatabaseTokenStore(TokenStore):
    """Store records in the ``oauth_tokens`` SQL table."""

    backend_name = "database"

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage_key: str = "default",
        *,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(storage_key, clock=clock)
        self._session_factory = session_factory

    async def _write(self, document: dict[str, Any]) -> None:
        updated_at = document.pop(UPDATED_AT_FIELD)
        try:
            async with self._session_factory() as session:
                row = await session.get(StoredToken, self.storage_key)
                if row is None:
                    session.add(
                        StoredToken(storage_key=self.storage_key, payload=document, updated_at=updated_at)
                    )
                else:
                    row.payload = document
                    row.updated_at = updated_at
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Token database write failed", exc_info=exc)
            raise StorageError("Unable to write OAuth tokens to the database") from exc

    async def _read(self) -> dict[str, Any] | None:
        try:
            async with self._session_factory() as session:
                row = await session.get(StoredToken, self.storage_key)
        except SQLAlchemyError as exc:
            logger.error("Token database read failed", exc_info=exc)
            raise StorageError("Unable to read OAuth tokens from the database") from exc
        if row is None:
            return None
        return dict(row.payload)

    async def _remove(self) -> None:
        try:
            async with self._session_factory() as session:
                row = await session.get(StoredToken, self.storage_key)
                if row is not None:
                    await session.delete(row)
                    await session.commit()
        except SQLAlchemyError as exc:
            logger.error("Token database delete failed", exc_info=exc)
            raise StorageError("Unable to delete OAuth tokens from the database") from exc


# Certificate parsing and a missing databaseURL surface as ValueError; a
# rejected service-account key surfaces as a google-auth error at call time.
FIREBASE_ERRORS = (
    ValueError,
    firebase_exceptions.FirebaseError,
    google_api_exceptions.GoogleAPICallError,
    google_auth_exceptions.GoogleAuthError,
)


class FirebaseTokenStore(TokenStore):
    """Base for Firebase backends that connect on first use.

    ``connect`` returns the Firestore client or Firebase app; it runs inside
    the first storage call so initialisation failures become :class:`StorageError`.
    """

    backend_label = "Firebase"

    def __init__(
        self,
        connect: Callable[[], Any],
        storage_key: str = "default",
        *,
        clock: Callable[[], int] = now_ms,
    ):
        super().__init__(storage_key, clock=clock)
        self._connect = connect
        self._handle: Any = None

    @abstractmethod
    def _target(self, handle: Any) -> Any:
        """Return the document or reference holding this store's record."""

    async def _call(self, verb: str, method: str, *args: Any) -> Any:
        def _run() -> Any:
            if self._handle is None:
                self._handle = self._connect()
            return getattr(self._target(self._handle), method)(*args)

        try:
            return await anyio.to_thread.run_sync(_run)
        except FIREBASE_ERRORS as exc:
            logger.error("Firebase token store call failed", extra={"backend": self.backend_name}, exc_info=exc)
            raise StorageError(f"Unable to {verb} OAuth tokens in {self.backend_label}: {exc}") from exc

    async def _write(self, document: dict[str, Any]) -> None:
        await self._call("write", "set", document)

    async def _remove(self) -> None:
        await self._call("delete", "delete")


class FirestoreTokenStore(FirebaseTokenStore):
    """Store records as documents in the ``oauth_tokens`` Firestore collection."""

    backend_name = "firestore"
    backend_label = "Firestore"

    def _target(self, handle: Any) -> Any:
        return handle.collection(TOKEN_COLLECTION).document(self.storage_key)

    async def _read(self) -> dict[str, Any] | None:
        snapshot = await self._call("read", "get")
        if not snapshot.exists:
            return None
        return snapshot.to_dict()


class RealtimeDatabaseTokenStore(FirebaseTokenStore):
    """Store records under ``oauth_tokens/<key>`` in the Firebase Realtime Database."""

    backend_name = "rtdb"
    backend_label = "the Realtime Database"

    def _target(self, handle: Any) -> Any:
        return firebase_db.reference(f"{TOKEN_COLLECTION}/{self.storage_key}", app=handle)

    async def _read(self) -> dict[str, Any] | None:
        return await self._call("read", "get")


def build_token_store(settings: Settings) -> TokenStore:
    """Return the token store selected by ``TOKEN_STORAGE``."""

    key = settings.token_storage_key
    if settings.token_storage == "file":
        return FileTokenStore(Path(settings.token_file_path), key)
    if settings.token_storage == "database":
        from app.core.db import AsyncSessionLocal

        return DatabaseTokenStore(AsyncSessionLocal, key)
    if settings.token_storage == "rtdb":
        return RealtimeDatabaseTokenStore(lambda: get_firebase_app(settings), key)
    return FirestoreTokenStore(lambda: firestore.client(get_firebase_app(settings)), key)
