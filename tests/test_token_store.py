from __future__ import annotations

import json
import os
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import Settings
from app.models import Base
from app.schemas import TokenRecord
from app.services import token_store
from app.services.token_store import (
    DatabaseTokenStore,
    FileTokenStore,
    FirestoreTokenStore,
    RealtimeDatabaseTokenStore,
    StorageError,
    build_token_store,
)

from conftest import NOW, FakeClock

RECORD = TokenRecord(
    access_token="a1",
    refresh_token="r1",
    expiry_date=NOW + 3_600_000,
    scope="openid email",
    session_expiry=NOW + 7_776_000_000,
)


@pytest.mark.anyio("asyncio")
async def test_file_store_roundtrip_strips_updated_at(tmp_path):
    path = tmp_path / "tokens.json"
    store = FileTokenStore(path, clock=FakeClock())

    assert await store.load() is None
    await store.save(RECORD)

    on_disk = json.loads(path.read_text(encoding="utf-8"))
    assert on_disk["default"]["updatedAt"] == NOW
    assert await store.load() == RECORD


@pytest.mark.anyio("asyncio")
async def test_file_store_keys_are_isolated(tmp_path):
    path = tmp_path / "tokens.json"
    default_store = FileTokenStore(path)
    other_store = FileTokenStore(path, "secondary")

    await default_store.save(RECORD)
    await other_store.save(TokenRecord(access_token="other"))
    await other_store.delete()

    assert await other_store.load() is None
    assert await default_store.load() == RECORD
    assert path.exists()


@pytest.mark.anyio("asyncio")
async def test_file_store_delete_is_idempotent(tmp_path):
    path = tmp_path / "tokens.json"
    store = FileTokenStore(path)

    await store.delete()
    await store.save(RECORD)
    await store.delete()
    await store.delete()

    assert not path.exists()
    assert await store.load() is None


@pytest.mark.anyio("asyncio")
async def test_file_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text("{not json", encoding="utf-8")

    with pytest.raises(StorageError):
        await FileTokenStore(path).load()


@pytest.mark.anyio("asyncio")
async def test_file_store_rejects_malformed_record(tmp_path):
    path = tmp_path / "tokens.json"
    path.write_text(json.dumps({"default": {"refresh_token": "r1"}}), encoding="utf-8")

    with pytest.raises(StorageError):
        await FileTokenStore(path).load()


@pytest.mark.anyio("asyncio")
async def test_file_store_failed_write_keeps_previous_record(tmp_path, monkeypatch):
    path = tmp_path / "tokens.json"
    store = FileTokenStore(path)
    await store.save(RECORD)

    def interrupted_dump(data, handle, **kwargs):
        handle.write("{\"default\": {\"access_")
        raise OSError("disk full")

    monkeypatch.setattr(token_store.json, "dump", interrupted_dump)

    with pytest.raises(StorageError):
        await store.save(RECORD.model_copy(update={"access_token": "a2"}))

    monkeypatch.undo()
    assert await store.load() == RECORD
    assert os.listdir(tmp_path) == ["tokens.json"]


@pytest.mark.anyio("asyncio")
async def test_database_store_roundtrip(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'tokens.db'}")
    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
    store = DatabaseTokenStore(async_sessionmaker(engine, expire_on_commit=False), clock=FakeClock())

    try:
        assert await store.load() is None
        await store.save(RECORD)
        assert await store.load() == RECORD

        refreshed = RECORD.model_copy(update={"access_token": "a2"})
        await store.save(refreshed)
        assert await store.load() == refreshed

        await store.delete()
        await store.delete()
        assert await store.load() is None
    finally:
        await engine.dispose()


@pytest.mark.anyio("asyncio")
async def test_database_store_wraps_backend_errors(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
    store = DatabaseTokenStore(async_sessionmaker(engine, expire_on_commit=False))

    try:
        with pytest.raises(StorageError):
            await store.load()
        with pytest.raises(StorageError):
            await store.save(RECORD)
    finally:
        await engine.dispose()


class FakeSnapshot:
    def __init__(self, data: dict[str, Any] | None):
        self._data = data
        self.exists = data is not None

    def to_dict(self) -> dict[str, Any] | None:
        return self._data


class FakeDocument:
    def __init__(self, documents: dict[str, dict[str, Any]], key: str):
        self._documents = documents
        self._key = key

    def set(self, data: dict[str, Any]) -> None:
        self._documents[self._key] = dict(data)

    def get(self) -> FakeSnapshot:
        return FakeSnapshot(self._documents.get(self._key))

    def delete(self) -> None:
        self._documents.pop(self._key, None)


class FakeFirestore:
    def __init__(self) -> None:
        self.collections: dict[str, dict[str, dict[str, Any]]] = {}

    def collection(self, name: str) -> Any:
        documents = self.collections.setdefault(name, {})

        class _Collection:
            def document(self, key: str) -> FakeDocument:
                return FakeDocument(documents, key)

        return _Collection()


@pytest.mark.anyio("asyncio")
async def test_firestore_store_uses_oauth_tokens_collection():
    firestore_client = FakeFirestore()
    store = FirestoreTokenStore(lambda: firestore_client, "default", clock=FakeClock())

    await store.save(RECORD)

    document = firestore_client.collections["oauth_tokens"]["default"]
    assert document["updatedAt"] == NOW
    assert document["refresh_token"] == "r1"
    assert await store.load() == RECORD

    await store.delete()
    assert await store.load() is None


class FakeReference:
    def __init__(self, tree: dict[str, Any], path: str):
        self._tree = tree
        self._path = path

    def set(self, value: dict[str, Any]) -> None:
        self._tree[self._path] = dict(value)

    def get(self) -> dict[str, Any] | None:
        return self._tree.get(self._path)

    def delete(self) -> None:
        self._tree.pop(self._path, None)


@pytest.mark.anyio("asyncio")
async def test_rtdb_store_uses_keyed_reference(monkeypatch):
    tree: dict[str, Any] = {}
    firebase_app = object()
    monkeypatch.setattr(
        token_store.firebase_db, "reference", lambda path, app=None: FakeReference(tree, path)
    )
    store = RealtimeDatabaseTokenStore(lambda: firebase_app, "secondary", clock=FakeClock())

    await store.save(RECORD)

    assert tree["oauth_tokens/secondary"]["updatedAt"] == NOW
    assert await store.load() == RECORD

    await store.delete()
    await store.delete()
    assert await store.load() is None


def test_build_token_store_selects_backend(tmp_path) -> None:
    file_store = build_token_store(
        Settings(token_storage="file", token_file_path=str(tmp_path / "t.json"), token_storage_key="ops")
    )
    assert isinstance(file_store, FileTokenStore)
    assert file_store.storage_key == "ops"
    assert file_store.path == tmp_path / "t.json"

    database_store = build_token_store(Settings(token_storage="database"))
    assert isinstance(database_store, DatabaseTokenStore)


def test_unknown_backend_is_rejected() -> None:
    with pytest.raises(ValueError):
        Settings(token_storage="redis")


@pytest.mark.anyio("asyncio")
async def test_firebase_store_connects_once_on_first_use():
    firestore_client = FakeFirestore()
    connections: list[FakeFirestore] = []

    def connect() -> FakeFirestore:
        connections.append(firestore_client)
        return firestore_client

    store = FirestoreTokenStore(connect, "default", clock=FakeClock())
    assert connections == []

    await store.save(RECORD)
    await store.load()
    await store.delete()

    assert len(connections) == 1


@pytest.mark.anyio("asyncio")
async def test_firebase_initialisation_failure_is_a_storage_error():
    def connect() -> Any:
        raise ValueError("Failed to initialize a certificate credential")

    firestore_store = FirestoreTokenStore(connect)
    rtdb_store = RealtimeDatabaseTokenStore(connect)

    for store in (firestore_store, rtdb_store):
        with pytest.raises(StorageError, match="certificate credential"):
            await store.load()
        with pytest.raises(StorageError):
            await store.save(RECORD)
        with pytest.raises(StorageError):
            await store.delete()


@pytest.mark.anyio("asyncio")
async def test_firestore_backend_without_credentials_fails_on_use():
    store = build_token_store(Settings(token_storage="firestore"))

    assert isinstance(store, FirestoreTokenStore)
    with pytest.raises(StorageError):
        await store.load()
