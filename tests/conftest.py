from __future__ import annotations

import os
import sys
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx  # noqa: E402
import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from app.core.config import Settings, get_settings  # noqa: E402

TEST_TOKEN_FILE = ROOT / "test-tokens.json"
if TEST_TOKEN_FILE.exists():
    TEST_TOKEN_FILE.unlink()
os.environ["APP_ENV"] = "test"
os.environ["TOKEN_STORAGE"] = "file"
os.environ["TOKEN_FILE_PATH"] = str(TEST_TOKEN_FILE)
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{ROOT / 'test.db'}"
os.environ["GOOGLE_CLIENT_ID"] = "client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "client-secret"
os.environ["GOOGLE_REDIRECT_URI"] = "http://localhost/callback"
get_settings.cache_clear()

from app.core.oauth_google import (  # noqa: E402
    USERINFO_URL,
    ExchangeError,
    GoogleOAuthProvider,
    IdTokenVerificationError,
)
from app.schemas import TokenRecord  # noqa: E402
from app.services.session_manager import OAuthSessionManager, get_session_manager  # noqa: E402
from app.services.token_store import FileTokenStore  # noqa: E402

NOW = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = NOW):
        self.now = now

    def __call__(self) -> int:
        return self.now


class RecordingTokenStore(FileTokenStore):
    """File store that remembers every record passed to ``save``."""

    def __init__(self, path: Path, clock: FakeClock):
        super().__init__(path, clock=clock)
        self.saved: list[TokenRecord] = []

    async def save(self, record: TokenRecord) -> None:
        self.saved.append(record)
        await super().save(record)


class FakeGoogleProvider(GoogleOAuthProvider):
    """Provider whose Google endpoints are answered in-process."""

    def __init__(self, settings: Settings, clock: FakeClock):
        super().__init__(settings, transport=httpx.MockTransport(self._handle), clock=clock)
        self.exchange_response: dict[str, Any] = {
            "access_token": "access-1",
            "refresh_token": "refresh-1",
            "expiry_date": clock() + 3_600_000,
            "token_type": "Bearer",
            "scope": "openid email profile",
            "id_token": "id-token-1",
        }
        self.rejected_codes: set[str] = set()
        self.refresh_response: dict[str, Any] = {
            "access_token": "access-2",
            "expiry_date": clock() + 3_600_000,
            "token_type": "Bearer",
        }
        self.refresh_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.id_token_claims: dict[str, Any] | None = None
        self.userinfo: dict[str, Any] | None = None
        self.exchange_calls: list[str] = []
        self.refresh_calls: list[str] = []
        self.revoke_calls: list[str] = []
        self.userinfo_authorizations: list[str] = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == USERINFO_URL:
            self.userinfo_authorizations.append(request.headers.get("Authorization", ""))
            if self.userinfo is None:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=self.userinfo)
        return httpx.Response(404)

    async def exchange_code(self, code: str) -> dict[str, Any]:
        self.exchange_calls.append(code)
        if code in self.rejected_codes:
            raise ExchangeError("invalid_grant", status_code=400, body='{"error": "invalid_grant"}')
        return dict(self.exchange_response)

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return dict(self.refresh_response)

    async def revoke_token(self, token: str) -> None:
        self.revoke_calls.append(token)
        if self.revoke_error is not None:
            raise self.revoke_error

    async def verify_id_token(self, token: str | None) -> dict[str, Any]:
        if token and self.id_token_claims is not None:
            return self.id_token_claims
        raise IdTokenVerificationError("ID token rejected")


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        google_client_id="client-id.apps.googleusercontent.com",
        google_client_secret="client-secret",
        google_redirect_uri="http://localhost/callback",
    )


@pytest.fixture()
def store(tmp_path: Path, clock: FakeClock) -> RecordingTokenStore:
    return RecordingTokenStore(tmp_path / "tokens.json", clock)


@pytest.fixture()
def provider(settings: Settings, clock: FakeClock) -> FakeGoogleProvider:
    return FakeGoogleProvider(settings, clock)


@pytest.fixture()
def manager(
    settings: Settings,
    store: RecordingTokenStore,
    provider: FakeGoogleProvider,
    clock: FakeClock,
) -> OAuthSessionManager:
    return OAuthSessionManager(settings, store, provider, clock=clock)


@pytest.fixture()
async def client(manager: OAuthSessionManager) -> AsyncIterator[AsyncClient]:
    from app.main import app

    app.dependency_overrides[get_session_manager] = lambda: manager
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"
