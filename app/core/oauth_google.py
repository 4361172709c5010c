"""Google OAuth endpoints and the authenticated API client."""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any
from urllib.parse import urlencode

import anyio
import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token

from app.core.config import Settings, get_settings
from app.schemas import TokenRecord, now_ms

AUTH_BASE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
REVOKE_URL = "https://oauth2.googleapis.com/revoke"
USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
DEFAULT_STATE = "default"
HTTP_TIMEOUT = 10.0

TOKEN_RESPONSE_FIELDS = ("access_token", "refresh_token", "token_type", "scope", "id_token")

logger = logging.getLogger(__name__)


class GoogleOAuthError(Exception):
    """Base error for Google OAuth operations."""


class GoogleNotConfiguredError(GoogleOAuthError):
    """Raised when OAuth credentials are not configured."""


class GoogleAPIError(GoogleOAuthError):
    """Raised when a Google endpoint returns an error response."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ExchangeError(GoogleAPIError):
    """Raised when Google rejects an authorization code."""


class RefreshError(GoogleAPIError):
    """Raised when Google refuses to mint a new access token."""


class RevocationError(GoogleAPIError):
    """Raised when Google fails to revoke a token."""


class IdTokenVerificationError(GoogleOAuthError):
    """Raised when an ID token is missing, malformed or fails signature checks."""


class GoogleClient:
    """Bearer-authenticated HTTP client for Google APIs.

    Holds the credentials produced by the session manager; one instance is
    built per ``get_authenticated_client`` call.
    """

    def __init__(
        self,
        credentials: TokenRecord,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        self._credentials = credentials
        self._transport = transport
        self._timeout = timeout

    @property
    def credentials(self) -> TokenRecord:
        return self._credentials

    def set_credentials(self, credentials: TokenRecord) -> None:
        self._credentials = credentials

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._credentials.access_token}"}

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        headers = {**self.authorization_header, "Accept": "application/json"}
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=headers, params=params, json=json)
        except httpx.HTTPError as exc:
            logger.error("Google API request failed", extra={"url": url}, exc_info=exc)
            raise GoogleAPIError("Failed to communicate with Google API") from exc

        if response.status_code >= 400:
            logger.error(
                "Google API error",
                extra={"url": url, "status_code": response.status_code, "body": response.text},
            )
            raise GoogleAPIError(
                "Google API error",
                status_code=response.status_code,
                body=response.text,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()


class GoogleOAuthProvider:
    """Talk to Google's OAuth 2.0 endpoints for a single configured client."""

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.settings = settings
        self.transport = transport
        self._clock = clock

    def _require_configured(self) -> None:
        if not self.settings.google_oauth_configured:
            raise GoogleNotConfiguredError("Google OAuth credentials are not fully configured")

    def build_authorize_url(self, *, state: str | None = None) -> str:
        """Return the Google consent URL requesting offline access."""

        params: dict[str, Any] = {
            "client_id": self.settings.google_client_id,
            "redirect_uri": self.settings.google_redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.settings.google_scopes),
            "access_type": "offline",
            "prompt": "consent",
            "state": state or DEFAULT_STATE,
        }
        return f"{AUTH_BASE_URL}?{urlencode(params)}"

    def create_client(self, credentials: TokenRecord) -> GoogleClient:
        return GoogleClient(credentials, transport=self.transport)

    async def exchange_code(self, code: str) -> dict[str, Any]:
        """Exchange an authorization code for a token set."""

        self._require_configured()
        payload = {
            "code": code,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "redirect_uri": self.settings.google_redirect_uri,
            "grant_type": "authorization_code",
        }
        token_data = await self._request_token(payload, ExchangeError)
        return self._normalise_token_response(token_data, ExchangeError)

    async def refresh_access_token(self, refresh_token: str) -> dict[str, Any]:
        """Mint a new access token; Google omits ``refresh_token`` from the reply."""

        self._require_configured()
        payload = {
            "refresh_token": refresh_token,
            "client_id": self.settings.google_client_id,
            "client_secret": self.settings.google_client_secret,
            "grant_type": "refresh_token",
        }
        token_data = await self._request_token(payload, RefreshError)
        return self._normalise_token_response(token_data, RefreshError)

    async def revoke_token(self, token: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self.transport) as client:
                response = await client.post(
                    REVOKE_URL,
                    data={"token": token},
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                )
        except httpx.HTTPError as exc:
            raise RevocationError("Unable to reach Google revocation endpoint") from exc

        if response.status_code >= 400:
            raise RevocationError(
                "Google token revocation failed",
                status_code=response.status_code,
                body=response.text,
            )

    async def verify_id_token(self, token: str | None) -> dict[str, Any]:
        """Verify a Google-signed ID token against this client id and return its claims."""

        if not token:
            raise IdTokenVerificationError("No ID token available")

        def _verify() -> dict[str, Any]:
            return google_id_token.verify_oauth2_token(
                token, google_requests.Request(), audience=self.settings.google_client_id
            )

        try:
            return await anyio.to_thread.run_sync(_verify)
        except (ValueError, google_auth_exceptions.GoogleAuthError) as exc:
            raise IdTokenVerificationError(str(exc)) from exc

    def _normalise_token_response(
        self, token_data: dict[str, Any], error_cls: type[GoogleAPIError]
    ) -> dict[str, Any]:
        if not token_data.get("access_token"):
            raise error_cls("Google token response missing access_token")

        credentials = {
            field: token_data[field] for field in TOKEN_RESPONSE_FIELDS if token_data.get(field)
        }
        if token_data.get("expires_in") is not None:
            credentials["expiry_date"] = self._clock() + int(token_data["expires_in"]) * 1000
        return credentials

    async def _request_token(
        self, payload: dict[str, str], error_cls: type[GoogleAPIError]
    ) -> dict[str, Any]:
        try:
            async with httpx.AsyncClient(timeout=HTTP_TIMEOUT, transport=self.transport) as client:
                response = await client.post(TOKEN_URL, data=payload)
        except httpx.HTTPError as exc:
            logger.error("Failed to communicate with Google OAuth token endpoint", exc_info=exc)
            raise error_cls("Unable to reach Google OAuth endpoint") from exc

        if response.status_code >= 400:
            logger.error(
                "Google OAuth token request failed",
                extra={
                    "grant_type": payload["grant_type"],
                    "status_code": response.status_code,
                    "body": response.text,
                },
            )
            raise error_cls(
                "Google OAuth token request failed",
                status_code=response.status_code,
                body=response.text,
            )
        return response.json()


def get_google_oauth_provider() -> GoogleOAuthProvider:
    return GoogleOAuthProvider(get_settings())
