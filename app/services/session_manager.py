"""OAuth token lifecycle: code exchange, lazy refresh, revocation and identity."""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from app.core.config import Settings, get_settings
from app.core.oauth_google import (
    USERINFO_URL,
    GoogleAPIError,
    GoogleClient,
    GoogleOAuthError,
    GoogleOAuthProvider,
    IdTokenVerificationError,
    RevocationError,
    get_google_oauth_provider,
)
from app.schemas import (
    SESSION_TTL_MS,
    SessionState,
    SessionStatus,
    TokenRecord,
    UserIdentity,
    ms_to_iso,
    now_ms,
    session_state,
)
from app.services.token_store import TokenStore, build_token_store

logger = logging.getLogger(__name__)


class ReauthorizationRequiredError(GoogleOAuthError):
    """The stored session cannot be used; the user must redo the consent flow."""


class NotAuthenticatedError(ReauthorizationRequiredError):
    """No token record exists for the configured storage key."""


class SessionExpiredError(ReauthorizationRequiredError):
    """The application-level session boundary has passed."""


class NoRefreshTokenError(ReauthorizationRequiredError):
    """The stored record carries no refresh token and cannot be renewed."""


class IdentityResolutionError(GoogleOAuthError):
    """Neither the ID token nor the userinfo endpoint yielded an identity."""


class OAuthSessionManager:
    """Own the OAuth session for the single configured identity.

    The manager holds configuration, a :class:`TokenStore` and the OAuth
    provider. Every call to :meth:`get_authenticated_client` builds a fresh
    :class:`GoogleClient`; refresh happens lazily inside that call.

    Concurrent callers that both observe an expired access token will each
    refresh and each save. Both merges pin the same ``refresh_token`` and
    ``session_expiry`` so the stored record stays consistent.
    """

    def __init__(
        self,
        settings: Settings,
        store: TokenStore,
        provider: GoogleOAuthProvider,
        *,
        clock: Callable[[], int] = now_ms,
        session_ttl_ms: int = SESSION_TTL_MS,
    ):
        self.settings = settings
        self.store = store
        self.provider = provider
        self._clock = clock
        self._session_ttl_ms = session_ttl_ms

    def build_authorization_url(self, state: str | None = None) -> str:
        return self.provider.build_authorize_url(state=state)

    async def exchange_code(self, code: str) -> TokenRecord:
        """Exchange ``code`` for tokens and overwrite the stored record."""

        logger.info("Exchanging authorization code for tokens")
        credentials = await self.provider.exchange_code(code)
        record = TokenRecord.model_validate(
            {**credentials, "session_expiry": self._clock() + self._session_ttl_ms}
        )
        await self.store.save(record)
        logger.info(
            "Authorization code exchanged",
            extra={
                "has_refresh_token": record.refresh_token is not None,
                "session_expiry": ms_to_iso(record.session_expiry),
            },
        )
        return record

    async def get_authenticated_client(self) -> GoogleClient:
        """Return a client with valid credentials, refreshing the access token if stale."""

        record = await self.store.load()
        if record is None:
            raise NotAuthenticatedError("No tokens found. Authenticate via the login endpoint first")

        now = self._clock()
        state = session_state(record, now)
        if record.session_expired(now):
            raise SessionExpiredError("Session expired after 3 months. Authenticate again")

        if not record.refresh_token:
            raise NoRefreshTokenError("No refresh token available. Authenticate again")

        client = self.provider.create_client(record)

        if state is SessionState.ACCESS_EXPIRED_REFRESHABLE:
            refreshed = await self._refresh(record)
            client.set_credentials(refreshed)

        return client

    async def _refresh(self, record: TokenRecord) -> TokenRecord:
        assert record.refresh_token is not None
        logger.info("Access token expired; refreshing")
        credentials = await self.provider.refresh_access_token(record.refresh_token)
        # Google sends refresh_token only on the first grant; both long-lived
        # fields keep their stored values whatever the refresh reply carries.
        merged = TokenRecord.model_validate(
            {
                **record.to_storage(),
                **credentials,
                "refresh_token": record.refresh_token,
                "session_expiry": record.session_expiry,
            }
        )
        await self.store.save(merged)
        return merged

    async def revoke_session(self) -> None:
        """Revoke the access token at Google (best effort) and delete the local record."""

        record = await self.store.load()
        if record is not None and record.access_token:
            await self._revoke_quietly(record.access_token)
        await self.store.delete()

    async def _revoke_quietly(self, access_token: str) -> None:
        try:
            await self.provider.revoke_token(access_token)
        except RevocationError as exc:
            logger.warning(
                "Google token revocation failed; clearing local session anyway",
                extra={"status_code": exc.status_code},
            )
        else:
            logger.info("Revoked Google access token")

    async def resolve_identity(self, client: GoogleClient) -> UserIdentity:
        """Identify the signed-in user from the ID token, falling back to userinfo."""

        credentials = client.credentials
        try:
            claims = await self.provider.verify_id_token(credentials.id_token)
        except IdTokenVerificationError as exc:
            logger.info("ID token unavailable for identity; using userinfo", extra={"reason": str(exc)})
        else:
            return UserIdentity(
                id=str(claims["sub"]),
                email=claims.get("email") or "",
                name=claims.get("name") or "",
                picture=claims.get("picture"),
            )

        try:
            profile = await client.request("GET", USERINFO_URL)
        except GoogleAPIError as exc:
            raise IdentityResolutionError("Unable to resolve Google account identity") from exc
        return _identity_from_profile(profile)

    async def session_status(self) -> SessionStatus:
        """Summarise the stored session for the status endpoint."""

        record = await self.store.load()
        if record is None:
            return SessionStatus(authenticated=False)

        now = self._clock()
        token_expired = record.access_token_expired(now)
        user: UserIdentity | None = None
        if session_state(record, now) in (SessionState.ACTIVE, SessionState.ACCESS_EXPIRED_REFRESHABLE):
            try:
                client = await self.get_authenticated_client()
                user = await self.resolve_identity(client)
            except GoogleOAuthError as exc:
                logger.info("Session status without user", extra={"reason": type(exc).__name__})

        return SessionStatus(
            authenticated=True,
            token_expired=token_expired,
            session_expired=record.session_expired(now),
            has_refresh_token=bool(record.refresh_token),
            session_expires_at=ms_to_iso(record.session_expiry),
            user=user,
            scopes=record.scopes,
        )


def _identity_from_profile(profile: dict[str, Any] | None) -> UserIdentity:
    if not profile or not profile.get("id"):
        raise IdentityResolutionError("Google userinfo response did not include an account id")
    return UserIdentity(
        id=str(profile["id"]),
        email=profile.get("email") or "",
        name=profile.get("name") or "",
        picture=profile.get("picture"),
    )


def get_session_manager() -> OAuthSessionManager:
    settings = get_settings()
    return OAuthSessionManager(settings, build_token_store(settings), get_google_oauth_provider())
