"""Google OAuth session endpoints.

Storage failures and re-authorization errors raised here are turned into
error envelopes by the handlers registered in :mod:`app.main`.
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import RedirectResponse

from app.api.v1.common import data_response
from app.core.config import Settings, get_settings
from app.core.oauth_google import ExchangeError, GoogleNotConfiguredError, GoogleOAuthError
from app.schemas import ms_to_iso
from app.services.session_manager import OAuthSessionManager, get_session_manager
from app.services.token_store import StorageError

router = APIRouter(prefix="/auth", tags=["auth"])

logger = logging.getLogger(__name__)


def _not_configured() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "code": "GOOGLE_NOT_CONFIGURED",
            "message": "Google OAuth credentials are not fully configured",
        },
    )


@router.get("/login", status_code=status.HTTP_302_FOUND)
async def login(
    state: str | None = None,
    settings: Settings = Depends(get_settings),
    manager: OAuthSessionManager = Depends(get_session_manager),
) -> RedirectResponse:
    """Redirect the user to Google's OAuth consent page."""

    if not settings.google_oauth_configured:
        raise _not_configured()
    return RedirectResponse(manager.build_authorization_url(state), status_code=status.HTTP_302_FOUND)


@router.get("/callback")
async def callback(
    code: str | None = None,
    error: str | None = None,
    manager: OAuthSessionManager = Depends(get_session_manager),
) -> dict[str, dict[str, Any]]:
    """Exchange the authorization code and report the signed-in account."""

    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "GOOGLE_OAUTH_ERROR", "message": f"Google OAuth error: {error}"},
        )
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "VALIDATION_ERROR", "message": "Missing authorization code"},
        )

    try:
        record = await manager.exchange_code(code)
    except GoogleNotConfiguredError as exc:
        raise _not_configured() from exc
    except ExchangeError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "code": "EXCHANGE_FAILED",
                "message": "Failed to exchange authorization code, try authenticating again",
            },
        ) from exc

    user = None
    try:
        identity = await manager.resolve_identity(manager.provider.create_client(record))
        user = identity.model_dump()
        logger.info("Authentication complete", extra={"email": identity.email})
    except GoogleOAuthError as exc:
        logger.warning("Authenticated without user info", extra={"reason": str(exc)})

    return data_response(
        {
            "authenticated": True,
            "user": user,
            "scopes": record.scopes,
            "hasRefreshToken": record.refresh_token is not None,
            "sessionExpiresAt": ms_to_iso(record.session_expiry),
        }
    )


@router.get("/status")
async def session_status(
    manager: OAuthSessionManager = Depends(get_session_manager),
) -> dict[str, dict[str, Any]]:
    """Report whether a usable Google session is stored."""

    report = await manager.session_status()
    return data_response(report.model_dump(by_alias=True))


@router.get("/me")
async def current_user(
    manager: OAuthSessionManager = Depends(get_session_manager),
) -> dict[str, dict[str, Any]]:
    """Return the signed-in Google account, refreshing the access token when needed."""

    client = await manager.get_authenticated_client()
    identity = await manager.resolve_identity(client)
    return data_response(identity.model_dump())


@router.post("/logout")
async def logout(
    manager: OAuthSessionManager = Depends(get_session_manager),
) -> dict[str, dict[str, bool]]:
    """Revoke the Google token and clear the stored session."""

    await manager.revoke_session()
    return data_response({"logged_out": True})


@router.get("/diagnostics")
async def diagnostics(
    settings: Settings = Depends(get_settings),
    manager: OAuthSessionManager = Depends(get_session_manager),
) -> dict[str, dict[str, Any]]:
    """Report masked OAuth configuration and token store reachability."""

    if settings.app_env == "prod":
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not Found")

    try:
        await manager.store.load()
        storage_status = "reachable"
    except StorageError as exc:
        storage_status = f"error: {exc}"

    client_id = settings.google_client_id
    return data_response(
        {
            "env": {
                "GOOGLE_CLIENT_ID": f"set ({client_id[:8]}...)" if client_id else "MISSING",
                "GOOGLE_CLIENT_SECRET": "set" if settings.google_client_secret else "MISSING",
                "GOOGLE_REDIRECT_URI": settings.google_redirect_uri or "MISSING",
                "TOKEN_STORAGE": settings.token_storage,
                "TOKEN_STORAGE_KEY": settings.token_storage_key,
                "FIREBASE_PROJECT_ID": settings.firebase_project_id or "MISSING",
                "FIREBASE_DATABASE_URL": settings.firebase_database_url or "MISSING",
                "FIREBASE_CLIENT_EMAIL": settings.firebase_client_email or "MISSING",
                "FIREBASE_PRIVATE_KEY": "set" if settings.firebase_private_key else "MISSING",
            },
            "storage": {"backend": manager.store.backend_name, "status": storage_status},
        }
    )
