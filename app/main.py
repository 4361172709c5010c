"""Application entrypoint for the Google OAuth gateway."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException

from app.api.v1 import router as api_v1_router
from app.api.v1.common import error_response
from app.core.config import Settings, get_settings
from app.core.logging import configure_logging
from app.core.oauth_google import GoogleAPIError, GoogleNotConfiguredError
from app.services.session_manager import IdentityResolutionError, ReauthorizationRequiredError
from app.services.token_store import StorageError

logger = logging.getLogger(__name__)

ERROR_CODE_MAP: dict[int, str] = {
    404: "RESOURCE_NOT_FOUND",
    422: "VALIDATION_ERROR",
}


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance."""
    settings = get_settings()
    configure_logging(settings)

    application = FastAPI(title="Google OAuth Gateway", version=settings.version)

    _configure_cors(application, settings)
    _configure_exception_handlers(application)

    application.include_router(api_v1_router, prefix="/api/v1")

    @application.on_event("startup")
    async def _on_startup() -> None:  # pragma: no cover - database backend only
        if get_settings().token_storage == "database":
            from app.core.db import create_tables

            await create_tables()

    return application


def _configure_cors(application: FastAPI, settings: Settings) -> None:
    if not settings.cors_origins:
        return

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _configure_exception_handlers(application: FastAPI) -> None:
    application.add_exception_handler(HTTPException, _http_exception_handler)
    application.add_exception_handler(RequestValidationError, _validation_exception_handler)
    application.add_exception_handler(ReauthorizationRequiredError, _reauthorization_handler)
    application.add_exception_handler(GoogleNotConfiguredError, _not_configured_handler)
    application.add_exception_handler(IdentityResolutionError, _google_api_handler)
    application.add_exception_handler(GoogleAPIError, _google_api_handler)
    application.add_exception_handler(StorageError, _storage_error_handler)
    application.add_exception_handler(Exception, _unhandled_exception_handler)


async def _http_exception_handler(_: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)
    if isinstance(exc.detail, dict):
        message = str(exc.detail.get("message", "")) or str(exc.detail)
        code = exc.detail.get(
            "code", ERROR_CODE_MAP.get(exc.status_code, f"HTTP_{exc.status_code}")
        )
    else:
        message = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        code = ERROR_CODE_MAP.get(exc.status_code, f"HTTP_{exc.status_code}")
    return error_response(code, message, exc.status_code)


async def _validation_exception_handler(_: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    logger.info("Validation error", extra={"errors": exc.errors()})
    return error_response("VALIDATION_ERROR", "Validation error", status_code=422)


async def _reauthorization_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.info("Google session unusable", extra={"reason": type(exc).__name__})
    return error_response("REAUTHORIZATION_REQUIRED", str(exc), status_code=401)


async def _not_configured_handler(_: Request, exc: Exception) -> JSONResponse:
    return error_response("GOOGLE_NOT_CONFIGURED", str(exc), status_code=500)


async def _google_api_handler(_: Request, exc: Exception) -> JSONResponse:
    return error_response("GOOGLE_API_ERROR", str(exc), status_code=502)


async def _storage_error_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.error("Token storage unavailable", exc_info=exc)
    return error_response("STORAGE_UNAVAILABLE", "Token storage is unavailable", status_code=503)


async def _unhandled_exception_handler(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled application error")
    return error_response("INTERNAL_SERVER_ERROR", "Internal server error", status_code=500)


app = create_app()
