"""Version 1 API routes for the OAuth gateway."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from app.api.v1.auth import router as auth_router
from app.core.config import Settings, get_settings

router = APIRouter()
router.include_router(auth_router)


@router.get("/health", tags=["health"])
async def health_check(settings: Settings = Depends(get_settings)) -> dict[str, dict[str, str]]:
    """Report the service health information."""
    return {"data": {"status": "ok", "version": settings.version}}
