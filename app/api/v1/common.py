"""Common helpers for API responses."""
from __future__ import annotations

from typing import TypeVar

from fastapi.responses import JSONResponse

T = TypeVar("T")


def data_response(payload: T) -> dict[str, T]:
    """Wrap a payload in the standard data envelope."""

    return {"data": payload}


def error_response(code: str, message: str, status_code: int) -> JSONResponse:
    """Return the standard error envelope."""

    return JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})
