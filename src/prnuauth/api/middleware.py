"""Middleware: API key authentication and domain error translation."""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING, Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from prnuauth.errors import (
    DimensionMismatchError,
    FingerprintNotFoundError,
    ImageProcessingError,
    InsufficientImagesError,
    PRNUError,
    StorageError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI

    from prnuauth.config import Settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)

# Starlette renamed the 422 constant; the number is stable.
_UNPROCESSABLE = 422

_ERROR_STATUS: list[tuple[type[PRNUError], int]] = [
    (InsufficientImagesError, _UNPROCESSABLE),
    (ImageProcessingError, _UNPROCESSABLE),
    (FingerprintNotFoundError, status.HTTP_404_NOT_FOUND),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DimensionMismatchError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _get_settings_from_request(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


async def verify_api_key(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(_bearer_scheme)],
) -> None:
    """Check the Bearer token against the configured API key.

    If no API key is configured (PRNUAUTH_API_KEY not set), all requests pass.
    If configured, requests must include 'Authorization: Bearer <key>'.
    """
    settings = _get_settings_from_request(request)
    if settings.api_key is None:
        return

    if credentials is None or not secrets.compare_digest(credentials.credentials.encode(), settings.api_key.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "Bearer"},
        )


def status_for(exc: PRNUError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


async def prnu_error_handler(request: Request, exc: Exception) -> JSONResponse:
    code = status_for(exc) if isinstance(exc, PRNUError) else status.HTTP_500_INTERNAL_SERVER_ERROR
    if code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=code, content={"detail": str(exc)})


async def timeout_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("%s %s timed out", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Request timed out"},
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PRNUError, prnu_error_handler)
    app.add_exception_handler(TimeoutError, timeout_handler)
