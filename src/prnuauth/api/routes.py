"""API route definitions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Request, Response, UploadFile, status

from prnuauth.api.middleware import verify_api_key
from prnuauth.api.schemas import (
    AIDetectionResponse,
    AuthenticationResponse,
    BatchAuthenticationResponse,
    CamerasResponse,
    ErrorResponse,
    FingerprintInfo,
    HealthResponse,
    TamperDetectionResponse,
)
from prnuauth.errors import FingerprintNotFoundError, PRNUError, ProcessingError

if TYPE_CHECKING:
    from collections.abc import Awaitable

    from prnuauth.authenticator import PRNUAuthenticator
    from prnuauth.config import Settings
    from prnuauth.ml.ai_detector import OnnxAIImageClassifier
    from prnuauth.ml.model_manager import DetectorModel

T = TypeVar("T")

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

_ERRORS = {
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    422: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_authenticator(request: Request) -> PRNUAuthenticator:
    authenticator: PRNUAuthenticator = request.app.state.authenticator
    return authenticator


async def _with_timeout(settings: Settings, awaitable: Awaitable[T]) -> T:
    if settings.request_timeout > 0:
        return await asyncio.wait_for(awaitable, timeout=settings.request_timeout)
    return await awaitable


async def _read_uploads(settings: Settings, files: list[UploadFile]) -> list[bytes]:
    if len(files) > settings.max_upload_files:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"At most {settings.max_upload_files} files per request",
        )
    return [await f.read() for f in files]


@router.post(
    "/cameras/{camera_id}/enroll",
    response_model=FingerprintInfo,
    responses=_ERRORS,
    summary="Enroll a camera from sample images",
)
async def enroll_camera(camera_id: str, files: list[UploadFile], request: Request) -> FingerprintInfo:
    """Build and store the PRNU fingerprint of a camera."""
    settings = _get_settings(request)
    images = await _read_uploads(settings, files)
    fingerprint = await _with_timeout(settings, _get_authenticator(request).enroll(camera_id, images))
    return FingerprintInfo.model_validate(fingerprint)


@router.post(
    "/cameras/{camera_id}/authenticate",
    response_model=AuthenticationResponse,
    responses=_ERRORS,
    summary="Authenticate an image against a camera",
)
async def authenticate_image(camera_id: str, file: UploadFile, request: Request) -> AuthenticationResponse:
    """Check whether an uploaded image was taken by the enrolled camera."""
    settings = _get_settings(request)
    data = await file.read()
    result = await _with_timeout(settings, _get_authenticator(request).authenticate(data, camera_id))
    return AuthenticationResponse.model_validate(result)


@router.post(
    "/cameras/{camera_id}/authenticate-batch",
    response_model=BatchAuthenticationResponse,
    responses=_ERRORS,
    summary="Authenticate several images against a camera",
)
async def authenticate_batch(
    camera_id: str, files: list[UploadFile], request: Request
) -> BatchAuthenticationResponse:
    """Authenticate all uploads; a single failing image fails the request."""
    settings = _get_settings(request)
    images = await _read_uploads(settings, files)
    results = await _with_timeout(settings, _get_authenticator(request).authenticate_batch(images, camera_id))
    return BatchAuthenticationResponse(results=[AuthenticationResponse.model_validate(r) for r in results])


@router.post(
    "/cameras/{camera_id}/detect-tampering",
    response_model=TamperDetectionResponse,
    responses=_ERRORS,
    summary="Localize tampered regions in an image",
)
async def detect_tampering(camera_id: str, file: UploadFile, request: Request) -> TamperDetectionResponse:
    """Flag blocks whose local match to the fingerprint is abnormally low."""
    settings = _get_settings(request)
    data = await file.read()
    result = await _with_timeout(settings, _get_authenticator(request).detect_tampering(data, camera_id))
    return TamperDetectionResponse.model_validate(result)


@router.get(
    "/cameras",
    response_model=CamerasResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="List enrolled cameras",
)
async def list_cameras(request: Request) -> CamerasResponse:
    return CamerasResponse(cameras=await _get_authenticator(request).list_enrolled_cameras())


@router.get(
    "/cameras/{camera_id}",
    response_model=FingerprintInfo,
    responses=_ERRORS,
    summary="Get fingerprint metadata for a camera",
)
async def get_camera(camera_id: str, request: Request) -> FingerprintInfo:
    fingerprint = await _get_authenticator(request).get_fingerprint(camera_id)
    if fingerprint is None:
        raise FingerprintNotFoundError(camera_id)
    return FingerprintInfo.model_validate(fingerprint)


@router.delete(
    "/cameras/{camera_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Delete a camera fingerprint",
)
async def delete_camera(camera_id: str, request: Request) -> Response:
    """Remove a fingerprint; deleting an unknown camera succeeds."""
    await _get_authenticator(request).delete_fingerprint(camera_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/classify-ai",
    response_model=AIDetectionResponse,
    responses=_ERRORS,
    summary="Classify an image as AI-generated or real",
)
async def classify_ai(file: UploadFile, request: Request) -> AIDetectionResponse:
    """Run the optional AI-image classifier; independent of camera enrollment."""
    classifier: OnnxAIImageClassifier | None = request.app.state.ai_classifier
    if classifier is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="AI image detection is not configured",
        )
    settings = _get_settings(request)
    data = await file.read()
    pool = _get_authenticator(request).pool
    try:
        result = await _with_timeout(settings, pool.run(classifier.detect, data))
    except (PRNUError, TimeoutError):
        raise
    except Exception as exc:
        raise ProcessingError(str(exc) or type(exc).__name__) from exc
    return AIDetectionResponse.model_validate(result)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    authenticator = _get_authenticator(request)
    detector: DetectorModel = request.app.state.detector_model
    return HealthResponse(
        status="ok",
        store_locked=bool(getattr(authenticator.store, "is_locked", False)),
        ai_detection=request.app.state.ai_classifier is not None,
        models_loaded=detector.loaded_models(),
        concurrent_requests=authenticator.pool.active_count,
        queue_depth=authenticator.pool.queue_depth,
    )
