"""Pydantic request/response schemas for the PRNU authentication API."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from prnuauth.models import QualityLevel, SeverityLevel


class FingerprintInfo(BaseModel):
    """Metadata of an enrolled fingerprint (the vector itself is not exposed)."""

    model_config = ConfigDict(from_attributes=True)

    camera_id: str
    width: int
    height: int
    enrollment_date: datetime
    number_of_images: int
    average_pce: float = Field(description="Mean PCE of the enrollment residuals against the fingerprint")
    version: str
    size_in_bytes: int


class AuthenticationResponse(BaseModel):
    """Result of matching one image against a camera fingerprint."""

    model_config = ConfigDict(from_attributes=True)

    is_authentic: bool
    pce_score: float
    confidence: float = Field(ge=0.0, le=100.0)
    camera_id: str
    timestamp: datetime
    quality_level: QualityLevel
    metadata: dict[str, Any]


class BatchAuthenticationResponse(BaseModel):
    """Results of a batch authentication, in upload order."""

    results: list[AuthenticationResponse]


class TamperedRegion(BaseModel):
    """Pixel rectangle on the processing grid."""

    model_config = ConfigDict(from_attributes=True)

    x: int
    y: int
    width: int
    height: int


class TamperDetectionResponse(BaseModel):
    """Result of block-wise tamper localization."""

    model_config = ConfigDict(from_attributes=True)

    is_tampered: bool
    tampered_regions: list[TamperedRegion]
    overall_pce: float = Field(description="Mean of the per-block PCE scores")
    confidence: float = Field(ge=0.0, le=100.0)
    total_blocks: int
    severity_level: SeverityLevel


class CamerasResponse(BaseModel):
    """Enrolled camera IDs."""

    cameras: list[str]


class AIDetectionResponse(BaseModel):
    """Verdict of the AI-generated image classifier."""

    model_config = ConfigDict(from_attributes=True)

    is_ai_generated: bool
    confidence: float = Field(ge=0.0, le=1.0)
    processing_time: float
    details: dict[str, Any]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    store_locked: bool
    ai_detection: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
