"""Domain records produced by enrollment, authentication and tamper detection."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import numpy as np

from prnuauth.errors import DimensionMismatchError

if TYPE_CHECKING:
    from numpy.typing import NDArray

FINGERPRINT_VERSION = "1.0.0"


class QualityLevel(StrEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"


class SeverityLevel(StrEnum):
    NONE = "none"
    MINIMAL = "minimal"
    MINOR = "minor"
    MODERATE = "moderate"
    SEVERE = "severe"


@dataclass(frozen=True)
class CameraFingerprint:
    """An enrolled sensor fingerprint.

    The vector is stored row-major with ``width * height`` samples and is
    made read-only on construction. Re-enrolling a camera builds a new
    record rather than editing this one.
    """

    camera_id: str
    fingerprint: NDArray[np.float32]
    width: int
    height: int
    enrollment_date: datetime
    number_of_images: int
    average_pce: float
    version: str = FINGERPRINT_VERSION

    def __post_init__(self) -> None:
        # Own a private copy so callers cannot mutate the record afterwards.
        vector = np.array(self.fingerprint, dtype=np.float32).reshape(-1)
        expected = self.width * self.height
        if vector.size != expected:
            raise DimensionMismatchError(expected, vector.size)
        vector.flags.writeable = False
        object.__setattr__(self, "fingerprint", vector)

    @property
    def size_in_bytes(self) -> int:
        return int(self.fingerprint.nbytes)


@dataclass(frozen=True)
class AuthenticationResult:
    """Outcome of matching one image against an enrolled fingerprint."""

    is_authentic: bool
    pce_score: float
    confidence: float
    camera_id: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def quality_level(self) -> QualityLevel:
        if self.pce_score >= 80:
            return QualityLevel.EXCELLENT
        if self.pce_score >= 60:
            return QualityLevel.GOOD
        if self.pce_score >= 40:
            return QualityLevel.FAIR
        return QualityLevel.POOR


@dataclass(frozen=True)
class Region:
    """Axis-aligned rectangle in processing-grid pixel coordinates."""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class TamperDetectionResult:
    """Outcome of block-wise tamper localization."""

    is_tampered: bool
    tampered_regions: list[Region]
    overall_pce: float
    confidence: float
    total_blocks: int

    @property
    def severity_level(self) -> SeverityLevel:
        if not self.is_tampered:
            return SeverityLevel.NONE
        fraction = len(self.tampered_regions) / max(1, self.total_blocks)
        if fraction >= 0.5:
            return SeverityLevel.SEVERE
        if fraction >= 0.2:
            return SeverityLevel.MODERATE
        if fraction >= 0.05:
            return SeverityLevel.MINOR
        return SeverityLevel.MINIMAL
