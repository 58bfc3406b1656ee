"""Fingerprint aggregation from enrollment residuals.

Per pixel the fingerprint is the maximum-likelihood estimate

    K = sum_j(W_j * I_j) / sum_j(I_j ** 2)

which weights each observation by its intensity, so near-black pixels
(where the residual is mostly read noise) contribute little. The result is
mean-centered across the whole frame.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import numpy as np

from prnuauth.errors import DimensionMismatchError, InsufficientImagesError
from prnuauth.models import CameraFingerprint
from prnuauth.prnu.correlation import pce

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from prnuauth.prnu.denoising import ResidualSample

logger = logging.getLogger(__name__)


class FingerprintAccumulator:
    """Running numerator/denominator sums for one enrollment."""

    def __init__(self, size: int) -> None:
        self.size = size
        self.count = 0
        self._numerator = np.zeros(size, dtype=np.float64)
        self._denominator = np.zeros(size, dtype=np.float64)

    def add(self, sample: ResidualSample) -> None:
        if sample.image.size != self.size:
            raise DimensionMismatchError(self.size, sample.image.size)
        if sample.residual.size != self.size:
            raise DimensionMismatchError(self.size, sample.residual.size)
        image = np.asarray(sample.image, dtype=np.float64).reshape(-1)
        residual = np.asarray(sample.residual, dtype=np.float64).reshape(-1)
        self._numerator += residual * image
        self._denominator += image * image
        self.count += 1

    def finalize(self) -> NDArray[np.float32]:
        """Return the mean-centered fingerprint vector."""
        fingerprint = np.zeros(self.size, dtype=np.float64)
        np.divide(self._numerator, self._denominator, out=fingerprint, where=self._denominator > 0)
        if self.size:
            fingerprint -= fingerprint.mean()
        return fingerprint.astype(np.float32)


def average_pce(residuals: Iterable[NDArray[np.float32]], fingerprint: NDArray[np.float32]) -> float:
    """Mean global PCE of each enrollment residual against the fingerprint."""
    scores = [pce(residual, fingerprint) for residual in residuals]
    return float(np.mean(scores)) if scores else 0.0


def build_fingerprint(
    camera_id: str,
    samples: list[ResidualSample],
    width: int,
    height: int,
    required: int,
) -> CameraFingerprint:
    """Aggregate residual samples into a CameraFingerprint.

    Raises:
        InsufficientImagesError: If fewer than ``required`` samples are given.
        DimensionMismatchError: If a sample is not ``width * height`` long.
    """
    if len(samples) < required:
        raise InsufficientImagesError(required=required, provided=len(samples))

    accumulator = FingerprintAccumulator(width * height)
    for sample in samples:
        accumulator.add(sample)
    vector = accumulator.finalize()

    quality = average_pce((sample.residual for sample in samples), vector)
    logger.info("Aggregated fingerprint for %s from %d images (average PCE %.2f)", camera_id, len(samples), quality)

    return CameraFingerprint(
        camera_id=camera_id,
        fingerprint=vector,
        width=width,
        height=height,
        enrollment_date=datetime.now(UTC),
        number_of_images=len(samples),
        average_pce=quality,
    )
