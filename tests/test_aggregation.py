"""Tests for fingerprint aggregation."""

from __future__ import annotations

import numpy as np
import pytest

from prnuauth.errors import DimensionMismatchError, InsufficientImagesError
from prnuauth.models import FINGERPRINT_VERSION
from prnuauth.prnu.aggregation import FingerprintAccumulator, average_pce, build_fingerprint
from prnuauth.prnu.denoising import ResidualSample


def _samples(pattern: np.ndarray, count: int, seed: int = 0) -> list[ResidualSample]:
    """Residuals that are exactly ``image * pattern``."""
    rng = np.random.default_rng(seed)
    samples = []
    for _ in range(count):
        image = rng.uniform(0.1, 0.9, pattern.size).astype(np.float32)
        samples.append(ResidualSample(image=image, residual=(image * pattern).astype(np.float32)))
    return samples


class TestFingerprintAccumulator:
    def test_recovers_multiplicative_pattern(self) -> None:
        rng = np.random.default_rng(1)
        pattern = rng.normal(0.0, 0.02, 256)
        accumulator = FingerprintAccumulator(256)
        for sample in _samples(pattern, 5):
            accumulator.add(sample)

        fingerprint = accumulator.finalize()

        assert accumulator.count == 5
        assert fingerprint.dtype == np.float32
        assert np.allclose(fingerprint, pattern - pattern.mean(), atol=1e-5)

    def test_output_is_mean_centered(self) -> None:
        rng = np.random.default_rng(2)
        pattern = rng.normal(0.3, 0.05, 100)
        accumulator = FingerprintAccumulator(100)
        for sample in _samples(pattern, 3):
            accumulator.add(sample)
        assert abs(float(accumulator.finalize().mean())) < 1e-6

    def test_black_pixels_contribute_zero_before_centering(self) -> None:
        image = np.array([0.0, 0.5, 0.5, 0.5], dtype=np.float32)
        residual = np.array([0.7, 0.1, 0.1, 0.1], dtype=np.float32)
        accumulator = FingerprintAccumulator(4)
        accumulator.add(ResidualSample(image=image, residual=residual))

        fingerprint = accumulator.finalize()

        # Raw K = [0, 0.2, 0.2, 0.2], mean 0.15.
        assert np.allclose(fingerprint, [-0.15, 0.05, 0.05, 0.05], atol=1e-6)
        assert np.all(np.isfinite(fingerprint))

    def test_rejects_wrong_length(self) -> None:
        accumulator = FingerprintAccumulator(10)
        sample = ResidualSample(image=np.zeros(9, dtype=np.float32), residual=np.zeros(9, dtype=np.float32))
        with pytest.raises(DimensionMismatchError):
            accumulator.add(sample)

    def test_rejects_residual_of_wrong_length(self) -> None:
        accumulator = FingerprintAccumulator(10)
        sample = ResidualSample(image=np.zeros(10, dtype=np.float32), residual=np.zeros(8, dtype=np.float32))
        with pytest.raises(DimensionMismatchError):
            accumulator.add(sample)


class TestAveragePCE:
    def test_empty_is_zero(self) -> None:
        assert average_pce([], np.zeros(4, dtype=np.float32)) == 0.0

    def test_mean_of_scores(self) -> None:
        x = np.array([3.0, -1.0, -1.0, -1.0], dtype=np.float32)
        flat = np.full(4, 0.5, dtype=np.float32)
        assert average_pce([x, flat], x) == pytest.approx(27 / 14)


class TestBuildFingerprint:
    def test_builds_record(self) -> None:
        rng = np.random.default_rng(3)
        pattern = rng.normal(0.0, 0.02, 8 * 4)

        fp = build_fingerprint("cam-1", _samples(pattern, 4), width=8, height=4, required=4)

        assert fp.camera_id == "cam-1"
        assert (fp.width, fp.height) == (8, 4)
        assert fp.number_of_images == 4
        assert fp.version == FINGERPRINT_VERSION
        assert fp.fingerprint.size == 32
        assert fp.average_pce > 0.0
        assert fp.enrollment_date.tzinfo is not None

    def test_insufficient_images(self) -> None:
        pattern = np.zeros(16)
        with pytest.raises(InsufficientImagesError) as exc_info:
            build_fingerprint("cam", _samples(pattern, 2), width=4, height=4, required=3)
        assert exc_info.value.required == 3
        assert exc_info.value.provided == 2
        assert str(exc_info.value) == "Insufficient images. Required: 3, Provided: 2"

    def test_fingerprint_vector_is_read_only(self) -> None:
        pattern = np.linspace(-0.01, 0.01, 16)
        fp = build_fingerprint("cam", _samples(pattern, 2), width=4, height=4, required=2)
        with pytest.raises(ValueError):
            fp.fingerprint[0] = 1.0
