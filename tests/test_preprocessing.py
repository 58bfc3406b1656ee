"""Tests for preprocessing, denoising and residual extraction."""

from __future__ import annotations

import io

import numpy as np
import pytest
from conftest import GRID, make_settings, to_png
from PIL import Image

from prnuauth.errors import DimensionMismatchError, ImageProcessingError
from prnuauth.prnu.denoising import (
    AdaptiveWienerDenoiser,
    FastKernelDenoiser,
    ResidualExtractor,
    box_mean,
    make_denoiser,
)
from prnuauth.prnu.preprocessing import ImagePreprocessor, decode_image, image_size, to_luminance

# ---------------------------------------------------------------------------
# Preprocessor
# ---------------------------------------------------------------------------


class TestPreprocessor:
    def test_output_is_flat_buffer_of_grid_size(self) -> None:
        pre = ImagePreprocessor(make_settings())
        out = pre.preprocess(np.full((GRID, GRID), 0.5, dtype=np.float32))
        assert out.shape == (GRID * GRID,)
        assert out.dtype == np.float32

    def test_uint8_is_normalized(self) -> None:
        pre = ImagePreprocessor(make_settings())
        out = pre.preprocess(np.full((GRID, GRID), 255, dtype=np.uint8))
        assert np.allclose(out, 1.0)

    def test_rgb_uses_luma_weights(self) -> None:
        rgb = np.zeros((GRID, GRID, 3), dtype=np.uint8)
        rgb[..., 1] = 255
        out = ImagePreprocessor(make_settings()).preprocess(rgb)
        assert np.allclose(out, 0.587, atol=1e-6)

    def test_rgba_alpha_is_ignored(self) -> None:
        rgba = np.zeros((GRID, GRID, 4), dtype=np.uint8)
        rgba[..., 0] = 255
        rgba[..., 3] = 7
        out = ImagePreprocessor(make_settings()).preprocess(rgba)
        assert np.allclose(out, 0.299, atol=1e-6)

    def test_resizes_larger_input(self) -> None:
        big = np.full((300, 200), 0.25, dtype=np.float32)
        out = ImagePreprocessor(make_settings()).preprocess(big)
        assert out.size == GRID * GRID
        assert np.allclose(out, 0.25, atol=1e-4)

    def test_same_size_input_is_untouched(self) -> None:
        rng = np.random.default_rng(3)
        image = rng.uniform(0, 1, (GRID, GRID)).astype(np.float32)
        out = ImagePreprocessor(make_settings()).preprocess(image)
        assert np.array_equal(out, image.reshape(-1))

    def test_gamma_correction(self) -> None:
        pre = ImagePreprocessor(make_settings(enable_gamma_correction=True, gamma=2.0))
        out = pre.preprocess(np.full((GRID, GRID), 0.5, dtype=np.float32))
        assert np.allclose(out, 0.25)

    def test_gamma_disabled_by_default(self) -> None:
        pre = ImagePreprocessor(make_settings(gamma=2.0))
        out = pre.preprocess(np.full((GRID, GRID), 0.5, dtype=np.float32))
        assert np.allclose(out, 0.5)

    def test_encoded_bytes_are_decoded(self) -> None:
        data = to_png(np.full((32, 48), 0.6, dtype=np.float32))
        out = ImagePreprocessor(make_settings()).preprocess(data)
        assert out.size == GRID * GRID
        assert np.allclose(out, round(0.6 * 255) / 255, atol=1e-3)

    def test_pil_image_accepted(self) -> None:
        image = Image.new("RGB", (80, 40), color=(0, 0, 255))
        out = ImagePreprocessor(make_settings()).preprocess(image)
        assert np.allclose(out, 0.114, atol=1e-3)

    def test_values_clipped_to_unit_range(self) -> None:
        image = np.full((GRID, GRID), 1.7, dtype=np.float32)
        out = ImagePreprocessor(make_settings()).preprocess(image)
        assert out.max() <= 1.0


class TestPreprocessorFailures:
    def test_corrupt_bytes(self) -> None:
        with pytest.raises(ImageProcessingError):
            ImagePreprocessor(make_settings()).preprocess(b"definitely not an image")

    def test_empty_bytes(self) -> None:
        with pytest.raises(ImageProcessingError, match="empty"):
            decode_image(b"")

    def test_empty_array(self) -> None:
        with pytest.raises(ImageProcessingError, match="no pixels"):
            ImagePreprocessor(make_settings()).preprocess(np.zeros((0, 10), dtype=np.float32))

    def test_non_finite_samples(self) -> None:
        image = np.full((GRID, GRID), 0.5, dtype=np.float32)
        image[3, 3] = np.nan
        with pytest.raises(ImageProcessingError, match="non-finite"):
            ImagePreprocessor(make_settings()).preprocess(image)

    def test_plain_integer_array_is_refused(self) -> None:
        # np.full gives int64, whose range says nothing about the pixel scale.
        with pytest.raises(ImageProcessingError, match="dtype: int64"):
            ImagePreprocessor(make_settings()).preprocess(np.full((GRID, GRID), 128, dtype=np.int64))

    def test_int32_array_is_refused(self) -> None:
        with pytest.raises(ImageProcessingError, match="uint8, uint16"):
            to_luminance(np.zeros((4, 4), dtype=np.int32))

    def test_uint16_scaled_by_full_range(self) -> None:
        luminance = to_luminance(np.full((4, 4), 65535 // 2, dtype=np.uint16))
        assert np.allclose(luminance, 0.5, atol=1e-4)

    def test_unsupported_shape(self) -> None:
        with pytest.raises(ImageProcessingError, match="shape"):
            to_luminance(np.zeros((4, 4, 2), dtype=np.uint8))

    def test_unsupported_type(self) -> None:
        with pytest.raises(ImageProcessingError, match="unsupported image type"):
            to_luminance("image.png")  # type: ignore[arg-type]

    def test_pixel_limit(self) -> None:
        data = to_png(np.zeros((20, 20), dtype=np.float32))
        with pytest.raises(ImageProcessingError, match="exceeds"):
            decode_image(data, max_pixels=100)


class TestImageSize:
    def test_array(self) -> None:
        assert image_size(np.zeros((30, 40))) == (40, 30)

    def test_bytes(self) -> None:
        buffer = io.BytesIO()
        Image.new("L", (12, 7)).save(buffer, format="PNG")
        assert image_size(buffer.getvalue()) == (12, 7)


# ---------------------------------------------------------------------------
# Denoisers
# ---------------------------------------------------------------------------


def _brute_box_mean(values: np.ndarray, radius: int) -> np.ndarray:
    h, w = values.shape
    out = np.zeros_like(values)
    for y in range(h):
        for x in range(w):
            window = values[max(0, y - radius) : y + radius + 1, max(0, x - radius) : x + radius + 1]
            out[y, x] = window.mean()
    return out


class TestBoxMean:
    @pytest.mark.parametrize("radius", [1, 2, 5])
    def test_matches_direct_window_mean(self, radius: int) -> None:
        rng = np.random.default_rng(radius)
        values = rng.normal(size=(13, 17))
        assert np.allclose(box_mean(values, radius), _brute_box_mean(values, radius))

    def test_border_windows_are_clipped(self) -> None:
        values = np.zeros((5, 5))
        values[0, 0] = 9.0
        # Corner window with radius 1 covers 2x2 pixels.
        assert box_mean(values, 1)[0, 0] == pytest.approx(9.0 / 4)


class TestAdaptiveWienerDenoiser:
    def test_flat_image_is_unchanged(self) -> None:
        pixels = np.full(GRID * GRID, 0.4, dtype=np.float32)
        out = AdaptiveWienerDenoiser().denoise(pixels, GRID, GRID)
        assert np.allclose(out, pixels, atol=1e-6)

    def test_low_variance_noise_is_smoothed_to_local_mean(self) -> None:
        rng = np.random.default_rng(0)
        pixels = (0.5 + rng.normal(0, 0.01, GRID * GRID)).astype(np.float32)
        out = AdaptiveWienerDenoiser(radius=2).denoise(pixels, GRID, GRID)
        expected = box_mean(pixels.reshape(GRID, GRID).astype(np.float64), 2).reshape(-1)
        assert np.allclose(out, expected, atol=1e-5)

    def test_high_contrast_texture_is_preserved(self) -> None:
        grid = (np.indices((GRID, GRID)).sum(axis=0) % 2).astype(np.float32)
        out = AdaptiveWienerDenoiser().denoise(grid.reshape(-1), GRID, GRID)
        # Variance 0.25 >> noise floor, so gain is close to 1.
        assert np.abs(out - grid.reshape(-1)).max() < 0.05

    def test_rejects_wrong_length(self) -> None:
        with pytest.raises(DimensionMismatchError):
            AdaptiveWienerDenoiser().denoise(np.zeros(10, dtype=np.float32), GRID, GRID)


class TestFastKernelDenoiser:
    def test_border_passes_through(self) -> None:
        rng = np.random.default_rng(1)
        grid = rng.uniform(size=(8, 9)).astype(np.float32)
        out = FastKernelDenoiser().denoise(grid.reshape(-1), 9, 8).reshape(8, 9)
        assert np.array_equal(out[0], grid[0])
        assert np.array_equal(out[-1], grid[-1])
        assert np.array_equal(out[:, 0], grid[:, 0])
        assert np.array_equal(out[:, -1], grid[:, -1])

    def test_impulse_response_is_kernel(self) -> None:
        grid = np.zeros((7, 7), dtype=np.float32)
        grid[3, 3] = 16.0
        out = FastKernelDenoiser().denoise(grid.reshape(-1), 7, 7).reshape(7, 7)
        assert np.allclose(out[2:5, 2:5], [[1, 2, 1], [2, 4, 2], [1, 2, 1]])
        assert out.sum() == pytest.approx(16.0)

    def test_tiny_image_is_copied(self) -> None:
        pixels = np.array([0.1, 0.2, 0.3, 0.4], dtype=np.float32)
        assert np.array_equal(FastKernelDenoiser().denoise(pixels, 2, 2), pixels)


class TestMakeDenoiser:
    def test_adaptive_by_default(self) -> None:
        denoiser = make_denoiser(make_settings(wiener_window_radius=3))
        assert isinstance(denoiser, AdaptiveWienerDenoiser)
        assert denoiser.radius == 3

    def test_fast_mode(self) -> None:
        assert isinstance(make_denoiser(make_settings(denoiser="fast")), FastKernelDenoiser)


# ---------------------------------------------------------------------------
# Residual extraction
# ---------------------------------------------------------------------------


class TestResidualExtractor:
    def test_residual_is_image_minus_denoised(self) -> None:
        settings = make_settings(denoiser="fast")
        rng = np.random.default_rng(5)
        image = rng.uniform(0.2, 0.8, (GRID, GRID)).astype(np.float32)

        sample = ResidualExtractor(settings).extract(image)

        denoised = FastKernelDenoiser().denoise(sample.image, GRID, GRID)
        assert np.allclose(sample.residual, sample.image - denoised)
        assert sample.residual.size == GRID * GRID

    def test_flat_image_has_zero_residual(self) -> None:
        extractor = ResidualExtractor(make_settings())
        residual = extractor.extract_residual(np.full((GRID, GRID), 0.3, dtype=np.float32))
        assert np.allclose(residual, 0.0, atol=1e-6)

    def test_hot_pixel_survives_in_residual(self) -> None:
        image = np.full((GRID, GRID), 0.4, dtype=np.float32)
        image[20, 30] = 0.6
        residual = ResidualExtractor(make_settings()).extract_residual(image).reshape(GRID, GRID)
        assert np.unravel_index(np.argmax(residual), residual.shape) == (20, 30)
        assert residual[20, 30] == pytest.approx(0.2 * 120 / 121, rel=1e-3)
