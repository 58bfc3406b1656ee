"""Denoisers and noise-residual extraction.

The residual ``W = I - F(I)`` carries the sensor's PRNU component. Two
denoisers ``F`` are available:

* ``adaptive``: locally adaptive Wiener-style filter. Window means and
  variances come from summed-area tables, so the cost does not grow with
  the window radius.
* ``fast``: fixed 3x3 binomial kernel; border pixels pass through.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np

from prnuauth.errors import DimensionMismatchError
from prnuauth.prnu.preprocessing import ImagePreprocessor

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from prnuauth.config import Settings
    from prnuauth.prnu.preprocessing import ImageInput

VARIANCE_EPS: float = 1e-4

FAST_KERNEL = np.array(
    [
        [1.0, 2.0, 1.0],
        [2.0, 4.0, 2.0],
        [1.0, 2.0, 1.0],
    ],
    dtype=np.float64,
) / 16.0


class Denoiser(Protocol):
    """Produces a smoothed estimate of a preprocessed image."""

    def denoise(self, pixels: NDArray[np.float32], width: int, height: int) -> NDArray[np.float32]:
        """Return a denoised copy of a row-major ``width * height`` buffer."""
        ...


def _as_grid(pixels: NDArray[np.float32], width: int, height: int) -> NDArray[np.float64]:
    if pixels.size != width * height:
        raise DimensionMismatchError(width * height, pixels.size)
    return np.asarray(pixels, dtype=np.float64).reshape(height, width)


def box_mean(values: NDArray[np.float64], radius: int) -> NDArray[np.float64]:
    """Mean over a (2r+1)x(2r+1) window clipped to the array bounds."""
    height, width = values.shape
    integral = np.zeros((height + 1, width + 1), dtype=np.float64)
    integral[1:, 1:] = values.cumsum(axis=0).cumsum(axis=1)

    rows = np.arange(height)
    cols = np.arange(width)
    y0 = np.clip(rows - radius, 0, height)
    y1 = np.clip(rows + radius + 1, 0, height)
    x0 = np.clip(cols - radius, 0, width)
    x1 = np.clip(cols + radius + 1, 0, width)

    sums = (
        integral[np.ix_(y1, x1)]
        - integral[np.ix_(y0, x1)]
        - integral[np.ix_(y1, x0)]
        + integral[np.ix_(y0, x0)]
    )
    counts = np.outer(y1 - y0, x1 - x0)
    return sums / counts


class AdaptiveWienerDenoiser:
    """Local-statistics Wiener filter.

    For each pixel: ``gain = max(0, var - noise_floor) / max(var, eps)`` and
    ``denoised = mean + gain * (pixel - mean)``, with mean and variance taken
    over the surrounding window.
    """

    def __init__(self, radius: int = 5, noise_floor: float = 0.01) -> None:
        self.radius = radius
        self.noise_floor = noise_floor

    def denoise(self, pixels: NDArray[np.float32], width: int, height: int) -> NDArray[np.float32]:
        grid = _as_grid(pixels, width, height)
        mean = box_mean(grid, self.radius)
        variance = np.maximum(box_mean(grid * grid, self.radius) - mean * mean, 0.0)

        gain = np.maximum(variance - self.noise_floor, 0.0) / np.maximum(variance, VARIANCE_EPS)
        denoised = mean + gain * (grid - mean)
        return denoised.astype(np.float32).reshape(-1)


class FastKernelDenoiser:
    """3x3 weighted average on interior pixels; the one-pixel border is copied."""

    def denoise(self, pixels: NDArray[np.float32], width: int, height: int) -> NDArray[np.float32]:
        grid = _as_grid(pixels, width, height)
        denoised = grid.copy()
        if height >= 3 and width >= 3:
            interior = np.zeros((height - 2, width - 2), dtype=np.float64)
            for dy in range(3):
                for dx in range(3):
                    interior += FAST_KERNEL[dy, dx] * grid[dy : height - 2 + dy, dx : width - 2 + dx]
            denoised[1:-1, 1:-1] = interior
        return denoised.astype(np.float32).reshape(-1)


def make_denoiser(settings: Settings) -> Denoiser:
    if settings.denoiser == "fast":
        return FastKernelDenoiser()
    return AdaptiveWienerDenoiser(
        radius=settings.wiener_window_radius,
        noise_floor=settings.wiener_noise_floor,
    )


@dataclass(frozen=True)
class ResidualSample:
    """A preprocessed image together with its noise residual."""

    image: NDArray[np.float32]
    residual: NDArray[np.float32]


class ResidualExtractor:
    """Preprocesses an image and subtracts its denoised estimate."""

    def __init__(
        self,
        settings: Settings,
        preprocessor: ImagePreprocessor | None = None,
        denoiser: Denoiser | None = None,
    ) -> None:
        self._width = settings.processing_width
        self._height = settings.processing_height
        self._preprocessor = preprocessor or ImagePreprocessor(settings)
        self._denoiser = denoiser or make_denoiser(settings)

    def residual_of(self, pixels: NDArray[np.float32]) -> NDArray[np.float32]:
        """Residual of an already preprocessed buffer."""
        denoised = self._denoiser.denoise(pixels, self._width, self._height)
        return (pixels - denoised).astype(np.float32)

    def extract(self, image: ImageInput) -> ResidualSample:
        pixels = self._preprocessor.preprocess(image)
        return ResidualSample(image=pixels, residual=self.residual_of(pixels))

    def extract_residual(self, image: ImageInput) -> NDArray[np.float32]:
        return self.extract(image).residual
