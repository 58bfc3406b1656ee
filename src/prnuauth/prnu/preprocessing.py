"""Image preprocessing: decode, resize, luminance, normalize, gamma.

Every image that enters the PRNU pipeline passes through here so that
enrollment and query residuals live on the same fixed processing grid.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from prnuauth.errors import ImageProcessingError

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from prnuauth.config import Settings

logger = logging.getLogger(__name__)

ImageInput = bytes | bytearray | Image.Image | np.ndarray

# ITU-R BT.601 luma weights.
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float64)


def decode_image(data: bytes | bytearray, max_pixels: int | None = None) -> Image.Image:
    """Decode encoded image bytes with Pillow.

    EXIF orientation is not applied: the noise pattern is tied to the
    sensor's pixel layout, not to display orientation.

    Raises:
        ImageProcessingError: If the bytes are empty, undecodable, or the
            image exceeds ``max_pixels``.
    """
    if not data:
        raise ImageProcessingError("empty image data")
    try:
        image = Image.open(io.BytesIO(data))
        if max_pixels is not None and image.width * image.height > max_pixels:
            raise ImageProcessingError(f"image of {image.width}x{image.height} exceeds {max_pixels} pixels")
        image.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as exc:
        raise ImageProcessingError(f"cannot decode image: {exc}") from exc
    return image


def image_size(image: ImageInput) -> tuple[int, int]:
    """Return the (width, height) of an input before preprocessing."""
    if isinstance(image, Image.Image):
        return image.size
    if isinstance(image, np.ndarray):
        if image.ndim < 2:
            return (0, 0)
        return (int(image.shape[1]), int(image.shape[0]))
    return decode_image(image).size


def to_luminance(image: ImageInput, max_pixels: int | None = None) -> NDArray[np.float32]:
    """Convert any supported input into a 2-D luminance array in [0, 1]."""
    if isinstance(image, (bytes, bytearray)):
        image = decode_image(image, max_pixels)
    if isinstance(image, Image.Image):
        image = _pil_to_array(image)
    if not isinstance(image, np.ndarray):
        raise ImageProcessingError(f"unsupported image type: {type(image).__name__}")
    return _array_to_luminance(image)


def _pil_to_array(image: Image.Image) -> np.ndarray:
    if image.mode == "F":
        return np.asarray(image, dtype=np.float32)
    if image.mode.startswith("I;16"):
        return np.asarray(image, dtype=np.uint16)
    if image.mode == "L":
        return np.asarray(image, dtype=np.uint8)
    return np.asarray(image.convert("RGB"), dtype=np.uint8)


def _array_to_luminance(array: np.ndarray) -> NDArray[np.float32]:
    if array.size == 0:
        raise ImageProcessingError("image has no pixels")

    if array.dtype in (np.uint8, np.uint16):
        values = array.astype(np.float64) / float(np.iinfo(array.dtype).max)
    elif np.issubdtype(array.dtype, np.integer):
        # The value range of other integer buffers is unknown.
        raise ImageProcessingError(f"unsupported pixel dtype: {array.dtype}; pass uint8, uint16 or floats in [0, 1]")
    elif np.issubdtype(array.dtype, np.floating):
        values = array.astype(np.float64)
        if not np.all(np.isfinite(values)):
            raise ImageProcessingError("image contains non-finite samples")
    else:
        raise ImageProcessingError(f"unsupported pixel dtype: {array.dtype}")

    if values.ndim == 3 and values.shape[2] == 1:
        values = values[:, :, 0]
    if values.ndim == 3 and values.shape[2] in (3, 4):
        values = values[:, :, :3] @ LUMA_WEIGHTS
    elif values.ndim != 2:
        raise ImageProcessingError(f"unsupported image shape: {array.shape}")

    return np.clip(values, 0.0, 1.0).astype(np.float32)


class ImagePreprocessor:
    """Normalizes arbitrary images onto the configured processing grid."""

    def __init__(self, settings: Settings) -> None:
        self._width = settings.processing_width
        self._height = settings.processing_height
        self._gamma = settings.gamma if settings.enable_gamma_correction else None
        self._max_pixels = settings.max_image_pixels

    @property
    def size(self) -> tuple[int, int]:
        return (self._width, self._height)

    def preprocess(self, image: ImageInput) -> NDArray[np.float32]:
        """Return a row-major float32 vector of ``width * height`` samples.

        Raises:
            ImageProcessingError: If the input cannot be turned into a buffer.
        """
        luminance = to_luminance(image, self._max_pixels)
        if luminance.shape != (self._height, self._width):
            luminance = self._resize(luminance)

        if self._gamma is not None:
            luminance = np.power(luminance, self._gamma, dtype=np.float32)

        return np.ascontiguousarray(luminance, dtype=np.float32).reshape(-1)

    def _resize(self, luminance: NDArray[np.float32]) -> NDArray[np.float32]:
        try:
            resized = Image.fromarray(np.ascontiguousarray(luminance, dtype=np.float32)).resize(
                (self._width, self._height),
                resample=Image.Resampling.LANCZOS,
            )
        except (ValueError, OSError) as exc:
            raise ImageProcessingError(f"failed to resize: {exc}") from exc
        logger.debug(
            "Resized %sx%s -> %sx%s",
            luminance.shape[1],
            luminance.shape[0],
            self._width,
            self._height,
        )
        # Lanczos can overshoot near edges.
        return np.clip(np.asarray(resized, dtype=np.float32), 0.0, 1.0)
