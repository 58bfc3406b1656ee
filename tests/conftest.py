"""Shared fixtures: small processing grids and a synthetic camera sensor."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from prnuauth.config import Settings

GRID = 64
BLOCK = 16
ENROLL_COUNT = 8


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "enrollment_image_count": ENROLL_COUNT,
        "processing_width": GRID,
        "processing_height": GRID,
        "tamper_block_size": BLOCK,
        "enable_secure_storage": False,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


class SyntheticCamera:
    """Multiplicative PRNU sensor model: ``I = scene * (1 + K) + noise``.

    K is low-amplitude Gaussian plus one strong hot pixel at the centre of
    each selected block, so each block's match is dominated by a single
    correlated peak.
    """

    def __init__(
        self,
        seed: int,
        size: int = GRID,
        block: int = BLOCK,
        spike_blocks: set[tuple[int, int]] | None = None,
    ) -> None:
        self.seed = seed
        self.size = size
        self.block = block
        rng = np.random.default_rng(seed)
        self.pattern = rng.normal(0.0, 0.02, (size, size))
        blocks = size // block
        if spike_blocks is None:
            spike_blocks = {(by, bx) for by in range(blocks) for bx in range(blocks)}
        for by, bx in spike_blocks:
            self.pattern[by * block + block // 2, bx * block + block // 2] = 0.5

    def scene_level(self, index: int) -> float:
        return 0.30 + 0.025 * ((index * 7) % 10)

    def capture(self, index: int) -> np.ndarray:
        rng = np.random.default_rng([self.seed, index])
        yy, xx = np.mgrid[0 : self.size, 0 : self.size] / self.size
        scene = self.scene_level(index) + 0.05 * xx - 0.03 * yy
        image = scene * (1.0 + self.pattern) + rng.normal(0.0, 0.004, scene.shape)
        return np.clip(image, 0.0, 1.0).astype(np.float32)

    def captures(self, count: int, start: int = 0) -> list[np.ndarray]:
        return [self.capture(i) for i in range(start, start + count)]


def noise_image(seed: int, size: int = GRID) -> np.ndarray:
    """Flat-spectrum noise with no sensor pattern."""
    rng = np.random.default_rng(seed)
    return rng.uniform(0.2, 0.8, (size, size)).astype(np.float32)


def replace_block(image: np.ndarray, row: int, col: int, seed: int, block: int = BLOCK) -> np.ndarray:
    """Overwrite one block with unrelated noise around the local brightness."""
    tampered = image.copy()
    region = tampered[row * block : (row + 1) * block, col * block : (col + 1) * block]
    rng = np.random.default_rng(seed)
    region[...] = np.clip(region.mean() + rng.uniform(-0.2, 0.2, region.shape), 0.0, 1.0)
    return tampered


def to_png(image: np.ndarray) -> bytes:
    buffer = io.BytesIO()
    Image.fromarray((np.clip(image, 0.0, 1.0) * 255.0).round().astype(np.uint8)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def camera() -> SyntheticCamera:
    return SyntheticCamera(seed=1234)
