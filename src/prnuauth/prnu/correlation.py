"""Correlation scoring between noise residuals and fingerprints.

PCE here is computed on the zero-lag element-wise product of the two
normalized signals, not on a full 2-D cyclic correlation surface, and the
energy term averages over the whole product vector without excluding a
neighbourhood around the peak. For unrelated signals the score is the
largest of N roughly independent products, which grows with N. Unrelated
noise mostly stays under the default threshold of 60 on a 64x64 grid but
scores around 90 to 250 on the default 512x512 grid. The threshold therefore
separates unrelated content only on small grids, or when a genuine match
is dominated by a few strong sensor defects.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from prnuauth.errors import DimensionMismatchError

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


def _flat_pair(a: ArrayLike, b: ArrayLike) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    x = np.asarray(a, dtype=np.float64).reshape(-1)
    y = np.asarray(b, dtype=np.float64).reshape(-1)
    if x.size != y.size:
        raise DimensionMismatchError(y.size, x.size)
    return x, y


def _unit_energy(x: NDArray[np.float64]) -> NDArray[np.float64] | None:
    """Zero-mean copy scaled to unit L2 norm, or None for a constant signal."""
    centered = x - x.mean()
    norm = float(np.sqrt(np.dot(centered, centered)))
    if norm == 0.0 or not np.isfinite(norm):
        return None
    return centered / norm


def correlation_map(residual: ArrayLike, fingerprint: ArrayLike) -> NDArray[np.float64]:
    """Element-wise product of the normalized residual and fingerprint.

    All zeros when either input has zero variance.
    """
    x, y = _flat_pair(residual, fingerprint)
    if x.size == 0:
        return np.zeros(0, dtype=np.float64)
    nx = _unit_energy(x)
    ny = _unit_energy(y)
    if nx is None or ny is None:
        return np.zeros(x.size, dtype=np.float64)
    return nx * ny


def pce(residual: ArrayLike, fingerprint: ArrayLike) -> float:
    """Peak Correlation Energy: ``max(c)**2 / mean(c**2)``.

    Returns 0.0 when the correlation is identically zero (a constant input).

    Raises:
        DimensionMismatchError: If the inputs differ in length.
    """
    corr = correlation_map(residual, fingerprint)
    if corr.size == 0:
        return 0.0
    energy = float(np.mean(corr * corr))
    if energy == 0.0:
        return 0.0
    peak = float(corr.max())
    return peak * peak / energy


def ncc(a: ArrayLike, b: ArrayLike) -> float:
    """Normalized cross-correlation in [-1, 1]; 0.0 if either input is constant."""
    x, y = _flat_pair(a, b)
    if x.size == 0:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denominator = float(np.sqrt(np.dot(dx, dx) * np.dot(dy, dy)))
    if denominator == 0.0:
        return 0.0
    # Rounding can push |r| a hair past 1 for identical inputs.
    return float(np.clip(np.dot(dx, dy) / denominator, -1.0, 1.0))


def block_grid_shape(width: int, height: int, block_size: int) -> tuple[int, int]:
    """Return (blocks_y, blocks_x); remainder pixels are not covered."""
    if block_size <= 0:
        raise ValueError(f"block_size must be positive, got {block_size}")
    return height // block_size, width // block_size


def local_pce_grid(
    residual: ArrayLike,
    fingerprint: ArrayLike,
    width: int,
    height: int,
    block_size: int,
) -> NDArray[np.float64]:
    """PCE per non-overlapping ``block_size`` tile, in row-major tile order.

    Pixels beyond the last whole tile on either axis are dropped.

    Raises:
        DimensionMismatchError: If either buffer is not ``width * height`` long.
    """
    x, y = _flat_pair(residual, fingerprint)
    if x.size != width * height:
        raise DimensionMismatchError(width * height, x.size)

    blocks_y, blocks_x = block_grid_shape(width, height, block_size)
    if blocks_y == 0 or blocks_x == 0:
        return np.zeros(0, dtype=np.float64)
    return np.array(
        [pce(tx, ty) for tx, ty in zip(_tiles(x, width, height, block_size), _tiles(y, width, height, block_size))],
        dtype=np.float64,
    )


def _tiles(values: NDArray[np.float64], width: int, height: int, block_size: int) -> NDArray[np.float64]:
    blocks_y, blocks_x = block_grid_shape(width, height, block_size)
    grid = values.reshape(height, width)[: blocks_y * block_size, : blocks_x * block_size]
    # (by, bs, bx, bs) -> (by, bx, bs, bs): each tile becomes one row.
    tiles = grid.reshape(blocks_y, block_size, blocks_x, block_size).transpose(0, 2, 1, 3)
    return tiles.reshape(blocks_y * blocks_x, block_size * block_size)
