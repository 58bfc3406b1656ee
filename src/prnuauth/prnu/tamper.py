"""Tamper localization from a grid of per-block PCE scores."""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from prnuauth.models import Region, TamperDetectionResult

if TYPE_CHECKING:
    from numpy.typing import ArrayLike

OUTLIER_SIGMAS: float = 2.0


def tampered_blocks(scores: ArrayLike) -> list[int]:
    """Indices of blocks scoring below ``mean - 2 * std`` of the grid."""
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return []
    threshold = values.mean() - OUTLIER_SIGMAS * values.std()
    return [int(i) for i in np.flatnonzero(values < threshold)]


def tamper_confidence(scores: ArrayLike) -> float:
    """Coefficient of variation of the block scores, as a 0-100 percentage."""
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return 0.0
    mean = float(values.mean())
    if mean <= 0.0:
        return 0.0
    return float(min(100.0, values.std() / mean * 100.0))


def localize_tampering(scores: ArrayLike, width: int, block_size: int) -> TamperDetectionResult:
    """Flag low-outlier blocks and map them to pixel-space regions.

    ``scores`` must be in row-major block order over a grid ``width`` pixels
    wide.
    """
    values = np.asarray(scores, dtype=np.float64).reshape(-1)
    blocks_per_row = max(1, width // block_size)

    regions = [
        Region(
            x=(index % blocks_per_row) * block_size,
            y=(index // blocks_per_row) * block_size,
            width=block_size,
            height=block_size,
        )
        for index in tampered_blocks(values)
    ]

    return TamperDetectionResult(
        is_tampered=bool(regions),
        tampered_regions=regions,
        overall_pce=float(values.mean()) if values.size else 0.0,
        confidence=tamper_confidence(values),
        total_blocks=int(values.size),
    )
