from __future__ import annotations

import numpy as np

from estate_photos.pipeline.histogram import luminance
from estate_photos.pipeline.types import PixelBuffer, StructureStatistics

# Sobel magnitude (luma units) an edge pixel must reach.
EDGE_MAGNITUDE = 64.0
# Edges within this many degrees of vertical are treated as walls, frames and door jambs.
VERTICAL_TOLERANCE_DEG = 10.0
# Share of near-vertical edge pixels below which the frame has no usable verticals.
MIN_VERTICAL_EDGES = 0.002


def laplacian_variance(luma: np.ndarray) -> float:
    """Variance of the 4-neighbour Laplacian; low values mean a soft or blurry frame."""
    if luma.shape[0] < 3 or luma.shape[1] < 3:
        return 0.0
    laplacian = (
        luma[:-2, 1:-1] + luma[2:, 1:-1] + luma[1:-1, :-2] + luma[1:-1, 2:] - 4.0 * luma[1:-1, 1:-1]
    )
    return float(laplacian.var())


def sobel(luma: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    top, middle, bottom = luma[:-2], luma[1:-1], luma[2:]
    gx = (top[:, 2:] + 2.0 * middle[:, 2:] + bottom[:, 2:]) - (
        top[:, :-2] + 2.0 * middle[:, :-2] + bottom[:, :-2]
    )
    gy = (bottom[:, :-2] + 2.0 * bottom[:, 1:-1] + bottom[:, 2:]) - (
        top[:, :-2] + 2.0 * top[:, 1:-1] + top[:, 2:]
    )
    return gx, gy


def _weighted_mean(values: np.ndarray, weights: np.ndarray) -> float:
    total = float(weights.sum())
    if total <= 0.0:
        return 0.0
    return float((values * weights).sum() / total)


def measure(buffer: PixelBuffer) -> StructureStatistics:
    luma = luminance(buffer.pixels).astype(np.float32)
    sharpness = laplacian_variance(luma)
    if luma.shape[0] < 3 or luma.shape[1] < 3:
        return StructureStatistics(sharpness=sharpness)

    gx, gy = sobel(luma)
    magnitude = np.hypot(gx, gy)
    limit = np.tan(np.radians(VERTICAL_TOLERANCE_DEG))
    vertical = (magnitude >= EDGE_MAGNITUDE) & (np.abs(gy) <= limit * np.abs(gx))
    share = float(vertical.mean())
    if share < MIN_VERTICAL_EDGES:
        return StructureStatistics(sharpness=sharpness, vertical_edges=share)

    # A line x = x0 + k*y has its gradient along (1, -k) and leans atan(k) off vertical.
    lean = np.degrees(np.arctan(-gy[vertical] / gx[vertical]))
    weight = magnitude[vertical]
    left = np.nonzero(vertical)[1] < gx.shape[1] / 2.0

    convergence = 0.0
    if left.any() and not left.all():
        convergence = abs(
            _weighted_mean(lean[left], weight[left]) - _weighted_mean(lean[~left], weight[~left])
        )
    return StructureStatistics(
        sharpness=sharpness,
        vertical_tilt=_weighted_mean(lean, weight),
        vertical_convergence=convergence,
        vertical_edges=share,
    )
