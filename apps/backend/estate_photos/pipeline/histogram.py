from __future__ import annotations

import math

import numpy as np

from estate_photos.errors import EmptyImage
from estate_photos.pipeline.types import HistogramData, HistogramStatistics, PixelBuffer

BUCKETS = 256
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

DARK_LIMIT = 64
LIGHT_LIMIT = 192
CLIP_LIMIT = 250
WINDOW_LIMIT = 200
IDEAL_MEAN = 128.0
# Keeps the ratio finite for flat (single bucket) images.
CONTRAST_EPSILON = 1.0
MAX_PEAKS = 5


def luminance(pixels: np.ndarray) -> np.ndarray:
    """BT.601 luma per pixel, rounded to an 8-bit bucket index."""
    r, g, b = LUMA_WEIGHTS
    luma = (
        pixels[..., 0].astype(np.float32) * r
        + pixels[..., 1].astype(np.float32) * g
        + pixels[..., 2].astype(np.float32) * b
    )
    return np.clip(np.rint(luma), 0, 255).astype(np.uint8)


def compute_histogram(buffer: PixelBuffer) -> HistogramData:
    buffer.require_pixels()
    flat = buffer.pixels.reshape(-1, 3)
    red = np.bincount(flat[:, 0], minlength=BUCKETS).astype(np.int64)
    green = np.bincount(flat[:, 1], minlength=BUCKETS).astype(np.int64)
    blue = np.bincount(flat[:, 2], minlength=BUCKETS).astype(np.int64)
    luma = np.bincount(luminance(buffer.pixels).ravel(), minlength=BUCKETS).astype(np.int64)
    return HistogramData(
        red=red,
        green=green,
        blue=blue,
        luminance=luma,
        total_pixels=buffer.pixel_count,
    )


def _percentile_bucket(cumulative: np.ndarray, total: int, fraction: float) -> int:
    index = int(np.searchsorted(cumulative, total * fraction, side="left"))
    return min(index, BUCKETS - 1)


def _shadow_detail(counts: np.ndarray) -> float:
    shadows = counts[:DARK_LIMIT]
    population = float(shadows.sum())
    if population == 0:
        return 0.0
    levels = np.arange(DARK_LIMIT, dtype=np.float64)
    mean = float(levels @ shadows) / population
    spread = math.sqrt(float(((levels - mean) ** 2) @ shadows) / population)
    return min(1.0, spread / (DARK_LIMIT / 2))


def _window_probability(counts: np.ndarray, total: int) -> float:
    # Windows show up as a sizeable bright mass with a sharp edge in the histogram.
    bright = float(counts[WINDOW_LIMIT:].sum()) / total
    steps = np.abs(np.diff(counts[180:].astype(np.float64)))
    sharp_transition = bool(steps.size and steps.max() > total * 0.01)
    if sharp_transition and bright > 0.05:
        return min(1.0, bright * 2.0)
    return bright


def _find_peaks(counts: np.ndarray) -> tuple[tuple[int, int], ...]:
    inner = counts[1:-1]
    is_peak = (inner > counts[:-2]) & (inner > counts[2:])
    indices = np.nonzero(is_peak)[0] + 1
    strongest = sorted(indices.tolist(), key=lambda i: (-int(counts[i]), i))[:MAX_PEAKS]
    return tuple((int(i), int(counts[i])) for i in sorted(strongest))


def derive_statistics(histogram: HistogramData) -> HistogramStatistics:
    total = histogram.total_pixels
    if total <= 0:
        raise EmptyImage("histogram has no pixels")

    counts = histogram.luminance.astype(np.float64)
    levels = np.arange(BUCKETS, dtype=np.float64)

    mean = float(levels @ counts) / total
    variance = float(((levels - mean) ** 2) @ counts) / total
    cumulative = np.cumsum(counts)

    median = _percentile_bucket(cumulative, total, 0.5)
    p5 = _percentile_bucket(cumulative, total, 0.05)
    p95 = _percentile_bucket(cumulative, total, 0.95)

    dark_fraction = float(counts[:DARK_LIMIT].sum()) / total
    light_fraction = float(counts[LIGHT_LIMIT:].sum()) / total

    return HistogramStatistics(
        mean=mean,
        std_dev=math.sqrt(max(variance, 0.0)),
        median=median,
        dark_fraction=dark_fraction,
        light_fraction=light_fraction,
        contrast_ratio=(p95 + CONTRAST_EPSILON) / (p5 + CONTRAST_EPSILON),
        exposure_bias=(mean - IDEAL_MEAN) / IDEAL_MEAN,
        mid_fraction=max(0.0, 1.0 - dark_fraction - light_fraction),
        highlight_clipping=float(counts[CLIP_LIMIT:].sum()) / total,
        shadow_detail=_shadow_detail(counts),
        window_probability=_window_probability(counts, total),
        dynamic_range=float(p95 - p5),
        p5=p5,
        p95=p95,
        peaks=_find_peaks(counts),
    )


def channel_means(histogram: HistogramData) -> tuple[float, float, float]:
    levels = np.arange(BUCKETS, dtype=np.float64)
    total = max(histogram.total_pixels, 1)
    return tuple(
        float(levels @ counts.astype(np.float64)) / total
        for counts in (histogram.red, histogram.green, histogram.blue)
    )


def analyze(buffer: PixelBuffer) -> tuple[HistogramData, HistogramStatistics]:
    histogram = compute_histogram(buffer)
    return histogram, derive_statistics(histogram)
