from __future__ import annotations

import math

from estate_photos.config import QualityThresholds, QualityWeights
from estate_photos.pipeline.types import HistogramStatistics, StructureStatistics, Verdict, VerdictKind

DEFAULT_WEIGHTS = QualityWeights()
# Octaves outside the ideal contrast range before the contrast component hits zero.
CONTRAST_OCTAVES = 2.0
# Shooting advice attached to a verdict, keyed by the check that tripped.
RECOMMENDATIONS: dict[str, str] = {
    "resolution": "Shoot at the camera's full resolution",
    "min_mean_brightness": "Add supplementary lighting to dark areas",
    "max_contrast_ratio": "Bracket exposures so windows and interiors both hold detail",
    "min_dynamic_range": "Shoot during optimal daylight hours",
    "max_exposure_value": "Adjust exposure compensation and reshoot",
    "min_sharpness": "Use a tripod or increase shutter speed",
    "max_vertical_tilt": "Position camera parallel to walls",
}


def _range_component(value: float, ideal: tuple[float, float], scale: float) -> float:
    low, high = ideal
    if value < low:
        distance = low - value
    elif value > high:
        distance = value - high
    else:
        return 1.0
    if scale <= 0:
        return 0.0
    return max(0.0, 1.0 - distance / scale)


def quality_score(stats: HistogramStatistics, weights: QualityWeights | None = None) -> float:
    """Weighted composite in [0, 1]; 1.0 means every metric sits inside its ideal range."""
    weights = weights or DEFAULT_WEIGHTS

    mean_low, mean_high = weights.ideal_mean
    brightness = _range_component(stats.mean, weights.ideal_mean, max(mean_low, 255.0 - mean_high))

    contrast_low, contrast_high = weights.ideal_contrast
    contrast = _range_component(
        math.log2(max(stats.contrast_ratio, 1e-6)),
        (math.log2(contrast_low), math.log2(contrast_high)),
        CONTRAST_OCTAVES,
    )

    range_low, _ = weights.ideal_dynamic_range
    dynamic_range = _range_component(stats.dynamic_range, weights.ideal_dynamic_range, range_low)

    total_weight = weights.brightness + weights.contrast + weights.dynamic_range
    score = (
        brightness * weights.brightness
        + contrast * weights.contrast
        + dynamic_range * weights.dynamic_range
    ) / total_weight
    return min(1.0, max(0.0, score))


def evaluate(
    stats: HistogramStatistics,
    thresholds: QualityThresholds,
    weights: QualityWeights | None = None,
    resolution: tuple[int, int] | None = None,
    structure: StructureStatistics | None = None,
) -> Verdict:
    score = quality_score(stats, weights)
    violations: list[tuple[str, str]] = []

    if resolution is not None:
        width, height = resolution
        if not thresholds.resolution_ok(width, height):
            min_w, min_h, max_w, max_h = thresholds.envelope
            violations.append(
                ("resolution", f"resolution {width}x{height} outside {min_w}x{min_h} .. {max_w}x{max_h}")
            )

    if stats.mean < thresholds.min_mean_brightness:
        violations.append(
            (
                "min_mean_brightness",
                f"mean_brightness {stats.mean:.1f} is below minimum {thresholds.min_mean_brightness:.1f}",
            )
        )
    if stats.contrast_ratio > thresholds.max_contrast_ratio:
        violations.append(
            (
                "max_contrast_ratio",
                f"contrast_ratio {stats.contrast_ratio:.2f} exceeds maximum {thresholds.max_contrast_ratio:.2f}",
            )
        )
    if stats.dynamic_range < thresholds.min_dynamic_range:
        violations.append(
            (
                "min_dynamic_range",
                f"dynamic_range {stats.dynamic_range:.0f} is below minimum {thresholds.min_dynamic_range:.0f}",
            )
        )
    if abs(stats.exposure_bias) > thresholds.max_exposure_value:
        direction = "under" if stats.exposure_bias < 0 else "over"
        violations.append(
            (
                "max_exposure_value",
                f"exposure_bias {stats.exposure_bias:+.2f} ({direction}exposed) exceeds "
                f"limit {thresholds.max_exposure_value:.2f}",
            )
        )
    if score < thresholds.min_quality_score:
        violations.append(
            (
                "min_quality_score",
                f"quality_score {score:.2f} is below minimum {thresholds.min_quality_score:.2f}",
            )
        )

    if structure is not None:
        if thresholds.min_sharpness > 0 and structure.sharpness < thresholds.min_sharpness:
            violations.append(
                (
                    "min_sharpness",
                    f"sharpness {structure.sharpness:.1f} is below minimum {thresholds.min_sharpness:.1f} "
                    "(image looks blurry)",
                )
            )
        if structure.vertical_deviation > thresholds.max_vertical_tilt:
            violations.append(
                (
                    "max_vertical_tilt",
                    f"vertical_tilt {structure.vertical_deviation:.1f}deg exceeds limit "
                    f"{thresholds.max_vertical_tilt:.1f}deg (vertical lines are not straight)",
                )
            )

    reasons = tuple(reason for _, reason in violations)
    advice = (RECOMMENDATIONS[check] for check, _ in violations if check in RECOMMENDATIONS)
    recommendations = tuple(dict.fromkeys(advice))
    if any(check in thresholds.hard_limits for check, _ in violations):
        return Verdict(VerdictKind.FAIL, score, reasons, recommendations)
    if violations:
        return Verdict(VerdictKind.FLAGGED, score, reasons, recommendations)
    return Verdict(VerdictKind.PASS, score)
