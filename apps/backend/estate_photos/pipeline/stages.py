from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np
from PIL import Image, ImageFilter

from estate_photos.config import PARAM_BOUNDS, EnhancementParams
from estate_photos.pipeline import color
from estate_photos.pipeline.histogram import channel_means, luminance
from estate_photos.pipeline.structure import measure
from estate_photos.pipeline.types import (
    HistogramData,
    HistogramStatistics,
    ImageStage,
    PixelBuffer,
    Region,
    SceneType,
    StructureStatistics,
)

Operator = Callable[[PixelBuffer, EnhancementParams], PixelBuffer]
StageCallback = Callable[[ImageStage], None]


@dataclass(frozen=True, slots=True)
class NamedOperator:
    name: str
    apply: Operator


OPERATORS: dict[str, NamedOperator] = {}


def operator(name: str) -> Callable[[Operator], Operator]:
    def register(fn: Operator) -> Operator:
        OPERATORS[name] = NamedOperator(name=name, apply=fn)
        return fn

    return register


# ---------------------------------------------------------------------------
# Color correction / exposure
# ---------------------------------------------------------------------------

@operator("white_balance")
def _white_balance(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.white_balance(buffer, params.white_balance_temperature, params.white_balance_tint)


@operator("saturation")
def _saturation(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.adjust_saturation(buffer, params.saturation)


@operator("exposure")
def _exposure(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.adjust_exposure(buffer, params.exposure)


@operator("contrast")
def _contrast(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.adjust_contrast(buffer, params.contrast)


@operator("shadow_recovery")
def _shadow_recovery(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.recover_shadows(buffer, params.shadows)


@operator("highlight_recovery")
def _highlight_recovery(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.recover_highlights(buffer, params.highlights)


# ---------------------------------------------------------------------------
# Architecture
# ---------------------------------------------------------------------------

EDGE_THRESHOLD = 0.1
EDGE_GAIN = 0.3


@operator("architectural_detail")
def _architectural_detail(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    """Boost local contrast along structural edges (walls, frames, rooflines)."""
    if params.architecture_strength == 0:
        return buffer
    edges = buffer.to_image().convert("L").filter(ImageFilter.FIND_EDGES)
    strength = np.asarray(edges, dtype=np.float32) / 255.0
    factor = np.where(strength > EDGE_THRESHOLD, 1.0 + strength * EDGE_GAIN * params.architecture_strength, 1.0)
    return color.scale_pixels(buffer, factor)


# Leans smaller than this are left alone.
MIN_CORRECTION_DEG = 0.5


@operator("vertical_correction")
def _vertical_correction(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    """Shear leaning verticals upright, then crop the exposed wedges away."""
    if params.architecture_strength == 0:
        return buffer
    tilt = measure(buffer).vertical_tilt
    if abs(tilt) < MIN_CORRECTION_DEG:
        return buffer
    width, height = buffer.width, buffer.height
    slope = float(np.tan(np.radians(tilt)))
    sheared = buffer.to_image().transform(
        (width, height),
        Image.Transform.AFFINE,
        (1.0, slope, -slope * height / 2.0, 0.0, 1.0, 0.0),
        resample=Image.Resampling.BICUBIC,
    )
    margin_x = int(np.ceil(abs(slope) * height / 2.0))
    margin_y = int(np.ceil(margin_x * height / width))
    if 2 * margin_x >= width or 2 * margin_y >= height:
        return buffer
    cropped = sheared.crop((margin_x, margin_y, width - margin_x, height - margin_y))
    buffer.pixels[...] = np.asarray(cropped.resize((width, height), Image.Resampling.LANCZOS))
    return buffer


# ---------------------------------------------------------------------------
# Scene specific
# ---------------------------------------------------------------------------

MIXED_LIGHTING_STRENGTH = 0.5
MIXED_LIGHTING_GAIN_LIMITS = (0.8, 1.25)
ROOM_DEPTH_LIFT = 0.25
SKY_REGION = 0.6


@operator("mixed_lighting_balance")
def _mixed_lighting_balance(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    """Partial grey-world correction for rooms lit by tungsten and daylight at once."""
    luma = luminance(buffer.pixels)
    midtones = (luma > 20) & (luma < 235)
    if not midtones.any():
        return buffer
    means = buffer.pixels[midtones].astype(np.float64).mean(axis=0)
    if means.min() < 1.0:
        return buffer
    grey = float(means.mean())
    low, high = MIXED_LIGHTING_GAIN_LIMITS
    gains = tuple(
        float(np.clip(1.0 + MIXED_LIGHTING_STRENGTH * (grey / mean - 1.0), low, high)) for mean in means
    )
    return color.scale_channels(buffer, gains)


@operator("room_depth")
def _room_depth(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    return color.lift_midtones(buffer, ROOM_DEPTH_LIFT * params.shadows)


def sky_mask(pixels: np.ndarray) -> np.ndarray:
    r = pixels[..., 0].astype(np.int16)
    g = pixels[..., 1].astype(np.int16)
    b = pixels[..., 2].astype(np.int16)
    blue = (b > r + 10) & (b >= g) & (b > 80)
    mask = np.zeros(blue.shape, dtype=bool)
    sky_rows = max(1, int(round(pixels.shape[0] * SKY_REGION)))
    mask[:sky_rows] = blue[:sky_rows]
    return mask


@operator("sky_enhancement")
def _sky_enhancement(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    if params.sky_enhancement == 1.0:
        return buffer
    mask = sky_mask(buffer.pixels)
    if not mask.any():
        return buffer
    buffer = color.adjust_saturation(buffer, params.sky_enhancement, mask=mask)
    # Deepen the sky slightly when it is being intensified.
    return color.adjust_brightness(buffer, -5.0 * max(0.0, params.sky_enhancement - 1.0), mask=mask)


BLUE_HOUR_TEMPERATURE = -15.0


@operator("blue_hour_balance")
def _blue_hour_balance(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    """Cool the ambient cast of a dusk shot; window light keeps its warmth through the regional stage."""
    return color.white_balance(buffer, BLUE_HOUR_TEMPERATURE)


# ---------------------------------------------------------------------------
# Detail
# ---------------------------------------------------------------------------

@operator("noise_reduction")
def _noise_reduction(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    if params.noise_reduction == 0:
        return buffer
    image = buffer.to_image()
    smoothed = image.filter(ImageFilter.MedianFilter(size=3))
    buffer.pixels[...] = np.asarray(Image.blend(image, smoothed, params.noise_reduction))
    return buffer


@operator("sharpen")
def _sharpen(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    if params.sharpness == 0:
        return buffer
    sharpened = buffer.to_image().filter(
        ImageFilter.UnsharpMask(radius=2, percent=int(round(100 * params.sharpness)), threshold=3)
    )
    buffer.pixels[...] = np.asarray(sharpened)
    return buffer


# ---------------------------------------------------------------------------
# Regional
# ---------------------------------------------------------------------------

WINDOW_BLOCK = 32
WINDOW_BRIGHTNESS = 0.85
WINDOW_RECOVERY = 0.15


def window_blocks(pixels: np.ndarray, block: int = WINDOW_BLOCK) -> np.ndarray:
    """Per-pixel mask of blocks bright enough to be a blown-out window."""
    luma = luminance(pixels).astype(np.float32) / 255.0
    height, width = luma.shape
    rows = -(-height // block)
    cols = -(-width // block)
    padded = np.zeros((rows * block, cols * block), dtype=np.float32)
    padded[:height, :width] = luma
    counts = np.zeros_like(padded)
    counts[:height, :width] = 1.0
    sums = padded.reshape(rows, block, cols, block).sum(axis=(1, 3))
    sizes = counts.reshape(rows, block, cols, block).sum(axis=(1, 3))
    bright = (sums / np.maximum(sizes, 1.0)) > WINDOW_BRIGHTNESS
    return np.repeat(np.repeat(bright, block, axis=0), block, axis=1)[:height, :width]


@operator("window_protection")
def _window_protection(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    if params.window_protection == 0:
        return buffer
    mask = window_blocks(buffer.pixels)
    if not mask.any():
        return buffer
    factor = np.where(mask, 1.0 - WINDOW_RECOVERY * params.window_protection, 1.0)
    return color.scale_pixels(buffer, factor)


@operator("tropical_light_compensation")
def _tropical_light_compensation(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    """Tame harsh overhead sun and the green cast from dense foliage."""
    buffer = color.recover_highlights(buffer, 0.25, threshold=75.0)
    return color.white_balance(buffer, -4.0, 3.0)


@operator("harsh_sun_compensation")
def _harsh_sun_compensation(buffer: PixelBuffer, params: EnhancementParams) -> PixelBuffer:
    buffer = color.recover_highlights(buffer, 0.35, threshold=65.0)
    return color.recover_shadows(buffer, 0.15, threshold=30.0)


# ---------------------------------------------------------------------------
# (region, scene) -> per-stage operator table
# ---------------------------------------------------------------------------

STAGE_ORDER = ("color", "exposure", "architecture", "scene", "detail", "regional")

BASE_OPERATORS: dict[str, tuple[str, ...]] = {
    "color": ("white_balance", "saturation"),
    "exposure": ("exposure", "contrast", "shadow_recovery", "highlight_recovery"),
    "architecture": ("vertical_correction", "architectural_detail"),
    "scene": (),
    "detail": ("noise_reduction", "sharpen"),
    "regional": ("window_protection",),
}

SCENE_OPERATORS: dict[SceneType, tuple[str, ...]] = {
    SceneType.INTERIOR: ("mixed_lighting_balance", "room_depth"),
    SceneType.EXTERIOR: ("sky_enhancement",),
    SceneType.TWILIGHT: ("blue_hour_balance", "sky_enhancement"),
}

REGION_OPERATORS: dict[Region, tuple[str, ...]] = {
    Region.DEFAULT: (),
    Region.THAILAND: ("tropical_light_compensation",),
    Region.CAMBODIA: ("tropical_light_compensation",),
    Region.UAE: ("harsh_sun_compensation",),
}


def build_operator_table() -> dict[tuple[Region, SceneType], dict[str, tuple[str, ...]]]:
    table: dict[tuple[Region, SceneType], dict[str, tuple[str, ...]]] = {}
    for region in Region:
        for scene in SceneType:
            stages = dict(BASE_OPERATORS)
            stages["scene"] = BASE_OPERATORS["scene"] + SCENE_OPERATORS[scene]
            stages["regional"] = REGION_OPERATORS[region] + BASE_OPERATORS["regional"]
            table[(region, scene)] = stages
    return table


OPERATOR_TABLE = build_operator_table()


@dataclass(frozen=True, slots=True)
class StageDescriptor:
    name: str
    completes: ImageStage

    def operators(self, params: EnhancementParams) -> tuple[NamedOperator, ...]:
        names = OPERATOR_TABLE[(params.region, params.scene_type)][self.name]
        return tuple(OPERATORS[name] for name in names)

    def run(
        self,
        buffer: PixelBuffer,
        params: EnhancementParams,
        applied: list[str] | None = None,
    ) -> PixelBuffer:
        for op in self.operators(params):
            buffer = op.apply(buffer, params)
            if applied is not None:
                applied.append(op.name)
        return buffer


DEFAULT_STAGES: tuple[StageDescriptor, ...] = (
    StageDescriptor("color", ImageStage.COLOR_CORRECTED),
    StageDescriptor("exposure", ImageStage.EXPOSURE_CORRECTED),
    StageDescriptor("architecture", ImageStage.ARCHITECTURE_CORRECTED),
    StageDescriptor("scene", ImageStage.SCENE_OPTIMIZED),
    StageDescriptor("detail", ImageStage.SCENE_OPTIMIZED),
    StageDescriptor("regional", ImageStage.SCENE_OPTIMIZED),
)


def run_stages(
    buffer: PixelBuffer,
    params: EnhancementParams,
    stages: tuple[StageDescriptor, ...] = DEFAULT_STAGES,
    on_stage: StageCallback | None = None,
    applied: list[str] | None = None,
) -> PixelBuffer:
    reported: ImageStage | None = None
    for stage in stages:
        buffer = stage.run(buffer, params, applied)
        if on_stage is not None and stage.completes is not reported:
            on_stage(stage.completes)
            reported = stage.completes
    return buffer


# ---------------------------------------------------------------------------
# Automatic profile tuning from pre-enhancement statistics
# ---------------------------------------------------------------------------

UNDEREXPOSED_BIAS = -0.25
OVEREXPOSED_BIAS = 0.25
WARM_CAST_LIMIT = 0.15
# Laplacian variance above which a frame is already crisp and skips sharpening.
CRISP_SHARPNESS = 400.0


def _clamped(name: str, value: float) -> float:
    low, high = PARAM_BOUNDS[name]
    return min(high, max(low, value))


def tune_params(
    params: EnhancementParams,
    histogram: HistogramData,
    stats: HistogramStatistics,
    structure: StructureStatistics | None = None,
) -> EnhancementParams:
    """Nudge the listing profile towards what this particular photo needs.

    Returns a new params object; the caller's profile is never modified.
    """
    patch: dict[str, float] = {}

    if stats.exposure_bias < UNDEREXPOSED_BIAS:
        patch["exposure"] = params.exposure + min(0.75, -stats.exposure_bias)
        patch["shadows"] = params.shadows + 0.2
    elif stats.exposure_bias > OVEREXPOSED_BIAS:
        patch["exposure"] = params.exposure - min(0.5, stats.exposure_bias)
        patch["highlights"] = params.highlights + 0.1

    if stats.highlight_clipping > 0.02 or stats.window_probability > 0.3:
        patch["window_protection"] = params.window_protection + 0.2

    mean_r, mean_g, mean_b = channel_means(histogram)
    grey = (mean_r + mean_g + mean_b) / 3.0
    if grey >= 1.0 and (mean_r - mean_b) / grey > WARM_CAST_LIMIT:
        patch["white_balance_temperature"] = params.white_balance_temperature - 15.0

    if structure is not None and structure.sharpness >= CRISP_SHARPNESS and params.sharpness > 0:
        patch["sharpness"] = 0.0

    if not patch:
        return params
    return params.model_copy(update={name: _clamped(name, value) for name, value in patch.items()})
