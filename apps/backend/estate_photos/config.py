from __future__ import annotations

from copy import deepcopy
import math
import os
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from estate_photos.errors import ConfigurationError, ParameterOutOfRange
from estate_photos.pipeline.types import Region, SceneType


class EnhancementParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    white_balance_temperature: float = Field(default=0.0, ge=-100.0, le=100.0)
    white_balance_tint: float = Field(default=0.0, ge=-100.0, le=100.0)
    saturation: float = Field(default=1.0, ge=0.0, le=2.0)
    exposure: float = Field(default=0.0, ge=-2.0, le=2.0)
    contrast: float = Field(default=1.0, ge=0.5, le=2.0)
    highlights: float = Field(default=0.2, ge=0.0, le=1.0)
    shadows: float = Field(default=0.3, ge=0.0, le=1.0)
    sharpness: float = Field(default=0.5, ge=0.0, le=2.0)
    noise_reduction: float = Field(default=0.0, ge=0.0, le=1.0)
    window_protection: float = Field(default=0.5, ge=0.0, le=1.0)
    sky_enhancement: float = Field(default=1.0, ge=0.0, le=2.0)
    architecture_strength: float = Field(default=0.3, ge=0.0, le=1.0)

    region: Region = Region.DEFAULT
    scene_type: SceneType = SceneType.INTERIOR


def _field_bounds(model: type[BaseModel]) -> dict[str, tuple[float, float]]:
    bounds: dict[str, tuple[float, float]] = {}
    for name, info in model.model_fields.items():
        low = next((m.ge for m in info.metadata if hasattr(m, "ge")), None)
        high = next((m.le for m in info.metadata if hasattr(m, "le")), None)
        if low is not None and high is not None:
            bounds[name] = (float(low), float(high))
    return bounds


PARAM_BOUNDS: dict[str, tuple[float, float]] = _field_bounds(EnhancementParams)


def validate_params(params: EnhancementParams) -> EnhancementParams:
    """Re-check every bounded field, including objects built with ``model_construct``."""
    for name, (low, high) in PARAM_BOUNDS.items():
        value = getattr(params, name)
        if not isinstance(value, (int, float)) or math.isnan(value) or not low <= value <= high:
            raise ParameterOutOfRange(name, value, low, high)
    if not isinstance(params.region, Region) or not isinstance(params.scene_type, SceneType):
        raise ParameterOutOfRange("profile_tags", float("nan"), 0.0, 0.0)
    return params


QUALITY_CHECKS = frozenset(
    {
        "resolution",
        "min_mean_brightness",
        "max_contrast_ratio",
        "min_dynamic_range",
        "max_exposure_value",
        "min_quality_score",
        "min_sharpness",
        "max_vertical_tilt",
    }
)


class QualityThresholds(BaseModel):
    model_config = ConfigDict(frozen=True)

    min_mean_brightness: float = Field(default=40.0, ge=0.0, le=255.0)
    max_contrast_ratio: float = Field(default=64.0, ge=1.0, le=256.0)
    min_dynamic_range: float = Field(default=60.0, ge=0.0, le=255.0)
    max_exposure_value: float = Field(default=0.6, ge=0.0, le=1.0)
    min_quality_score: float = Field(default=0.45, ge=0.0, le=1.0)
    # Laplacian variance of luma; 0 disables the blur check.
    min_sharpness: float = Field(default=50.0, ge=0.0, le=10_000.0)
    max_vertical_tilt: float = Field(default=2.0, ge=0.0, le=45.0)

    min_width: int = Field(default=1024, ge=1, le=65535)
    min_height: int = Field(default=768, ge=1, le=65535)
    max_width: int = Field(default=12000, ge=1, le=65535)
    max_height: int = Field(default=12000, ge=1, le=65535)

    hard_limits: frozenset[str] = frozenset({"resolution", "min_quality_score"})

    @model_validator(mode="after")
    def _check_consistency(self) -> QualityThresholds:
        if self.min_width > self.max_width or self.min_height > self.max_height:
            raise ValueError("resolution envelope minimum exceeds maximum")
        unknown = set(self.hard_limits) - QUALITY_CHECKS
        if unknown:
            raise ValueError(f"unknown quality checks in hard_limits: {sorted(unknown)}")
        return self

    @property
    def envelope(self) -> tuple[int, int, int, int]:
        return (self.min_width, self.min_height, self.max_width, self.max_height)

    def resolution_ok(self, width: int, height: int) -> bool:
        return self.min_width <= width <= self.max_width and self.min_height <= height <= self.max_height


class QualityWeights(BaseModel):
    model_config = ConfigDict(frozen=True)

    brightness: float = Field(default=0.4, ge=0.0, le=1.0)
    contrast: float = Field(default=0.3, ge=0.0, le=1.0)
    dynamic_range: float = Field(default=0.3, ge=0.0, le=1.0)

    ideal_mean: tuple[float, float] = (90.0, 170.0)
    ideal_contrast: tuple[float, float] = (2.5, 16.0)
    ideal_dynamic_range: tuple[float, float] = (120.0, 255.0)

    @model_validator(mode="after")
    def _check_ranges(self) -> QualityWeights:
        if self.brightness + self.contrast + self.dynamic_range <= 0.0:
            raise ValueError("quality weights must not all be zero")
        for name in ("ideal_mean", "ideal_contrast", "ideal_dynamic_range"):
            low, high = getattr(self, name)
            if low > high:
                raise ValueError(f"{name} lower bound exceeds upper bound")
        if self.ideal_contrast[0] < 1.0:
            raise ValueError("ideal_contrast must start at 1.0 or above")
        return self


class ResourceLimits(BaseModel):
    max_concurrent_processing: int = Field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_PROCESSING", "4")), ge=1, le=64
    )
    max_concurrent_uploads: int = Field(
        default_factory=lambda: int(os.getenv("MAX_CONCURRENT_UPLOADS", "8")), ge=1, le=128
    )
    max_batch_size: int = Field(
        default_factory=lambda: int(os.getenv("MAX_BATCH_SIZE", "100")), ge=1, le=1000
    )
    # Finished batches kept in memory for polling; older ones live only in the metadata store.
    max_finished_batches: int = Field(
        default_factory=lambda: int(os.getenv("MAX_FINISHED_BATCHES", "256")), ge=0, le=100_000
    )


class RetryPolicy(BaseModel):
    retry_budget: int = Field(default_factory=lambda: int(os.getenv("RETRY_BUDGET", "3")), ge=0, le=10)
    backoff_base_s: float = Field(
        default_factory=lambda: float(os.getenv("RETRY_BACKOFF_BASE_S", "0.5")), ge=0.0, le=60.0
    )
    backoff_max_s: float = Field(default=8.0, ge=0.0, le=300.0)
    handoff_timeout_s: float = Field(
        default_factory=lambda: float(os.getenv("HANDOFF_TIMEOUT_S", "30")), ge=0.01, le=600.0
    )

    def delay_for(self, attempt: int) -> float:
        return min(self.backoff_max_s, self.backoff_base_s * (2**attempt))


class OutputConfig(BaseModel):
    max_edge: int = Field(default_factory=lambda: int(os.getenv("OUTPUT_MAX_EDGE", "2048")), ge=64, le=8192)
    jpeg_quality: int = Field(default=90, ge=50, le=100)


DEFAULT_PROFILES: dict[SceneType, EnhancementParams] = {
    SceneType.INTERIOR: EnhancementParams(
        scene_type=SceneType.INTERIOR,
        contrast=1.1,
        saturation=1.1,
        shadows=0.4,
        highlights=0.3,
        white_balance_temperature=-5.0,
        window_protection=0.7,
        architecture_strength=0.3,
        sky_enhancement=1.0,
    ),
    SceneType.EXTERIOR: EnhancementParams(
        scene_type=SceneType.EXTERIOR,
        contrast=1.2,
        saturation=1.2,
        shadows=0.2,
        highlights=0.4,
        window_protection=0.3,
        architecture_strength=0.5,
        sky_enhancement=1.4,
    ),
    SceneType.TWILIGHT: EnhancementParams(
        scene_type=SceneType.TWILIGHT,
        contrast=1.3,
        saturation=1.3,
        shadows=0.5,
        highlights=0.2,
        white_balance_temperature=-10.0,
        window_protection=0.6,
        architecture_strength=0.4,
        sky_enhancement=1.2,
        noise_reduction=0.3,
    ),
}

# Deltas applied on top of the scene profile for each market.
REGIONAL_ADJUSTMENTS: dict[Region, dict[str, float]] = {
    Region.DEFAULT: {},
    Region.THAILAND: {"white_balance_temperature": -6.0, "highlights": 0.1, "saturation": -0.05},
    Region.CAMBODIA: {"white_balance_temperature": -4.0, "highlights": 0.1},
    Region.UAE: {"highlights": 0.2, "white_balance_temperature": -3.0, "window_protection": 0.2},
}


class EngineSettings(BaseModel):
    limits: ResourceLimits = Field(default_factory=ResourceLimits)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)
    output: OutputConfig = Field(default_factory=OutputConfig)
    thresholds: QualityThresholds = Field(default_factory=QualityThresholds)
    weights: QualityWeights = Field(default_factory=QualityWeights)
    profiles: dict[SceneType, EnhancementParams] = Field(default_factory=lambda: dict(DEFAULT_PROFILES))
    regional_adjustments: dict[Region, dict[str, float]] = Field(
        default_factory=lambda: deepcopy(REGIONAL_ADJUSTMENTS)
    )

    @model_validator(mode="after")
    def _check_profiles(self) -> EngineSettings:
        missing = set(SceneType) - set(self.profiles)
        if missing:
            raise ValueError(f"missing enhancement profiles: {sorted(s.value for s in missing)}")
        for region in Region:
            for scene in SceneType:
                # Every market/scene pair must resolve to an in-range profile.
                resolve_profile(region, scene, settings=self)
        return self


def deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _as_parameter_error(error: ValidationError) -> ParameterOutOfRange:
    first = error.errors()[0]
    name = str(first["loc"][0]) if first.get("loc") else "params"
    low, high = PARAM_BOUNDS.get(name, (float("nan"), float("nan")))
    value = first.get("input")
    return ParameterOutOfRange(name, value, low, high)


def merge_enhancement_params(current: EnhancementParams, patch: dict[str, Any]) -> EnhancementParams:
    merged_dict = deep_merge(current.model_dump(), patch)
    try:
        return EnhancementParams.model_validate(merged_dict)
    except ValidationError as error:
        raise _as_parameter_error(error) from error


def resolve_profile(
    region: Region | str,
    scene_type: SceneType | str,
    overrides: dict[str, Any] | None = None,
    settings: EngineSettings | None = None,
) -> EnhancementParams:
    """Build the enhancement profile for one listing: scene preset, market deltas, caller overrides."""
    region = Region(region)
    scene_type = SceneType(scene_type)
    profiles = settings.profiles if settings is not None else DEFAULT_PROFILES
    adjustments = settings.regional_adjustments if settings is not None else REGIONAL_ADJUSTMENTS

    base = profiles[scene_type]
    patch: dict[str, Any] = {"region": region, "scene_type": scene_type}
    for name, delta in adjustments.get(region, {}).items():
        patch[name] = getattr(base, name) + delta
    if overrides:
        patch.update(overrides)
    return merge_enhancement_params(base, patch)


def load_settings(patch: dict[str, Any] | None = None) -> EngineSettings:
    """Validate static configuration once at process start."""
    try:
        base = EngineSettings().model_dump(mode="json")
        return EngineSettings.model_validate(deep_merge(base, patch or {}))
    except ParameterOutOfRange as error:
        raise ConfigurationError(f"invalid enhancement profile: {error.message}") from error
    except ValueError as error:
        raise ConfigurationError(f"invalid configuration: {error}") from error
