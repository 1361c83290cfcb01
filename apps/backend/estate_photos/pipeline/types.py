from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

import numpy as np
from PIL import Image

from estate_photos.errors import EmptyImage


class Region(str, Enum):
    DEFAULT = "default"
    THAILAND = "thailand"
    CAMBODIA = "cambodia"
    UAE = "uae"


class SceneType(str, Enum):
    INTERIOR = "interior"
    EXTERIOR = "exterior"
    TWILIGHT = "twilight"


class ImageStage(str, Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    COLOR_CORRECTED = "color_corrected"
    EXPOSURE_CORRECTED = "exposure_corrected"
    ARCHITECTURE_CORRECTED = "architecture_corrected"
    SCENE_OPTIMIZED = "scene_optimized"
    QUALITY_CHECKED = "quality_checked"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


class VerdictKind(str, Enum):
    PASS = "pass"
    FLAGGED = "flagged"
    FAIL = "fail"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]


_SEVERITY = {VerdictKind.PASS: 0, VerdictKind.FLAGGED: 1, VerdictKind.FAIL: 2}


@dataclass(frozen=True, slots=True)
class Verdict:
    kind: VerdictKind
    score: float
    reasons: tuple[str, ...] = ()
    recommendations: tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.kind is not VerdictKind.FAIL

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "score": round(self.score, 4),
            "reasons": list(self.reasons),
            "recommendations": list(self.recommendations),
        }


@dataclass(slots=True)
class PixelBuffer:
    """RGB pixels owned by exactly one pipeline run.

    Operators mutate ``pixels`` in place (or swap in a new array) and hand the
    same buffer to the next stage.
    """

    pixels: np.ndarray

    def __post_init__(self) -> None:
        if self.pixels.ndim != 3 or self.pixels.shape[2] != 3:
            raise ValueError(f"expected an HxWx3 array, got shape {self.pixels.shape}")
        if self.pixels.dtype != np.uint8:
            self.pixels = np.clip(self.pixels, 0, 255).astype(np.uint8)

    @classmethod
    def from_image(cls, image: Image.Image) -> PixelBuffer:
        return cls(np.array(image.convert("RGB"), dtype=np.uint8))

    @classmethod
    def filled(cls, width: int, height: int, rgb: tuple[int, int, int]) -> PixelBuffer:
        pixels = np.empty((height, width, 3), dtype=np.uint8)
        pixels[...] = rgb
        return cls(pixels)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def require_pixels(self) -> None:
        if self.pixel_count == 0:
            raise EmptyImage("image has no pixels")

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)


@dataclass(frozen=True, slots=True)
class HistogramData:
    red: np.ndarray
    green: np.ndarray
    blue: np.ndarray
    luminance: np.ndarray
    total_pixels: int

    def channels(self) -> dict[str, np.ndarray]:
        return {
            "red": self.red,
            "green": self.green,
            "blue": self.blue,
            "luminance": self.luminance,
        }


@dataclass(frozen=True, slots=True)
class HistogramStatistics:
    mean: float
    std_dev: float
    median: int
    dark_fraction: float
    light_fraction: float
    contrast_ratio: float
    exposure_bias: float
    mid_fraction: float = 0.0
    highlight_clipping: float = 0.0
    shadow_detail: float = 0.0
    window_probability: float = 0.0
    dynamic_range: float = 0.0
    p5: int = 0
    p95: int = 0
    peaks: tuple[tuple[int, int], ...] = ()

    def as_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["peaks"] = [list(peak) for peak in self.peaks]
        return payload


@dataclass(frozen=True, slots=True)
class StructureStatistics:
    """Focus and vertical-line measurements of one frame.

    ``vertical_tilt`` is the edge-weighted mean lean of near-vertical edges in
    degrees. ``vertical_convergence`` is how far the left and right halves lean
    apart, which is how keystoning shows up.
    """

    sharpness: float = 0.0
    vertical_tilt: float = 0.0
    vertical_convergence: float = 0.0
    vertical_edges: float = 0.0

    @property
    def vertical_deviation(self) -> float:
        return max(abs(self.vertical_tilt), self.vertical_convergence / 2.0)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class PipelineResult:
    image_id: str
    stage: ImageStage
    width: int
    height: int
    verdict: Verdict | None = None
    pre_verdict: Verdict | None = None
    pre_stats: HistogramStatistics | None = None
    post_stats: HistogramStatistics | None = None
    pre_structure: StructureStatistics | None = None
    post_structure: StructureStatistics | None = None
    image_bytes: bytes | None = None
    output_width: int = 0
    output_height: int = 0
    reason: str | None = None
    reason_code: str | None = None
    stages_applied: list[str] = field(default_factory=list)
    operators_applied: list[str] = field(default_factory=list)

    @property
    def accepted(self) -> bool:
        return self.stage is ImageStage.ACCEPTED

    @property
    def reasons(self) -> list[str]:
        if self.verdict is not None and self.verdict.reasons:
            return list(self.verdict.reasons)
        return [self.reason] if self.reason else []
