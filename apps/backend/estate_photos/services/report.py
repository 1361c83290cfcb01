from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from estate_photos.pipeline.types import PipelineResult


@dataclass(slots=True)
class SceneStats:
    count: int = 0
    avg_score: float = 0.0

    def update(self, score: float) -> None:
        self.count += 1
        self.avg_score = (self.avg_score * (self.count - 1) + score) / self.count


@dataclass(slots=True)
class BatchQualityReport:
    """Running quality summary across the images of one batch."""

    total_images: int = 0
    overall_batch_score: float = 0.0
    excellent: int = 0
    good: int = 0
    fair: int = 0
    poor: int = 0
    verdicts: Counter = field(default_factory=Counter)
    issues: Counter = field(default_factory=Counter)
    scenes: dict[str, SceneStats] = field(default_factory=dict)

    def add(self, result: PipelineResult, scene: str) -> None:
        if result.verdict is None:
            # Rejected before scoring (validation); counts as an issue only.
            if result.reason_code:
                self.issues[result.reason_code] += 1
            return

        score = result.verdict.score
        self.total_images += 1
        if score > 0.8:
            self.excellent += 1
        elif score > 0.6:
            self.good += 1
        elif score > 0.4:
            self.fair += 1
        else:
            self.poor += 1

        self.verdicts[result.verdict.kind.value] += 1
        for reason in result.verdict.reasons:
            self.issues[reason.split(" ", 1)[0]] += 1
        self.scenes.setdefault(scene, SceneStats()).update(score)

        weighted = self.excellent * 4 + self.good * 3 + self.fair * 2 + self.poor
        self.overall_batch_score = weighted / (self.total_images * 4)

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_images": self.total_images,
            "overall_batch_score": round(self.overall_batch_score, 4),
            "distribution": {
                "excellent": self.excellent,
                "good": self.good,
                "fair": self.fair,
                "poor": self.poor,
            },
            "verdicts": dict(self.verdicts),
            "issues": dict(self.issues),
            "scenes": {
                name: {"count": stats.count, "avg_score": round(stats.avg_score, 4)}
                for name, stats in self.scenes.items()
            },
        }
