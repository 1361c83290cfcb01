import pytest

from estate_photos.pipeline.types import ImageStage, PipelineResult, Verdict, VerdictKind
from estate_photos.services.report import BatchQualityReport


def scored(score: float, kind: VerdictKind = VerdictKind.PASS, reasons: tuple[str, ...] = ()) -> PipelineResult:
    return PipelineResult(
        image_id="x",
        stage=ImageStage.ACCEPTED,
        width=1,
        height=1,
        verdict=Verdict(kind, score, reasons),
    )


def test_distribution_and_overall_score() -> None:
    report = BatchQualityReport()
    for score in (0.9, 0.7, 0.5, 0.2):
        report.add(scored(score), "interior")

    payload = report.as_dict()

    assert payload["distribution"] == {"excellent": 1, "good": 1, "fair": 1, "poor": 1}
    assert payload["overall_batch_score"] == pytest.approx(10 / 16)
    assert payload["scenes"]["interior"] == {"count": 4, "avg_score": pytest.approx(0.575)}


def test_issues_and_unscored_rejections() -> None:
    report = BatchQualityReport()
    report.add(
        scored(0.1, VerdictKind.FAIL, ("mean_brightness 0.0 is below minimum 40.0", "quality_score 0.10 is below minimum 0.45")),
        "exterior",
    )
    report.add(
        PipelineResult(
            image_id="small",
            stage=ImageStage.REJECTED,
            width=800,
            height=600,
            reason_code="ResolutionOutOfRange",
        ),
        "exterior",
    )

    payload = report.as_dict()

    assert payload["total_images"] == 1
    assert payload["verdicts"] == {"fail": 1}
    assert payload["issues"] == {"mean_brightness": 1, "quality_score": 1, "ResolutionOutOfRange": 1}
