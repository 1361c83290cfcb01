from __future__ import annotations

import logging
from io import BytesIO

import numpy as np
from PIL import Image, UnidentifiedImageError

from estate_photos.config import (
    EnhancementParams,
    OutputConfig,
    QualityThresholds,
    QualityWeights,
    validate_params,
)
from estate_photos.errors import EmptyImage, ImageValidationError, ResolutionOutOfRange, UnsupportedFormat
from estate_photos.pipeline.histogram import analyze
from estate_photos.pipeline.quality_gate import evaluate
from estate_photos.pipeline.stages import (
    DEFAULT_STAGES,
    StageCallback,
    StageDescriptor,
    run_stages,
    tune_params,
)
from estate_photos.pipeline.structure import measure
from estate_photos.pipeline.types import ImageStage, PipelineResult, PixelBuffer

logger = logging.getLogger(__name__)

QUALITY_GATE_FAILURE = "QualityGateFailure"
# Integer modes Pillow uses for 16-bit greyscale (PNG, TIFF).
WIDE_INTEGER_MODES = frozenset({"I;16", "I;16B", "I;16L", "I;16N", "I"})


class EnhancementPipeline:
    """Validate, score, enhance and re-score one listing photo.

    ``process`` is synchronous and CPU bound; the batch orchestrator runs it in
    a worker thread. It never touches shared state, so concurrent calls on one
    instance are safe.
    """

    def __init__(
        self,
        thresholds: QualityThresholds | None = None,
        weights: QualityWeights | None = None,
        output: OutputConfig | None = None,
        stages: tuple[StageDescriptor, ...] = DEFAULT_STAGES,
        auto_tune: bool = True,
    ) -> None:
        self.thresholds = thresholds or QualityThresholds()
        self.weights = weights or QualityWeights()
        self.output = output or OutputConfig()
        self.stages = stages
        self.auto_tune = auto_tune

    def process(
        self,
        image_bytes: bytes,
        params: EnhancementParams,
        image_id: str = "",
        on_stage: StageCallback | None = None,
    ) -> PipelineResult:
        # Raises ParameterOutOfRange: a broken profile is fatal, not an image problem.
        validate_params(params)
        notify = on_stage or (lambda stage: None)
        notify(ImageStage.RECEIVED)

        try:
            frame, width, height = self._decode(image_bytes)
        except ImageValidationError as error:
            return self._rejected(image_id, 0, 0, error)

        notify(ImageStage.VALIDATED)
        buffer = PixelBuffer.from_image(self._fit_output(frame))
        histogram, pre_stats = analyze(buffer)
        pre_structure = measure(buffer)
        pre_verdict = evaluate(
            pre_stats, self.thresholds, self.weights, resolution=(width, height), structure=pre_structure
        )

        run_params = tune_params(params, histogram, pre_stats, pre_structure) if self.auto_tune else params
        stages_applied = [stage.name for stage in self.stages]
        operators_applied: list[str] = []
        buffer = run_stages(buffer, run_params, self.stages, on_stage=notify, applied=operators_applied)

        _, post_stats = analyze(buffer)
        post_structure = measure(buffer)
        verdict = evaluate(
            post_stats, self.thresholds, self.weights, resolution=(width, height), structure=post_structure
        )
        notify(ImageStage.QUALITY_CHECKED)

        result = PipelineResult(
            image_id=image_id,
            stage=ImageStage.ACCEPTED,
            width=width,
            height=height,
            verdict=verdict,
            pre_verdict=pre_verdict,
            pre_stats=pre_stats,
            post_stats=post_stats,
            pre_structure=pre_structure,
            post_structure=post_structure,
            output_width=buffer.width,
            output_height=buffer.height,
            stages_applied=stages_applied,
            operators_applied=operators_applied,
        )

        if not verdict.passed:
            result.stage = ImageStage.REJECTED
            result.reason_code = QUALITY_GATE_FAILURE
            result.reason = f"{QUALITY_GATE_FAILURE}: " + "; ".join(verdict.reasons)
            logger.info(f"image {image_id or '<anon>'} rejected by quality gate: {result.reason}")
        else:
            result.image_bytes = self._encode(buffer)
        notify(result.stage)
        return result

    def _decode(self, image_bytes: bytes) -> tuple[Image.Image, int, int]:
        if not image_bytes:
            raise EmptyImage("no image data")
        try:
            with Image.open(BytesIO(image_bytes)) as raw:
                width, height = raw.size
                if width == 0 or height == 0:
                    raise EmptyImage("image has no pixels")
                if not self.thresholds.resolution_ok(width, height):
                    raise ResolutionOutOfRange(width, height, self.thresholds.envelope)
                frame = self._to_rgb(raw)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as error:
            raise UnsupportedFormat(f"cannot decode image: {error}") from error
        return frame, width, height

    @staticmethod
    def _to_rgb(raw: Image.Image) -> Image.Image:
        if raw.mode in WIDE_INTEGER_MODES:
            # Keep the high byte; a plain convert() clips everything above 255 to white.
            samples = np.clip(np.asarray(raw, dtype=np.int64), 0, 65535) >> 8
            return Image.fromarray(samples.astype(np.uint8)).convert("RGB")
        if raw.mode == "F":
            raise UnsupportedFormat("floating point images are not supported")
        return raw.convert("RGB")

    def _fit_output(self, frame: Image.Image) -> Image.Image:
        width, height = frame.size
        longest = max(width, height)
        if longest <= self.output.max_edge:
            return frame
        ratio = self.output.max_edge / longest
        size = (max(1, round(width * ratio)), max(1, round(height * ratio)))
        return frame.resize(size, Image.Resampling.LANCZOS)

    def _encode(self, buffer: PixelBuffer) -> bytes:
        out_buffer = BytesIO()
        buffer.to_image().save(out_buffer, format="JPEG", quality=self.output.jpeg_quality, optimize=True)
        return out_buffer.getvalue()

    @staticmethod
    def _rejected(image_id: str, width: int, height: int, error: ImageValidationError) -> PipelineResult:
        logger.info(f"image {image_id or '<anon>'} rejected: {error.reason}")
        return PipelineResult(
            image_id=image_id,
            stage=ImageStage.REJECTED,
            width=getattr(error, "width", width),
            height=getattr(error, "height", height),
            reason=error.reason,
            reason_code=error.code,
        )
