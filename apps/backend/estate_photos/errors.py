from __future__ import annotations


class EngineError(Exception):
    """Base class for every error raised by the enhancement engine."""

    code = "EngineError"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    @property
    def reason(self) -> str:
        return f"{self.code}: {self.message}"


class ImageValidationError(EngineError):
    """Per-image input problem. Terminal for the image, never retried."""

    code = "ValidationError"


class EmptyImage(ImageValidationError):
    code = "EmptyImage"


class ResolutionOutOfRange(ImageValidationError):
    code = "ResolutionOutOfRange"

    def __init__(self, width: int, height: int, envelope: tuple[int, int, int, int]) -> None:
        min_w, min_h, max_w, max_h = envelope
        super().__init__(
            f"{width}x{height} is outside the allowed range "
            f"{min_w}x{min_h} .. {max_w}x{max_h}"
        )
        self.width = width
        self.height = height


class UnsupportedFormat(ImageValidationError):
    code = "UnsupportedFormat"


class ParameterOutOfRange(EngineError):
    """An enhancement parameter lies outside its documented bounds.

    Indicates a miscomputed profile, so it aborts the whole batch instead of
    failing a single image.
    """

    code = "ParameterOutOfRange"

    def __init__(self, name: str, value: float, low: float, high: float) -> None:
        super().__init__(f"{name}={value!r} outside [{low}, {high}]")
        self.name = name
        self.value = value
        self.low = low
        self.high = high


class TransientIOError(EngineError):
    """Storage or network hiccup; the attempt may succeed if repeated."""

    code = "TransientIOError"


class ConfigurationError(EngineError):
    """Static configuration failed validation at startup."""

    code = "ConfigurationError"


class BatchNotFound(EngineError, KeyError):
    code = "BatchNotFound"

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"unknown batch: {batch_id}")
        self.batch_id = batch_id

    def __str__(self) -> str:
        return self.message
