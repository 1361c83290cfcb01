from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from estate_photos.pipeline.types import ImageStage, PipelineResult


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    ERRORED = "errored"


class BatchStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def finished(self) -> bool:
        return self not in (BatchStatus.PENDING, BatchStatus.PROCESSING)


@dataclass(slots=True)
class ImageSubmission:
    data: bytes
    image_id: str | None = None
    filename: str | None = None


class EventKind(str, Enum):
    DISPATCHED = "dispatched"
    STAGE = "stage"
    RETRYING = "retrying"
    COMPLETED = "completed"
    ERRORED = "errored"
    FATAL = "fatal"
    CANCEL = "cancel"
    DISPATCH_CLOSED = "dispatch_closed"


@dataclass(slots=True)
class TaskEvent:
    """Message from a dispatcher/worker to the batch owner."""

    kind: EventKind
    image_id: str | None = None
    stage: ImageStage | None = None
    attempt: int = 0
    error: str | None = None
    result: PipelineResult | None = None
    storage_key: str | None = None
