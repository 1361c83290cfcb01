from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from estate_photos.pipeline.types import ImageStage, Region, SceneType
from estate_photos.services.types import BatchStatus, TaskStatus


class ImagePayload(BaseModel):
    image_b64: str = Field(min_length=1)
    image_id: str | None = Field(default=None, max_length=128)
    filename: str | None = None


class BatchSubmitRequest(BaseModel):
    images: list[ImagePayload] = Field(min_length=1)
    region: Region = Region.DEFAULT
    scene_type: SceneType = SceneType.INTERIOR
    overrides: dict[str, Any] = Field(default_factory=dict)
    batch_id: str | None = None


class ImageTaskView(BaseModel):
    image_id: str
    listing_id: str
    batch_id: str
    filename: str | None = None
    stage: ImageStage
    status: TaskStatus
    attempts: int = 0
    retry_count: int = 0
    verdict: dict[str, Any] | None = None
    reason: str | None = None
    last_error: str | None = None
    storage_key: str | None = None
    pre_verdict: dict[str, Any] | None = None
    pre_stats: dict[str, Any] | None = None
    post_stats: dict[str, Any] | None = None
    pre_structure: dict[str, Any] | None = None
    post_structure: dict[str, Any] | None = None


class BatchSnapshot(BaseModel):
    batch_id: str
    listing_id: str
    status: BatchStatus
    region: Region
    scene_type: SceneType
    total: int
    pending: int
    in_flight: int
    processed: int
    failed: int
    accepted: int
    rejected: int
    errored: int
    cancel_requested: bool = False
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None = None
    tasks: list[ImageTaskView] = Field(default_factory=list)
    quality_report: dict[str, Any] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    status: str = "ok"
    active_batches: int
    max_concurrent_processing: int
