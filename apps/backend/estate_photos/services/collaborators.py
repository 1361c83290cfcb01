from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

from estate_photos.pipeline.types import PipelineResult

logger = logging.getLogger(__name__)


def storage_key(listing_id: str, image_id: str) -> str:
    return f"listings/{listing_id}/images/{image_id}.jpg"


class ImageStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str: ...


class MetadataStore(Protocol):
    async def record_image(self, task_view: dict[str, Any], result: PipelineResult) -> None: ...

    async def record_batch(self, snapshot: dict[str, Any]) -> None: ...


class BatchNotifier(Protocol):
    async def batch_finished(self, snapshot: dict[str, Any]) -> None: ...


class InMemoryImageStore:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        async with self._lock:
            self.objects[key] = (data, content_type)
        return key


class InMemoryMetadataStore:
    def __init__(self) -> None:
        self.images: dict[str, dict[str, Any]] = {}
        self.batches: dict[str, dict[str, Any]] = {}

    async def record_image(self, task_view: dict[str, Any], result: PipelineResult) -> None:
        self.images[task_view["image_id"]] = dict(task_view)

    async def record_batch(self, snapshot: dict[str, Any]) -> None:
        self.batches[snapshot["batch_id"]] = dict(snapshot)


class LoggingNotifier:
    async def batch_finished(self, snapshot: dict[str, Any]) -> None:
        logger.info(
            f"batch {snapshot['batch_id']} for listing {snapshot['listing_id']} finished "
            f"status={snapshot['status']} processed={snapshot['processed']} "
            f"failed={snapshot['failed']} total={snapshot['total']}"
        )
