from __future__ import annotations

import asyncio
import logging
import uuid
from collections import Counter, deque
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from estate_photos.config import (
    EngineSettings,
    EnhancementParams,
    merge_enhancement_params,
    resolve_profile,
    validate_params,
)
from estate_photos.errors import BatchNotFound, ParameterOutOfRange, TransientIOError
from estate_photos.pipeline.runner import EnhancementPipeline
from estate_photos.pipeline.types import ImageStage, PipelineResult, Region, SceneType
from estate_photos.schemas import BatchSnapshot, ImageTaskView
from estate_photos.services.collaborators import (
    BatchNotifier,
    ImageStore,
    InMemoryImageStore,
    InMemoryMetadataStore,
    LoggingNotifier,
    MetadataStore,
    storage_key,
)
from estate_photos.services.report import BatchQualityReport
from estate_photos.services.types import (
    BatchStatus,
    EventKind,
    ImageSubmission,
    TaskEvent,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# Storage and metadata failures are wrapped into TransientIOError by the hand-off.
RETRYABLE_ERRORS = (TransientIOError,)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True)
class ImageTask:
    image_id: str
    listing_id: str
    batch_id: str
    filename: str | None = None
    data: bytes | None = field(default=None, repr=False)
    stage: ImageStage = ImageStage.RECEIVED
    status: TaskStatus = TaskStatus.PENDING
    attempts: int = 0
    reason: str | None = None
    last_error: str | None = None
    storage_key: str | None = None
    result: PipelineResult | None = field(default=None, repr=False)

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)

    def view(self) -> ImageTaskView:
        result = self.result
        return ImageTaskView(
            image_id=self.image_id,
            listing_id=self.listing_id,
            batch_id=self.batch_id,
            filename=self.filename,
            stage=self.stage,
            status=self.status,
            attempts=self.attempts,
            retry_count=self.retry_count,
            verdict=result.verdict.as_dict() if result and result.verdict else None,
            reason=self.reason,
            last_error=self.last_error,
            storage_key=self.storage_key,
            pre_verdict=result.pre_verdict.as_dict() if result and result.pre_verdict else None,
            pre_stats=result.pre_stats.as_dict() if result and result.pre_stats else None,
            post_stats=result.post_stats.as_dict() if result and result.post_stats else None,
            pre_structure=result.pre_structure.as_dict() if result and result.pre_structure else None,
            post_structure=result.post_structure.as_dict() if result and result.post_structure else None,
        )


@dataclass(slots=True)
class BatchState:
    """Aggregate for one batch. Task states and counters change only in the owner coroutine."""

    batch_id: str
    listing_id: str
    params: EnhancementParams
    tasks: dict[str, ImageTask]
    status: BatchStatus = BatchStatus.PENDING
    counts: Counter = field(default_factory=Counter)
    report: BatchQualityReport = field(default_factory=BatchQualityReport)
    error: str | None = None
    cancel_requested: bool = False
    aborted: bool = False
    dispatch_closed: bool = False
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    queue: asyncio.Queue = field(default_factory=asyncio.Queue, repr=False)
    stop: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    def __post_init__(self) -> None:
        self.counts[TaskStatus.PENDING] = len(self.tasks)

    @property
    def total(self) -> int:
        return len(self.tasks)

    @property
    def processed(self) -> int:
        return self.counts[TaskStatus.ACCEPTED]

    @property
    def failed(self) -> int:
        return self.counts[TaskStatus.REJECTED] + self.counts[TaskStatus.ERRORED]

    def move(self, task: ImageTask, status: TaskStatus) -> None:
        # Counter update and task status change happen together, with no await in between.
        self.counts[task.status] -= 1
        self.counts[status] += 1
        task.status = status
        self.updated_at = _now()

    def snapshot(self) -> BatchSnapshot:
        return BatchSnapshot(
            batch_id=self.batch_id,
            listing_id=self.listing_id,
            status=self.status,
            region=self.params.region,
            scene_type=self.params.scene_type,
            total=self.total,
            pending=self.counts[TaskStatus.PENDING],
            in_flight=self.counts[TaskStatus.IN_FLIGHT],
            processed=self.processed,
            failed=self.failed,
            accepted=self.counts[TaskStatus.ACCEPTED],
            rejected=self.counts[TaskStatus.REJECTED],
            errored=self.counts[TaskStatus.ERRORED],
            cancel_requested=self.cancel_requested,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
            finished_at=self.finished_at,
            tasks=[task.view() for task in self.tasks.values()],
            quality_report=self.report.as_dict(),
        )


class BatchOrchestrator:
    """Runs listing batches through the enhancement pipeline.

    Pipeline runs are capped globally by ``max_concurrent_processing`` and
    storage hand-offs by ``max_concurrent_uploads``. Each batch has one owner
    coroutine that applies every status change from a message queue.
    """

    def __init__(
        self,
        settings: EngineSettings | None = None,
        pipeline: EnhancementPipeline | None = None,
        image_store: ImageStore | None = None,
        metadata_store: MetadataStore | None = None,
        notifier: BatchNotifier | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.pipeline = pipeline or EnhancementPipeline(
            thresholds=self.settings.thresholds,
            weights=self.settings.weights,
            output=self.settings.output,
        )
        self.image_store = image_store or InMemoryImageStore()
        self.metadata_store = metadata_store or InMemoryMetadataStore()
        self.notifier = notifier or LoggingNotifier()

        self._processing = asyncio.Semaphore(self.settings.limits.max_concurrent_processing)
        self._uploads = asyncio.Semaphore(self.settings.limits.max_concurrent_uploads)
        self._batches: dict[str, BatchState] = {}
        self._owners: dict[str, asyncio.Task] = {}
        self._workers: set[asyncio.Task] = set()
        self._finished: deque[str] = deque()

    async def submit(
        self,
        listing_id: str,
        images: Sequence[ImageSubmission | bytes],
        params: EnhancementParams | None = None,
        *,
        region: Region | str = Region.DEFAULT,
        scene_type: SceneType | str = SceneType.INTERIOR,
        overrides: dict[str, Any] | None = None,
        batch_id: str | None = None,
    ) -> BatchSnapshot:
        if not images:
            raise ValueError("a batch needs at least one image")
        limit = self.settings.limits.max_batch_size
        if len(images) > limit:
            raise ValueError(f"batch of {len(images)} images exceeds max_batch_size={limit}")

        # ParameterOutOfRange surfaces here, before any state exists.
        if params is None:
            params = resolve_profile(region, scene_type, overrides, settings=self.settings)
        else:
            params = validate_params(params)
            if overrides:
                params = merge_enhancement_params(params, overrides)

        batch_id = batch_id or uuid.uuid4().hex
        if batch_id in self._batches:
            raise ValueError(f"batch already exists: {batch_id}")

        tasks: dict[str, ImageTask] = {}
        for index, image in enumerate(images):
            submission = image if isinstance(image, ImageSubmission) else ImageSubmission(data=image)
            image_id = submission.image_id or f"{batch_id[:8]}-{index:03d}"
            if image_id in tasks:
                raise ValueError(f"duplicate image id in batch: {image_id}")
            tasks[image_id] = ImageTask(
                image_id=image_id,
                listing_id=listing_id,
                batch_id=batch_id,
                filename=submission.filename,
                data=submission.data,
            )

        state = BatchState(batch_id=batch_id, listing_id=listing_id, params=params, tasks=tasks)
        self._batches[batch_id] = state
        self._owners[batch_id] = asyncio.create_task(self._own(state), name=f"batch-{batch_id}")
        logger.info(
            f"batch {batch_id} created for listing {listing_id}: {state.total} images, "
            f"region={params.region.value} scene={params.scene_type.value}"
        )
        return state.snapshot()

    def get(self, batch_id: str) -> BatchSnapshot:
        return self._state(batch_id).snapshot()

    async def wait(self, batch_id: str, timeout: float | None = None) -> BatchSnapshot:
        state = self._state(batch_id)
        await asyncio.wait_for(state.done.wait(), timeout)
        return state.snapshot()

    def cancel(self, batch_id: str) -> BatchSnapshot:
        state = self._state(batch_id)
        if not state.done.is_set():
            # The flag is only a request; task states and counters stay with the owner.
            state.cancel_requested = True
            state.stop.set()
            state.queue.put_nowait(TaskEvent(EventKind.CANCEL))
        return state.snapshot()

    def active_count(self) -> int:
        return sum(1 for state in self._batches.values() if not state.status.finished)

    async def shutdown(self) -> None:
        for batch_id, state in self._batches.items():
            if not state.done.is_set():
                self.cancel(batch_id)
        owners = list(self._owners.values())
        if owners:
            await asyncio.gather(*owners, return_exceptions=True)

    def _state(self, batch_id: str) -> BatchState:
        state = self._batches.get(batch_id)
        if state is None:
            raise BatchNotFound(batch_id)
        return state

    async def _own(self, state: BatchState) -> None:
        dispatcher = asyncio.create_task(self._dispatch(state))
        try:
            while not (state.dispatch_closed and state.counts[TaskStatus.IN_FLIGHT] == 0):
                event = await state.queue.get()
                self._apply(state, event)
        except Exception as error:
            logger.exception(f"batch {state.batch_id} owner crashed")
            state.stop.set()
            state.aborted = True
            state.error = f"{type(error).__name__}: {error}"
        finally:
            await asyncio.gather(dispatcher, return_exceptions=True)
            await self._finalize(state)

    def _apply(self, state: BatchState, event: TaskEvent) -> None:
        if event.kind is EventKind.DISPATCH_CLOSED:
            state.dispatch_closed = True
            return
        if event.kind is EventKind.CANCEL:
            state.updated_at = _now()
            logger.info(
                f"batch {state.batch_id} cancellation requested: "
                f"{state.counts[TaskStatus.IN_FLIGHT]} in flight, {state.counts[TaskStatus.PENDING]} pending"
            )
            return

        task = state.tasks[event.image_id]
        if event.kind is EventKind.DISPATCHED:
            state.status = BatchStatus.PROCESSING
            state.move(task, TaskStatus.IN_FLIGHT)
            return
        if task.status is not TaskStatus.IN_FLIGHT:
            return

        if event.kind is EventKind.STAGE:
            task.stage = event.stage
            state.updated_at = _now()
        elif event.kind is EventKind.RETRYING:
            task.attempts = event.attempt
            task.last_error = event.error
            state.updated_at = _now()
        elif event.kind is EventKind.COMPLETED:
            result = event.result
            task.attempts = event.attempt
            task.result = result
            task.stage = result.stage
            task.reason = result.reason
            task.storage_key = event.storage_key
            state.report.add(result, state.params.scene_type.value)
            state.move(task, TaskStatus.ACCEPTED if result.accepted else TaskStatus.REJECTED)
        elif event.kind is EventKind.ERRORED:
            task.attempts = event.attempt
            task.last_error = event.error
            task.reason = event.error
            state.move(task, TaskStatus.ERRORED)
        elif event.kind is EventKind.FATAL:
            task.attempts = event.attempt
            task.last_error = event.error
            task.reason = event.error
            state.move(task, TaskStatus.ERRORED)
            if not state.aborted:
                state.aborted = True
                state.error = f"batch aborted: {event.error}"
                logger.error(f"batch {state.batch_id} aborted by image {task.image_id}: {event.error}")

    async def _dispatch(self, state: BatchState) -> None:
        try:
            for task in list(state.tasks.values()):
                if not await self._acquire_slot(state):
                    break
                state.queue.put_nowait(TaskEvent(EventKind.DISPATCHED, task.image_id))
                worker = asyncio.create_task(self._run_task(state, task.image_id, task.data))
                self._workers.add(worker)
                worker.add_done_callback(self._workers.discard)
        finally:
            state.queue.put_nowait(TaskEvent(EventKind.DISPATCH_CLOSED))

    async def _acquire_slot(self, state: BatchState) -> bool:
        """Wait for a processing slot, giving up as soon as the batch is stopped.

        Returns True when the caller holds a slot.
        """
        if state.stop.is_set():
            return False
        acquire = asyncio.ensure_future(self._processing.acquire())
        stopped = asyncio.ensure_future(state.stop.wait())
        try:
            await asyncio.wait({acquire, stopped}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()
            if not acquire.done():
                acquire.cancel()
            await asyncio.gather(acquire, stopped, return_exceptions=True)
        # A slot granted while the stop was being signalled goes straight back.
        holding = not acquire.cancelled() and acquire.exception() is None
        if holding and state.stop.is_set():
            self._processing.release()
            return False
        return holding

    async def _run_task(self, state: BatchState, image_id: str, data: bytes) -> None:
        loop = asyncio.get_running_loop()
        queue = state.queue

        def on_stage(stage: ImageStage) -> None:
            loop.call_soon_threadsafe(queue.put_nowait, TaskEvent(EventKind.STAGE, image_id, stage=stage))

        retry = self.settings.retry
        last_error: str | None = None
        try:
            for attempt in range(retry.retry_budget + 1):
                try:
                    result = await asyncio.to_thread(
                        self.pipeline.process, data, state.params, image_id, on_stage
                    )
                    key = await self._handoff(state, image_id, result)
                except ParameterOutOfRange as error:
                    state.stop.set()
                    queue.put_nowait(
                        TaskEvent(EventKind.FATAL, image_id, attempt=attempt + 1, error=error.reason)
                    )
                    return
                except RETRYABLE_ERRORS as error:
                    last_error = error.reason
                    if attempt >= retry.retry_budget:
                        break
                    delay = retry.delay_for(attempt)
                    logger.warning(
                        f"image {image_id} attempt {attempt + 1} failed ({last_error}); retrying in {delay:.2f}s"
                    )
                    queue.put_nowait(
                        TaskEvent(EventKind.RETRYING, image_id, attempt=attempt + 1, error=last_error)
                    )
                    await asyncio.sleep(delay)
                    continue
                except Exception as error:
                    logger.exception(f"image {image_id} failed unexpectedly")
                    queue.put_nowait(
                        TaskEvent(
                            EventKind.ERRORED,
                            image_id,
                            attempt=attempt + 1,
                            error=f"{type(error).__name__}: {error}",
                        )
                    )
                    return

                queue.put_nowait(
                    TaskEvent(EventKind.COMPLETED, image_id, attempt=attempt + 1, result=result, storage_key=key)
                )
                return

            logger.warning(f"image {image_id} exhausted {retry.retry_budget} retries: {last_error}")
            queue.put_nowait(
                TaskEvent(EventKind.ERRORED, image_id, attempt=retry.retry_budget + 1, error=last_error)
            )
        finally:
            self._processing.release()

    async def _handoff(self, state: BatchState, image_id: str, result: PipelineResult) -> str | None:
        timeout = self.settings.retry.handoff_timeout_s
        key = None
        async with self._uploads:
            try:
                if result.accepted and result.image_bytes:
                    key = await asyncio.wait_for(
                        self.image_store.put(
                            storage_key(state.listing_id, image_id), result.image_bytes, "image/jpeg"
                        ),
                        timeout,
                    )
                record = {
                    "image_id": image_id,
                    "listing_id": state.listing_id,
                    "batch_id": state.batch_id,
                    "status": (TaskStatus.ACCEPTED if result.accepted else TaskStatus.REJECTED).value,
                    "stage": result.stage.value,
                    "verdict": result.verdict.as_dict() if result.verdict else None,
                    "pre_verdict": result.pre_verdict.as_dict() if result.pre_verdict else None,
                    "reason": result.reason,
                    "storage_key": key,
                }
                await asyncio.wait_for(self.metadata_store.record_image(record, result), timeout)
            except (asyncio.TimeoutError, OSError) as error:
                detail = f"{type(error).__name__}: {error}"
                raise TransientIOError(f"hand-off of {image_id} failed: {detail}") from error
        return key

    async def _finalize(self, state: BatchState) -> None:
        if state.aborted:
            state.status = BatchStatus.FAILED
        elif state.cancel_requested:
            state.status = BatchStatus.CANCELLED
        elif state.processed == state.total:
            state.status = BatchStatus.COMPLETED
        elif state.processed > 0:
            state.status = BatchStatus.PARTIALLY_COMPLETED
        else:
            state.status = BatchStatus.FAILED

        for task in state.tasks.values():
            task.data = None
            if task.result is not None:
                task.result.image_bytes = None

        state.finished_at = state.updated_at = _now()
        snapshot = state.snapshot().model_dump(mode="json")
        logger.info(
            f"batch {state.batch_id} finished: status={state.status.value} "
            f"accepted={state.counts[TaskStatus.ACCEPTED]} rejected={state.counts[TaskStatus.REJECTED]} "
            f"errored={state.counts[TaskStatus.ERRORED]} pending={state.counts[TaskStatus.PENDING]}"
        )

        timeout = self.settings.retry.handoff_timeout_s
        try:
            await asyncio.wait_for(self.metadata_store.record_batch(snapshot), timeout)
        except Exception:
            logger.exception(f"failed to persist batch {state.batch_id}")
        try:
            await asyncio.wait_for(self.notifier.batch_finished(snapshot), timeout)
        except Exception:
            logger.exception(f"failed to notify completion of batch {state.batch_id}")
        state.done.set()
        self._owners.pop(state.batch_id, None)
        self._retire(state.batch_id)

    def _retire(self, batch_id: str) -> None:
        self._finished.append(batch_id)
        while len(self._finished) > self.settings.limits.max_finished_batches:
            evicted = self._finished.popleft()
            self._batches.pop(evicted, None)
            logger.debug(f"batch {evicted} evicted from memory")
