import asyncio
import threading
import time

import pytest

from estate_photos.config import EnhancementParams, load_settings
from estate_photos.errors import BatchNotFound, ParameterOutOfRange, TransientIOError
from estate_photos.pipeline.types import ImageStage, PipelineResult, Verdict, VerdictKind
from estate_photos.services.batch import BatchOrchestrator
from estate_photos.services.collaborators import InMemoryImageStore, InMemoryMetadataStore
from estate_photos.services.types import BatchStatus, ImageSubmission, TaskStatus


def fast_settings(**patch):
    base = {
        "limits": {"max_concurrent_processing": 2},
        "retry": {"retry_budget": 3, "backoff_base_s": 0.0, "handoff_timeout_s": 5.0},
        "output": {"max_edge": 256},
    }
    for key, value in patch.items():
        base[key] = {**base.get(key, {}), **value}
    return load_settings(base)


class StubPipeline:
    """Accepts every image after an optional delay; tracks concurrent runs."""

    def __init__(self, delay_s: float = 0.0, fatal_ids: frozenset[str] = frozenset()) -> None:
        self.delay_s = delay_s
        self.fatal_ids = fatal_ids
        self.calls = 0
        self.running = 0
        self.max_running = 0
        self._lock = threading.Lock()

    def process(self, image_bytes, params, image_id="", on_stage=None) -> PipelineResult:
        with self._lock:
            self.calls += 1
            self.running += 1
            self.max_running = max(self.max_running, self.running)
        try:
            if image_id in self.fatal_ids:
                raise ParameterOutOfRange("exposure", 9.0, -2.0, 2.0)
            if on_stage is not None:
                on_stage(ImageStage.VALIDATED)
            if self.delay_s:
                time.sleep(self.delay_s)
            return PipelineResult(
                image_id=image_id,
                stage=ImageStage.ACCEPTED,
                width=10,
                height=10,
                verdict=Verdict(VerdictKind.PASS, 0.9),
                image_bytes=b"jpeg",
            )
        finally:
            with self._lock:
                self.running -= 1


class FlakyStore(InMemoryImageStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientIOError("storage timed out")
        return await super().put(key, data, content_type)


class BrokenPipeline(StubPipeline):
    def process(self, image_bytes, params, image_id="", on_stage=None) -> PipelineResult:
        with self._lock:
            self.calls += 1
        raise OSError("scratch volume is read-only")


class FlakyMetadataStore(InMemoryMetadataStore):
    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.calls = 0

    async def record_image(self, task_view: dict, result: PipelineResult) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionResetError("metadata store closed the connection")
        await super().record_image(task_view, result)


class RecordingNotifier:
    def __init__(self) -> None:
        self.snapshots: list[dict] = []

    async def batch_finished(self, snapshot: dict) -> None:
        self.snapshots.append(snapshot)


def assert_counts_consistent(snapshot) -> None:
    assert snapshot.processed + snapshot.failed + snapshot.in_flight + snapshot.pending == snapshot.total


def test_three_image_batch_is_partially_completed(listing_photo, black_photo) -> None:
    async def scenario():
        images = InMemoryImageStore()
        metadata = InMemoryMetadataStore()
        notifier = RecordingNotifier()
        orchestrator = BatchOrchestrator(
            settings=fast_settings(),
            image_store=images,
            metadata_store=metadata,
            notifier=notifier,
        )
        submitted = await orchestrator.submit(
            "listing-1",
            [
                ImageSubmission(listing_photo(4000, 3000), image_id="A"),
                ImageSubmission(listing_photo(800, 600), image_id="B"),
                ImageSubmission(black_photo(1600, 1200), image_id="C"),
            ],
        )
        assert submitted.total == 3
        assert_counts_consistent(submitted)
        final = await orchestrator.wait(submitted.batch_id, timeout=120)
        return final, images, metadata, notifier

    final, images, metadata, notifier = asyncio.run(scenario())

    assert final.status is BatchStatus.PARTIALLY_COMPLETED
    tasks = {task.image_id: task for task in final.tasks}
    assert tasks["A"].status is TaskStatus.ACCEPTED
    assert tasks["A"].storage_key == "listings/listing-1/images/A.jpg"
    assert tasks["A"].pre_verdict is not None
    assert tasks["A"].pre_verdict["kind"] in ("pass", "flagged")
    assert tasks["A"].pre_structure is not None
    assert tasks["B"].status is TaskStatus.REJECTED
    assert tasks["B"].reason.startswith("ResolutionOutOfRange")
    assert tasks["C"].status is TaskStatus.REJECTED
    assert any("mean_brightness" in reason for reason in tasks["C"].verdict["reasons"])
    assert (final.processed, final.failed, final.pending, final.in_flight) == (1, 2, 0, 0)

    assert list(images.objects) == ["listings/listing-1/images/A.jpg"]
    assert set(metadata.images) == {"A", "B", "C"}
    assert metadata.images["A"]["pre_verdict"] == tasks["A"].pre_verdict
    assert metadata.images["B"]["pre_verdict"] is None
    assert metadata.batches[final.batch_id]["status"] == "partially_completed"
    assert len(notifier.snapshots) == 1
    assert final.quality_report["total_images"] == 2


def test_transient_failures_exhaust_retry_budget() -> None:
    async def scenario():
        store = FlakyStore(failures=100)
        orchestrator = BatchOrchestrator(settings=fast_settings(), pipeline=StubPipeline(), image_store=store)
        submitted = await orchestrator.submit("listing-2", [b"one"])
        return await orchestrator.wait(submitted.batch_id, timeout=10), store

    final, store = asyncio.run(scenario())

    assert store.calls == 4
    task = final.tasks[0]
    assert task.status is TaskStatus.ERRORED
    assert task.attempts == 4
    assert task.retry_count == 3
    assert task.reason.startswith("TransientIOError")
    assert final.status is BatchStatus.FAILED


def test_transient_failure_recovers_within_budget() -> None:
    async def scenario():
        store = FlakyStore(failures=2)
        pipeline = StubPipeline()
        orchestrator = BatchOrchestrator(settings=fast_settings(), pipeline=pipeline, image_store=store)
        submitted = await orchestrator.submit("listing-3", [b"one"])
        return await orchestrator.wait(submitted.batch_id, timeout=10), pipeline

    final, pipeline = asyncio.run(scenario())

    task = final.tasks[0]
    assert task.status is TaskStatus.ACCEPTED
    assert task.attempts == 3
    assert pipeline.calls == 3
    assert final.status is BatchStatus.COMPLETED


def test_zero_retry_budget_means_single_attempt() -> None:
    async def scenario():
        store = FlakyStore(failures=100)
        settings = fast_settings(retry={"retry_budget": 0})
        orchestrator = BatchOrchestrator(settings=settings, pipeline=StubPipeline(), image_store=store)
        submitted = await orchestrator.submit("listing-4", [b"one"])
        return await orchestrator.wait(submitted.batch_id, timeout=10), store

    final, store = asyncio.run(scenario())

    assert store.calls == 1
    assert final.tasks[0].status is TaskStatus.ERRORED


def test_concurrency_cap_and_counter_invariant() -> None:
    async def scenario():
        pipeline = StubPipeline(delay_s=0.02)
        orchestrator = BatchOrchestrator(settings=fast_settings(), pipeline=pipeline)
        first = await orchestrator.submit("listing-5", [b"x"] * 6)
        second = await orchestrator.submit("listing-6", [b"y"] * 4)
        observations = []
        while orchestrator.active_count():
            observations.append(orchestrator.get(first.batch_id))
            observations.append(orchestrator.get(second.batch_id))
            await asyncio.sleep(0.005)
        finals = [await orchestrator.wait(batch.batch_id) for batch in (first, second)]
        return pipeline, observations, finals

    pipeline, observations, finals = asyncio.run(scenario())

    assert pipeline.max_running <= 2
    assert pipeline.calls == 10
    assert observations
    for snapshot in observations + finals:
        assert_counts_consistent(snapshot)
        assert snapshot.in_flight <= 2
    assert all(final.status is BatchStatus.COMPLETED for final in finals)


def test_cancel_stops_dispatch_but_lets_in_flight_finish() -> None:
    async def scenario():
        pipeline = StubPipeline(delay_s=0.2)
        settings = fast_settings(limits={"max_concurrent_processing": 1})
        orchestrator = BatchOrchestrator(settings=settings, pipeline=pipeline)
        submitted = await orchestrator.submit("listing-7", [b"a", b"b", b"c", b"d"])
        await asyncio.sleep(0.05)
        cancelled = orchestrator.cancel(submitted.batch_id)
        assert_counts_consistent(cancelled)
        return await orchestrator.wait(submitted.batch_id, timeout=10), pipeline

    final, pipeline = asyncio.run(scenario())

    assert final.status is BatchStatus.CANCELLED
    assert final.cancel_requested
    assert pipeline.calls == 1
    assert (final.accepted, final.pending, final.in_flight) == (1, 3, 0)
    assert_counts_consistent(final)


def test_parameter_error_aborts_the_batch() -> None:
    async def scenario():
        pipeline = StubPipeline(fatal_ids=frozenset({"bad"}))
        settings = fast_settings(limits={"max_concurrent_processing": 1})
        orchestrator = BatchOrchestrator(settings=settings, pipeline=pipeline)
        submitted = await orchestrator.submit(
            "listing-8",
            [
                ImageSubmission(b"1", image_id="ok"),
                ImageSubmission(b"2", image_id="bad"),
                ImageSubmission(b"3", image_id="later"),
                ImageSubmission(b"4", image_id="last"),
            ],
        )
        return await orchestrator.wait(submitted.batch_id, timeout=10), pipeline

    final, pipeline = asyncio.run(scenario())

    assert final.status is BatchStatus.FAILED
    assert final.error.startswith("batch aborted: ParameterOutOfRange")
    statuses = {task.image_id: task.status for task in final.tasks}
    assert statuses == {
        "ok": TaskStatus.ACCEPTED,
        "bad": TaskStatus.ERRORED,
        "later": TaskStatus.PENDING,
        "last": TaskStatus.PENDING,
    }
    assert pipeline.calls == 2
    assert_counts_consistent(final)


def test_invalid_profile_is_rejected_before_the_batch_exists() -> None:
    async def scenario():
        orchestrator = BatchOrchestrator(settings=fast_settings(), pipeline=StubPipeline())
        with pytest.raises(ParameterOutOfRange):
            await orchestrator.submit("listing-9", [b"x"], overrides={"exposure": 5.0})
        with pytest.raises(ParameterOutOfRange):
            await orchestrator.submit("listing-9", [b"x"], EnhancementParams.model_construct(saturation=-1.0))
        return orchestrator

    orchestrator = asyncio.run(scenario())

    assert orchestrator.active_count() == 0
    with pytest.raises(BatchNotFound):
        orchestrator.get("missing")


def test_submit_validates_batch_shape() -> None:
    async def scenario():
        settings = fast_settings(limits={"max_batch_size": 2})
        orchestrator = BatchOrchestrator(settings=settings, pipeline=StubPipeline())
        with pytest.raises(ValueError):
            await orchestrator.submit("listing-10", [])
        with pytest.raises(ValueError):
            await orchestrator.submit("listing-10", [b"1", b"2", b"3"])
        with pytest.raises(ValueError):
            await orchestrator.submit(
                "listing-10",
                [ImageSubmission(b"1", image_id="same"), ImageSubmission(b"2", image_id="same")],
            )
        done = await orchestrator.submit("listing-10", [b"1"], batch_id="fixed")
        with pytest.raises(ValueError):
            await orchestrator.submit("listing-10", [b"1"], batch_id="fixed")
        await orchestrator.wait(done.batch_id, timeout=10)

    asyncio.run(scenario())


def test_cancel_is_prompt_while_another_batch_holds_the_cap() -> None:
    async def scenario():
        pipeline = StubPipeline(delay_s=0.3)
        settings = fast_settings(limits={"max_concurrent_processing": 1})
        orchestrator = BatchOrchestrator(settings=settings, pipeline=pipeline)
        busy = await orchestrator.submit("listing-11", [b"a", b"b", b"c"])
        queued = await orchestrator.submit("listing-12", [b"x", b"y"])
        await asyncio.sleep(0.05)
        requested = orchestrator.cancel(queued.batch_id)
        cancelled = await orchestrator.wait(queued.batch_id, timeout=0.2)
        busy_final = await orchestrator.wait(busy.batch_id, timeout=10)
        return requested, cancelled, busy_final, pipeline

    requested, cancelled, busy_final, pipeline = asyncio.run(scenario())

    assert requested.cancel_requested
    assert cancelled.status is BatchStatus.CANCELLED
    assert (cancelled.pending, cancelled.in_flight, cancelled.processed) == (2, 0, 0)
    assert_counts_consistent(cancelled)
    assert busy_final.status is BatchStatus.COMPLETED
    assert pipeline.calls == 3


def test_finished_batches_are_evicted_beyond_retention() -> None:
    async def scenario():
        metadata = InMemoryMetadataStore()
        settings = fast_settings(limits={"max_finished_batches": 2})
        orchestrator = BatchOrchestrator(settings=settings, pipeline=StubPipeline(), metadata_store=metadata)
        for index in range(5):
            submitted = await orchestrator.submit("listing-13", [b"x"], batch_id=f"batch-{index}")
            await orchestrator.wait(submitted.batch_id, timeout=10)
        return orchestrator, metadata

    orchestrator, metadata = asyncio.run(scenario())

    for index in range(3):
        with pytest.raises(BatchNotFound):
            orchestrator.get(f"batch-{index}")
    assert orchestrator.get("batch-3").status is BatchStatus.COMPLETED
    assert orchestrator.get("batch-4").status is BatchStatus.COMPLETED
    assert orchestrator._owners == {}
    assert orchestrator.active_count() == 0
    assert set(metadata.batches) == {f"batch-{index}" for index in range(5)}


def test_pipeline_os_error_is_not_retried() -> None:
    async def scenario():
        pipeline = BrokenPipeline()
        orchestrator = BatchOrchestrator(settings=fast_settings(), pipeline=pipeline)
        submitted = await orchestrator.submit("listing-14", [b"one"])
        return await orchestrator.wait(submitted.batch_id, timeout=10), pipeline

    final, pipeline = asyncio.run(scenario())

    assert pipeline.calls == 1
    task = final.tasks[0]
    assert task.status is TaskStatus.ERRORED
    assert task.attempts == 1
    assert task.reason.startswith("OSError")
    assert final.status is BatchStatus.FAILED


def test_metadata_connection_error_is_retried() -> None:
    async def scenario():
        metadata = FlakyMetadataStore(failures=1)
        pipeline = StubPipeline()
        orchestrator = BatchOrchestrator(settings=fast_settings(), pipeline=pipeline, metadata_store=metadata)
        submitted = await orchestrator.submit("listing-15", [b"one"])
        return await orchestrator.wait(submitted.batch_id, timeout=10), metadata, pipeline

    final, metadata, pipeline = asyncio.run(scenario())

    task = final.tasks[0]
    assert task.status is TaskStatus.ACCEPTED
    assert task.attempts == 2
    assert task.last_error.startswith("TransientIOError: hand-off")
    assert metadata.calls == 2
    assert pipeline.calls == 2
    assert final.status is BatchStatus.COMPLETED
