"""
End-to-end tests of the worker pipeline: captures flow through the queue,
the worker pool and the (mocked) vision API.
"""

import asyncio
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from capture_analysis.services.analysis_pipeline import AnalysisPipeline
from capture_analysis.services.rate_limiter import SlidingWindowRateLimiter
from capture_analysis.services.vision_client import VisionClient
from capture_analysis.worker.processor import JobProcessor
from conftest import completion, connection_error, make_openai_client, valid_reply, wait_until


@pytest.fixture
def make_pipeline(engine, test_settings):
    def factory(vision: VisionClient, **overrides) -> AnalysisPipeline:
        config = test_settings.model_copy(update=overrides)
        return AnalysisPipeline(
            engine=engine,
            vision_client=vision,
            rate_limiter=vision.rate_limiter,
            config=config
        )

    return factory


def _terminal(pipeline, count):
    def check():
        stats = pipeline.get_queue_stats().unwrap()
        return stats.completed + stats.failed >= count
    return check


async def _run_until_settled(pipeline, count, timeout=10.0):
    await pipeline.start(workers=True, schedule=False)
    try:
        await wait_until(_terminal(pipeline, count), timeout=timeout)
    finally:
        await pipeline.shutdown()


@pytest.mark.asyncio
async def test_scenario_a_single_success(make_pipeline, make_vision, image_file):
    vision = make_vision([completion(valid_reply())])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create(str(image_file))

    result = pipeline.enqueue_for_analysis(capture.id, str(image_file))
    assert result.success

    await _run_until_settled(pipeline, 1)

    stored = pipeline.captures.get(capture.id)
    assert stored.processing_status == "completed"
    assert stored.analysis_result["app_name"] == "Visual Studio Code"
    assert stored.processed_at is not None
    assert pipeline.get_queue_stats().unwrap().completed == 1


@pytest.mark.asyncio
async def test_scenario_b_recovers_within_retry_budget(make_pipeline, make_vision, image_file):
    vision = make_vision([connection_error(), connection_error(), completion(valid_reply())])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create(str(image_file))
    pipeline.enqueue_for_analysis(capture.id)

    await _run_until_settled(pipeline, 1)

    assert pipeline.captures.get(capture.id).processing_status == "completed"
    assert vision.client.chat.completions.create.await_count == 3


@pytest.mark.asyncio
async def test_scenario_c_exhausted_retries_fail_capture(make_pipeline, make_vision, image_file):
    vision = make_vision([connection_error() for _ in range(4)])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create(str(image_file))
    pipeline.enqueue_for_analysis(capture.id)

    await _run_until_settled(pipeline, 1)

    stored = pipeline.captures.get(capture.id)
    assert stored.processing_status == "failed"
    assert stored.processing_error
    assert stored.analysis_result is None
    assert vision.client.chat.completions.create.await_count == 4
    assert pipeline.get_queue_stats().unwrap().failed == 1


@pytest.mark.asyncio
async def test_scenario_d_rate_limit_holds_under_burst(make_pipeline, clock, image_file):
    call_times = []

    async def respond(*args, **kwargs):
        call_times.append(clock())
        return completion(valid_reply())

    limiter = SlidingWindowRateLimiter(max_calls=30, clock=clock, sleep=clock.sleep)
    vision = VisionClient(
        limiter,
        client=make_openai_client(respond),
        model="test-vision-model",
        image_root=str(image_file.parent),
        sleep=clock.sleep
    )
    pipeline = make_pipeline(vision, queue_concurrency=2)

    for _ in range(40):
        capture = pipeline.captures.create(image_file.name)
        assert pipeline.enqueue_for_analysis(capture.id).success

    await _run_until_settled(pipeline, 40)

    assert len(call_times) == 40
    ordered = sorted(call_times)
    for i, start in enumerate(ordered):
        in_window = [t for t in ordered[i:] if t - start < 60]
        assert len(in_window) <= 30
    assert pipeline.captures.count_by_status()["completed"] == 40


@pytest.mark.asyncio
async def test_scenario_e_reset_completed_capture_runs_again(make_pipeline, make_vision, image_file):
    vision = make_vision([
        completion(valid_reply(app_name="Google Chrome", activity_type="browsing")),
        completion(valid_reply(app_name="Slack", activity_type="communication"))
    ])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create(str(image_file))
    pipeline.enqueue_for_analysis(capture.id)
    await _run_until_settled(pipeline, 1)
    assert pipeline.captures.get(capture.id).analysis_result["app_name"] == "Google Chrome"

    reset = pipeline.captures.reset(capture.id)
    assert reset.processing_status == "pending"
    assert reset.analysis_result is None
    assert reset.processing_error is None

    assert pipeline.enqueue_for_analysis(capture.id).success
    await _run_until_settled(pipeline, 2)

    stored = pipeline.captures.get(capture.id)
    assert stored.processing_status == "completed"
    assert stored.analysis_result["app_name"] == "Slack"
    assert vision.client.chat.completions.create.await_count == 2


@pytest.mark.asyncio
async def test_missing_image_fails_without_calling_vision(make_pipeline, make_vision):
    vision = make_vision([completion(valid_reply())])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create("gone.webp")
    pipeline.enqueue_for_analysis(capture.id)

    await _run_until_settled(pipeline, 1)

    stored = pipeline.captures.get(capture.id)
    assert stored.processing_status == "failed"
    assert "Resource unavailable" in stored.processing_error
    assert vision.client.chat.completions.create.await_count == 0


@pytest.mark.asyncio
async def test_stalled_job_requeued_once_then_failed(make_pipeline, make_vision, image_file):
    async def hang(*args, **kwargs):
        await asyncio.Event().wait()

    vision = make_vision(hang)
    pipeline = make_pipeline(vision, job_timeout_seconds=1)
    capture = pipeline.captures.create(str(image_file))
    pipeline.enqueue_for_analysis(capture.id)

    await _run_until_settled(pipeline, 1, timeout=10.0)

    stored = pipeline.captures.get(capture.id)
    assert stored.processing_status == "failed"
    assert "timed out" in stored.processing_error
    assert vision.client.chat.completions.create.await_count == 2

    stats = pipeline.get_queue_stats().unwrap()
    assert stats.failed == 1


@pytest.mark.asyncio
async def test_duplicate_job_does_not_rewrite_terminal_capture(make_pipeline, make_vision, image_file):
    vision = make_vision([completion(valid_reply())])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create(str(image_file))
    pipeline.enqueue_for_analysis(capture.id)
    await _run_until_settled(pipeline, 1)
    first = pipeline.captures.get(capture.id)

    # A duplicate delivery for the same capture version
    duplicate = pipeline.queue.enqueue(capture.id, str(image_file), item_version=first.version)
    job = pipeline.queue.claim_next("w-test")
    assert job.id == duplicate.id

    outcome = await pipeline.processor.process(job)

    assert outcome == "skipped"
    stored = pipeline.captures.get(capture.id)
    assert stored.processed_at == first.processed_at
    assert stored.analysis_result == first.analysis_result
    assert vision.client.chat.completions.create.await_count == 1
    assert pipeline.queue.get(job.id).outcome == "skipped"


@pytest.mark.asyncio
async def test_reset_during_analysis_discards_stale_result(captures, queue, make_vision, image_file):
    capture = captures.create(str(image_file))

    async def reset_mid_call(*args, **kwargs):
        captures.reset(capture.id)
        return completion(valid_reply())

    processor = JobProcessor(captures, queue, make_vision(reset_mid_call))
    queue.enqueue(capture.id, capture.resource_locator, item_version=capture.version)
    job = queue.claim_next("w1")

    outcome = await processor.process(job)

    assert outcome == "failed"
    stored = captures.get(capture.id)
    assert stored.processing_status == "pending"
    assert stored.version == 2
    assert stored.analysis_result is None
    assert queue.get(job.id).state == "failed"


@pytest.mark.asyncio
async def test_job_for_deleted_capture_is_dropped(queue, captures, make_vision):
    processor = JobProcessor(captures, queue, make_vision([]))
    job = queue.enqueue("does-not-exist", "x.webp")
    claimed = queue.claim_next("w1")

    outcome = await processor.process(claimed)

    assert outcome == "dropped"
    assert queue.get(job.id) is None


def test_enqueue_refuses_terminal_capture(make_pipeline, make_vision, image_file):
    pipeline = make_pipeline(make_vision([]))
    capture = pipeline.captures.create(str(image_file))
    pipeline.captures.mark_processing(capture.id, 1)
    pipeline.captures.mark_completed(capture.id, 1, {"app_name": "Slack"})

    result = pipeline.enqueue_for_analysis(capture.id)

    assert not result.success
    assert result.error_code == "INVALID_STATE"


def test_enqueue_unknown_capture(make_pipeline, make_vision):
    result = make_pipeline(make_vision([])).enqueue_for_analysis("missing")

    assert not result.success
    assert result.error_code == "RESOURCE_NOT_FOUND"


@pytest.mark.asyncio
async def test_retry_job_reruns_failed_capture(make_pipeline, make_vision, image_file):
    vision = make_vision([connection_error() for _ in range(4)] + [completion(valid_reply())])
    pipeline = make_pipeline(vision)
    capture = pipeline.captures.create(str(image_file))
    job_id = pipeline.enqueue_for_analysis(capture.id).unwrap()
    await _run_until_settled(pipeline, 1)
    assert pipeline.captures.get(capture.id).processing_status == "failed"

    retried = pipeline.retry_job(job_id)
    assert retried.success
    assert retried.data == job_id

    await pipeline.start(workers=True, schedule=False)
    try:
        await wait_until(lambda: pipeline.captures.get(capture.id).processing_status == "completed")
    finally:
        await pipeline.shutdown()

    assert pipeline.captures.get(capture.id).version == 2


def test_retry_job_rejects_unknown_and_active_jobs(make_pipeline, make_vision, image_file):
    pipeline = make_pipeline(make_vision([]))
    capture = pipeline.captures.create(str(image_file))
    job_id = pipeline.enqueue_for_analysis(capture.id).unwrap()

    assert pipeline.retry_job(job_id).error_code == "INVALID_STATE"
    assert pipeline.retry_job(12345).error_code == "RESOURCE_NOT_FOUND"


def test_reprocess_resets_and_enqueues(make_pipeline, make_vision, image_file):
    pipeline = make_pipeline(make_vision([]))
    capture = pipeline.captures.create(str(image_file))
    pipeline.captures.mark_processing(capture.id, 1)
    pipeline.captures.mark_failed(capture.id, 1, "boom")

    result = pipeline.reprocess(capture.id)

    assert result.success
    stored = pipeline.captures.get(capture.id)
    assert stored.processing_status == "pending"
    assert stored.processing_error is None
    job = pipeline.queue.get(result.data)
    assert job.item_version == stored.version == 2


@pytest.mark.asyncio
async def test_rate_limit_waits_do_not_count_against_job_timeout(make_pipeline, image_file):
    # Real clock: the last job waits longer for its slot than its whole timeout
    limiter = SlidingWindowRateLimiter(max_calls=1, window_seconds=1.0, safety_margin=0.1)
    vision = VisionClient(
        limiter,
        client=make_openai_client([completion(valid_reply()) for _ in range(3)]),
        model="test-vision-model",
        image_root=str(image_file.parent),
        max_retries=3,
        base_delay=0.1
    )
    pipeline = make_pipeline(vision, job_timeout_seconds=1, queue_concurrency=2)
    captures = [pipeline.captures.create(image_file.name) for _ in range(3)]
    for capture in captures:
        pipeline.enqueue_for_analysis(capture.id)

    await _run_until_settled(pipeline, 3, timeout=15.0)

    for capture in captures:
        stored = pipeline.captures.get(capture.id)
        assert stored.processing_status == "completed"
        assert stored.processing_error is None
    stats = pipeline.get_queue_stats().unwrap()
    assert (stats.completed, stats.failed) == (3, 0)
    assert vision.client.chat.completions.create.await_count == 3


@pytest.mark.asyncio
async def test_worker_survives_error_while_recording_a_stall(make_pipeline, make_vision, image_file):
    calls = 0

    async def first_call_hangs(*args, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 1:
            await asyncio.Event().wait()
        return completion(valid_reply())

    pipeline = make_pipeline(make_vision(first_call_hangs), job_timeout_seconds=1, queue_concurrency=1)
    stuck = pipeline.captures.create(str(image_file))
    healthy = pipeline.captures.create(str(image_file))
    stuck_job = pipeline.enqueue_for_analysis(stuck.id).unwrap()
    pipeline.enqueue_for_analysis(healthy.id)
    pipeline.queue.mark_stalled = MagicMock(
        side_effect=OperationalError("UPDATE analysis_jobs", {}, Exception("db blip"))
    )

    await pipeline.start(workers=True, schedule=False)
    try:
        await wait_until(
            lambda: pipeline.captures.get(healthy.id).processing_status == "completed", timeout=10.0
        )
        assert all(not task.done() for task in pipeline.pool._tasks)
    finally:
        await pipeline.shutdown()

    pipeline.queue.mark_stalled.assert_called_once()
    # Left for stall recovery
    assert pipeline.queue.get(stuck_job).state == "active"


@pytest.mark.asyncio
async def test_worker_survives_error_while_recording_a_failure(make_pipeline, make_vision, image_file):
    pipeline = make_pipeline(make_vision([completion(valid_reply())]), queue_concurrency=1)
    broken = pipeline.captures.create(str(image_file))
    healthy = pipeline.captures.create(str(image_file))
    pipeline.enqueue_for_analysis(broken.id)
    pipeline.enqueue_for_analysis(healthy.id)

    mark_processing = pipeline.captures.mark_processing

    def flaky_mark_processing(item_id, version):
        if item_id == broken.id:
            raise RuntimeError("driver hiccup")
        return mark_processing(item_id, version)

    pipeline.captures.mark_processing = flaky_mark_processing
    pipeline.processor.fail = MagicMock(
        side_effect=OperationalError("UPDATE captures", {}, Exception("db blip"))
    )

    await pipeline.start(workers=True, schedule=False)
    try:
        await wait_until(
            lambda: pipeline.captures.get(healthy.id).processing_status == "completed", timeout=10.0
        )
        assert all(not task.done() for task in pipeline.pool._tasks)
    finally:
        await pipeline.shutdown()

    pipeline.processor.fail.assert_called_once()
