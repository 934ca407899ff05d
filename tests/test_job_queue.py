"""Tests for the database-backed job broker."""

from datetime import datetime, timedelta

import pytest
from sqlmodel import Session, create_engine

from capture_analysis.core.exceptions import (
    InvalidStateException, JobNotFoundException, QueueUnavailableException
)
from capture_analysis.models import AnalysisJob
from capture_analysis.services.job_queue import JobQueue


def _set(engine, job_id, **values):
    with Session(engine) as session:
        job = session.get(AnalysisJob, job_id)
        for key, value in values.items():
            setattr(job, key, value)
        session.add(job)
        session.commit()


def test_enqueue_creates_waiting_job(queue):
    job = queue.enqueue("item-1", "a.webp", item_version=1, priority=1, timeout_seconds=60)

    assert job.id is not None
    assert job.state == "waiting"
    assert job.attempts_made == 0
    assert queue.stats().waiting == 1


def test_enqueue_returns_outstanding_job(queue):
    first = queue.enqueue("item-1", "a.webp")
    second = queue.enqueue("item-1", "a.webp")

    assert second.id == first.id
    assert queue.stats().total == 1


def test_waiting_job_follows_new_capture_version(queue):
    first = queue.enqueue("item-1", "a.webp", item_version=1)
    second = queue.enqueue("item-1", "a.webp", item_version=2)

    assert second.id == first.id
    assert second.item_version == 2
    assert queue.find_outstanding("item-1", 2).id == first.id
    assert queue.find_outstanding("item-1", 1) is None


def test_active_job_for_old_version_gets_a_sibling(queue):
    first = queue.enqueue("item-1", "a.webp", item_version=1)
    queue.claim_next("w1")

    second = queue.enqueue("item-1", "a.webp", item_version=2)

    assert second.id != first.id
    assert queue.enqueue("item-1", "a.webp", item_version=2).id == second.id


def test_claim_order_priority_then_fifo(queue):
    low_a = queue.enqueue("a", "a.webp", priority=5)
    high = queue.enqueue("b", "b.webp", priority=1)
    low_b = queue.enqueue("c", "c.webp", priority=5)

    claimed = [queue.claim_next("w1").id for _ in range(3)]

    assert claimed == [high.id, low_a.id, low_b.id]
    assert queue.claim_next("w1") is None


def test_claim_marks_job_active(queue):
    queue.enqueue("a", "a.webp")

    job = queue.claim_next("worker-7")

    assert job.state == "active"
    assert job.worker_id == "worker-7"
    assert job.attempts_made == 1
    assert job.started_at is not None


def test_a_job_is_claimed_once(queue):
    queue.enqueue("a", "a.webp")

    assert queue.claim_next("w1") is not None
    assert queue.claim_next("w2") is None


def test_delayed_job_is_promoted_when_due(queue, engine):
    job = queue.enqueue("a", "a.webp", delay_seconds=3600)
    assert job.state == "delayed"
    assert queue.claim_next("w1") is None

    _set(engine, job.id, available_at=datetime.utcnow() - timedelta(seconds=1))

    assert queue.claim_next("w1").id == job.id


def test_complete_and_fail_only_apply_to_active_jobs(queue):
    job = queue.enqueue("a", "a.webp")
    assert not queue.complete(job.id)

    queue.claim_next("w1")
    assert queue.complete(job.id, outcome="analyzed")
    assert not queue.fail(job.id, "too late")

    stored = queue.get(job.id)
    assert stored.state == "completed"
    assert stored.outcome == "analyzed"
    assert stored.finished_at is not None


def test_drop_removes_job(queue):
    job = queue.enqueue("a", "a.webp")
    queue.drop(job.id)
    assert queue.get(job.id) is None


def test_stalled_job_requeued_once_then_failed(queue):
    job = queue.enqueue("a", "a.webp")
    queue.claim_next("w1")

    requeued = queue.mark_stalled(job.id, max_stalls=1)
    assert requeued.state == "waiting"
    assert requeued.stall_count == 1

    queue.claim_next("w1")
    failed = queue.mark_stalled(job.id, max_stalls=1)
    assert failed.state == "failed"
    assert failed.stall_count == 2
    assert "stalled" in failed.last_error


def test_mark_stalled_ignores_inactive_job(queue):
    job = queue.enqueue("a", "a.webp")
    assert queue.mark_stalled(job.id) is None


def test_find_stalled(queue, engine):
    fresh = queue.enqueue("a", "a.webp", timeout_seconds=60)
    old = queue.enqueue("b", "b.webp", timeout_seconds=60)
    queue.claim_next("w1")
    queue.claim_next("w2")
    _set(engine, old.id, started_at=datetime.utcnow() - timedelta(seconds=120))

    stalled = queue.find_stalled(grace_seconds=30)

    assert [job.id for job in stalled] == [old.id]
    assert fresh.id not in [job.id for job in stalled]


def test_retry_failed_job_resets_counters(queue):
    job = queue.enqueue("a", "a.webp", item_version=1)
    queue.claim_next("w1")
    queue.fail(job.id, "boom")

    retried = queue.retry(job.id, item_version=2)

    assert retried.state == "waiting"
    assert retried.attempts_made == 0
    assert retried.stall_count == 0
    assert retried.last_error is None
    assert retried.item_version == 2


def test_retry_rejects_non_failed_and_missing_jobs(queue):
    job = queue.enqueue("a", "a.webp")

    with pytest.raises(InvalidStateException):
        queue.retry(job.id)
    with pytest.raises(JobNotFoundException):
        queue.retry(9999)


def test_stats_counts_each_state(queue):
    for item in ("a", "b", "c"):
        queue.enqueue(item, f"{item}.webp")
    queue.enqueue("d", "d.webp", delay_seconds=600)
    done = queue.claim_next("w1")
    queue.complete(done.id)
    queue.claim_next("w1")

    stats = queue.stats()

    assert stats.waiting == 1
    assert stats.active == 1
    assert stats.completed == 1
    assert stats.delayed == 1
    assert stats.failed == 0
    assert stats.total == 4


def test_prune_respects_retention_windows(queue, engine):
    now = datetime.utcnow()
    jobs = {}
    for name in ("old_done", "new_done", "old_failed", "new_failed"):
        jobs[name] = queue.enqueue(name, f"{name}.webp")
        queue.claim_next("w1")
        if name.endswith("done"):
            queue.complete(jobs[name].id)
        else:
            queue.fail(jobs[name].id, "boom")

    _set(engine, jobs["old_done"].id, finished_at=now - timedelta(hours=25))
    _set(engine, jobs["new_done"].id, finished_at=now - timedelta(hours=23))
    _set(engine, jobs["old_failed"].id, finished_at=now - timedelta(days=8))
    _set(engine, jobs["new_failed"].id, finished_at=now - timedelta(days=2))

    result = queue.prune(completed_before=now - timedelta(hours=24), failed_before=now - timedelta(days=7))

    assert (result.completed, result.failed) == (1, 1)
    assert queue.get(jobs["old_done"].id) is None
    assert queue.get(jobs["old_failed"].id) is None
    assert queue.get(jobs["new_done"].id) is not None
    assert queue.get(jobs["new_failed"].id) is not None


def test_unreachable_broker_raises_queue_unavailable(tmp_path):
    broken = create_engine(f"sqlite:///{tmp_path}/missing-dir/queue.db")
    queue = JobQueue(broken, owns_engine=True)

    with pytest.raises(QueueUnavailableException):
        queue.enqueue("a", "a.webp")

    queue.close()
