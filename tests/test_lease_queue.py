from __future__ import annotations

import threading

from formpilot.core.lease_queue import (
    EXHAUSTED_RETRIES_CODE,
    EXHAUSTED_RETRIES_DETAIL,
    JobLeaseQueue,
    JobOutcome,
    retry_backoff_seconds,
)
from formpilot.models.job import JobStatus


def test_submit_creates_pending_job(queue):
    job = queue.submit(target_url="  https://example.com/apply  ", priority=2, tags=["a"])
    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.target_url == "https://example.com/apply"
    assert stored.priority == 2
    assert stored.worker_id is None
    assert stored.retry_count == 0
    assert stored.max_retries == 3


def test_submit_rejects_missing_url_and_unknown_fields(queue):
    for bad in ("", "   "):
        try:
            queue.submit(target_url=bad)
        except ValueError as e:
            assert "target_url" in str(e)
        else:
            raise AssertionError("expected ValueError")
    try:
        queue.submit(target_url="https://example.com", status="running")
    except ValueError as e:
        assert "status" in str(e)
    else:
        raise AssertionError("expected ValueError")


def test_claim_orders_by_priority_then_age(queue, clock):
    low_old = queue.submit(target_url="https://example.com/1")
    clock.advance(1)
    high = queue.submit(target_url="https://example.com/2", priority=5)
    clock.advance(1)
    low_new = queue.submit(target_url="https://example.com/3")

    claimed = [queue.claim("w-1").id for _ in range(3)]
    assert claimed == [high.id, low_old.id, low_new.id]
    assert queue.claim("w-1") is None


def test_claim_sets_lease_fields(queue, clock):
    job = queue.submit(target_url="https://example.com")
    claimed = queue.claim("w-1")
    assert claimed.id == job.id
    stored = queue.get(job.id)
    assert stored.status == JobStatus.RUNNING
    assert stored.worker_id == "w-1"
    assert stored.last_heartbeat == clock.now
    assert stored.started_at == clock.now


def test_affinity_isolation(queue):
    job = queue.submit(target_url="https://example.com", target_worker_id="w-b")
    assert queue.claim("w-a") is None
    claimed = queue.claim("w-b")
    assert claimed is not None and claimed.id == job.id


def test_claim_filters_by_job_type(queue):
    form = queue.submit(target_url="https://example.com/a", priority=1)
    probe = queue.submit(target_url="https://example.com/b", job_type="page_probe", priority=9)
    assert queue.claim("w-1", job_types=["fill_form"]).id == form.id
    assert queue.claim("w-1", job_types=["fill_form"]) is None
    assert queue.claim("w-1", job_types=[]).id == probe.id


def test_concurrent_claim_has_exactly_one_winner(database, clock):
    seed = JobLeaseQueue(database, clock=clock, log_fn=lambda msg, level="info": None)
    job = seed.submit(target_url="https://example.com")

    workers = 6
    barrier = threading.Barrier(workers)
    results: dict[str, object] = {}
    errors: list[BaseException] = []

    def _claim(worker_id: str) -> None:
        q = JobLeaseQueue(database, clock=clock, log_fn=lambda msg, level="info": None)
        barrier.wait()
        try:
            results[worker_id] = q.claim(worker_id)
        except BaseException as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    threads = [threading.Thread(target=_claim, args=(f"w-{i}",)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert not errors
    winners = [wid for wid, claimed in results.items() if claimed is not None]
    assert len(winners) == 1
    assert seed.get(job.id).worker_id == winners[0]


def test_heartbeat_requires_ownership(queue, clock):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    clock.advance(10)
    assert queue.heartbeat(job.id, "w-1") is True
    assert queue.get(job.id).last_heartbeat == clock.now
    assert queue.heartbeat(job.id, "w-2") is False


def test_complete_clears_owner_and_stores_outcome(queue):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    ok = queue.complete(job.id, "w-1", JobOutcome.success("stopped at review", stopped_at="review"))
    assert ok is True
    stored = queue.get(job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.worker_id is None
    assert stored.result_data == {"stopped_at": "review"}
    assert stored.completed_at is not None
    # 终态任务不能再被完成或续约
    assert queue.complete(job.id, "w-1", JobOutcome.failure("x", "late")) is False
    assert queue.heartbeat(job.id, "w-1") is False


def test_complete_by_non_owner_is_rejected(queue):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    assert queue.complete(job.id, "w-2", JobOutcome.failure("internal_error", "boom")) is False
    assert queue.get(job.id).status == JobStatus.RUNNING


def test_release_returns_job_to_pending_without_retry(queue):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    assert queue.release(job.id, "w-1") is True
    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.worker_id is None
    assert stored.retry_count == 0
    assert queue.release(job.id, "w-1") is False


def test_release_all_owned_by(queue):
    a = queue.submit(target_url="https://example.com/a")
    b = queue.submit(target_url="https://example.com/b")
    other = queue.submit(target_url="https://example.com/c", target_worker_id="w-2")
    queue.claim("w-1")
    queue.claim("w-1")
    queue.claim("w-2")

    assert queue.release_all_owned_by("w-1") == 2
    for job_id in (a.id, b.id):
        stored = queue.get(job_id)
        assert stored.status == JobStatus.PENDING
        assert stored.error_details == {"released_by": "w-1", "reason": "worker_shutdown"}
    assert queue.get(other.id).worker_id == "w-2"
    # 幂等：再次释放没有任务
    assert queue.release_all_owned_by("w-1") == 0


def test_release_all_owned_by_with_nothing_owned_returns_zero(queue):
    queue.submit(target_url="https://example.com")
    assert queue.release_all_owned_by("nobody") == 0


def test_reap_stale_requeues_and_increments_retry(queue, clock):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    clock.advance(200)

    report = queue.reap_stale(120)
    assert report.requeued == [job.id]
    assert report.failed == []
    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.worker_id is None
    assert stored.retry_count == 1
    assert stored.last_heartbeat is None


def test_reap_stale_ignores_fresh_heartbeats(queue, clock):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    clock.advance(100)
    queue.heartbeat(job.id, "w-1")
    clock.advance(100)

    report = queue.reap_stale(120)
    assert report.total == 0
    assert queue.get(job.id).worker_id == "w-1"


def test_reap_stale_fails_when_retries_exhausted(queue, clock):
    job = queue.submit(target_url="https://example.com", max_retries=1)
    queue.claim("w-1")
    clock.advance(500)

    report = queue.reap_stale(120)
    assert report.failed == [job.id]
    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == EXHAUSTED_RETRIES_CODE
    assert stored.error_details["message"] == EXHAUSTED_RETRIES_DETAIL
    assert stored.retry_count == 1
    assert stored.worker_id is None


def test_reaped_worker_loses_ownership(queue, clock):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    clock.advance(300)
    queue.reap_stale(120)
    assert queue.heartbeat(job.id, "w-1") is False
    assert queue.complete(job.id, "w-1", JobOutcome.success()) is False


def test_retry_backoff_is_capped():
    assert retry_backoff_seconds(0) == 5
    assert retry_backoff_seconds(1) == 10
    assert retry_backoff_seconds(3) == 40
    assert retry_backoff_seconds(4) == 60
    assert retry_backoff_seconds(10) == 60


def test_requeue_for_retry_schedules_backoff(queue, clock):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    ok = queue.requeue_for_retry(job.id, "w-1", error_code="network_error", message="net::ERR_RESET")
    assert ok is True
    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.retry_count == 1
    assert stored.error_code == "network_error"
    assert (stored.scheduled_at - clock.now).total_seconds() == 5

    # 退避期内不可认领
    assert queue.claim("w-1") is None
    clock.advance(6)
    assert queue.claim("w-1").id == job.id


def test_requeue_for_retry_fails_when_budget_spent(queue):
    job = queue.submit(target_url="https://example.com", max_retries=0)
    queue.claim("w-1")
    assert queue.requeue_for_retry(job.id, "w-1", error_code="page_timeout", message="Timeout") is True
    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "page_timeout"


def test_requeue_for_retry_by_non_owner_is_rejected(queue):
    job = queue.submit(target_url="https://example.com")
    queue.claim("w-1")
    assert queue.requeue_for_retry(job.id, "w-2", error_code="network_error", message="x") is False
    assert queue.get(job.id).worker_id == "w-1"
