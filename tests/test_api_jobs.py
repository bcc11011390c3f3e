from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from formpilot.app import create_app
from formpilot.core.job_logger import JobLogWriter
from formpilot.core.lease_queue import JobOutcome


@pytest.fixture()
def client(database):
    with TestClient(create_app(database)) as c:
        yield c


def test_submit_job_returns_pending_job(client):
    resp = client.post(
        "/api/jobs",
        json={
            "target_url": " https://acme.myworkdayjobs.com/job/1 ",
            "input_data": {"profile": {"first_name": "Ada"}, "submit": False},
            "priority": "5",
            "tags": ["workday", 7],
        },
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["ok"] is True
    job = body["job"]
    assert job["status"] == "pending"
    assert job["target_url"] == "https://acme.myworkdayjobs.com/job/1"
    assert job["priority"] == 5
    assert job["tags"] == ["workday", "7"]
    assert job["retry_count"] == 0
    assert job["max_retries"] == 3
    assert job["worker_id"] is None


def test_submit_requires_target_url(client):
    resp = client.post("/api/jobs", json={"target_url": "   "})
    assert resp.status_code == 422
    assert resp.json() == {"ok": False, "error": "target_url is required"}


@pytest.mark.parametrize(
    "payload",
    [
        {"timeout_seconds": 0},
        {"max_retries": -1},
        {"priority": True},
        {"priority": "high"},
        {"input_data": ["not", "a", "dict"]},
        {"tags": "a,b"},
        {"worker_id": "w-1"},
    ],
)
def test_submit_rejects_invalid_fields(client, payload):
    resp = client.post("/api/jobs", json={"target_url": "https://example.com", **payload})
    assert resp.status_code == 400
    assert resp.json()["ok"] is False


def test_list_jobs_newest_first_with_status_filter(client, database):
    queue = client.app.state.queue
    first = queue.submit(target_url="https://example.com/1")
    second = queue.submit(target_url="https://example.com/2")
    claimed = queue.claim("w-1")
    queue.complete(claimed.id, "w-1", JobOutcome.failure("validation_failed", "still invalid"))

    rows = client.get("/api/jobs").json()
    assert [r["id"] for r in rows] == [second.id, first.id]

    failed = client.get("/api/jobs", params={"status": "failed"}).json()
    assert [r["id"] for r in failed] == [claimed.id]
    assert failed[0]["error_code"] == "validation_failed"

    assert len(client.get("/api/jobs", params={"limit": 1}).json()) == 1
    assert client.get("/api/jobs", params={"status": "bogus"}).status_code == 422


def test_get_job_and_missing_job(client):
    job = client.app.state.queue.submit(target_url="https://example.com/1")
    resp = client.get(f"/api/jobs/{job.id}")
    assert resp.status_code == 200
    assert resp.json()["id"] == job.id

    missing = client.get("/api/jobs/9999")
    assert missing.status_code == 404
    assert missing.json()["ok"] is False


def test_job_logs_in_order_and_filtered(client, database):
    job = client.app.state.queue.submit(target_url="https://example.com/1")
    log = JobLogWriter(database, job.id, actor="w-1")
    log.event("job_started", "start")
    log("plain line")
    log.event("llm_usage", "tokens", prompt_tokens=10, completion_tokens=2)

    rows = client.get(f"/api/jobs/{job.id}/logs").json()
    assert [r["message"] for r in rows][:1] == ["start"]
    assert len(rows) == 3
    assert all(r["actor"] == "w-1" for r in rows)

    usage = client.get(f"/api/jobs/{job.id}/logs", params={"event_type": "llm_usage"}).json()
    assert len(usage) == 1
    assert usage[0]["details"]["prompt_tokens"] == 10


def test_failure_stats(client):
    queue = client.app.state.queue
    for _ in range(3):
        queue.submit(target_url="https://example.com/x")
    for code in ("blocker_detected", "blocker_detected"):
        job = queue.claim("w-1")
        queue.complete(job.id, "w-1", JobOutcome.failure(code, "blocked"))

    body = client.get("/api/stats/failures").json()

    assert body["ok"] is True
    assert body["total_failed_jobs"] == 2
    assert body["total_finished_jobs"] == 2
    assert body["by_status"] == {"failed": 2, "pending": 1}
    assert body["top_failure_codes"] == [{"key": "blocker_detected", "count": 2}]
