from __future__ import annotations

import threading
import time

import pytest

from sqlalchemy import select

import formpilot.core.job_executor as je
from formpilot.config import Settings
from formpilot.core.blocker_classifier import BlockerResult
from formpilot.core.errors import JobTimeoutError, OwnershipLostError
from formpilot.core.fill_controller import ScreenResult
from formpilot.core.platforms import PageHint
from formpilot.core.reasoning import ActResult, UsageEvent
from formpilot.models.job import ACTIVE_STATUSES, JobStatus
from formpilot.models.job_log import JobLog

_REAL_BUILD_REASONING = je.build_reasoning_service


class _Button:
    def __init__(self, page, name):
        self.page = page
        self.name = name

    def count(self):
        return 1

    def wait_for(self, state="visible", timeout=None):
        return None

    def click(self):
        self.page.clicked.append(self.name)


class _Page:
    def __init__(self, url="https://jobs.example.com/apply/1"):
        self.url = url
        self.goto_error: Exception | None = None
        self.visited: list[str] = []
        self.clicked: list[str] = []

    def goto(self, url, wait_until=None):
        if self.goto_error is not None:
            raise self.goto_error
        self.visited.append(url)

    def wait_for_timeout(self, ms):
        return None

    def get_by_role(self, role, name=None):
        return _Button(self, name)


class _Session:
    def __init__(self, page):
        self.page = page
        self.closed = False

    def close(self):
        self.closed = True


class _Platform:
    platform_id = "fake"

    def __init__(self, *, review=(), hint=None):
        self.review = list(review)
        self.hint = hint

    def detect_page_by_url(self, url):
        return self.hint

    def build_qa_map(self, profile, qa_overrides):
        return {"First Name": profile.get("first_name", ""), **qa_overrides}

    def build_fill_prompt(self, profile, qa_map):
        return "PROMPT"

    def field_map(self):
        return []

    def is_review_screen(self, page):
        return self.review.pop(0) if self.review else False

    def is_confirmation_screen(self, page):
        return bool(page.clicked)


class _Controller:
    def __init__(self, results):
        self.results = list(results)
        self.calls: list[dict] = []

    def fill_screen(self, page, **kwargs):
        self.calls.append(kwargs)
        step = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(step, Exception):
            raise step
        if callable(step):
            return step()
        return step


class _Classifier:
    def __init__(self, result=None):
        self.result = result

    def detect(self, page):
        return self.result


class _Reasoning:
    def act(self, instruction, context=None):
        return ActResult(True, "ok")

    def extract(self, instruction, schema):
        return {}


def _settings(max_screens=5):
    settings = Settings()
    settings.queue.heartbeat_interval_seconds = 0.05
    settings.worker.max_screens = max_screens
    return settings


def _install(monkeypatch, *, page, platform, controller, on_build=None):
    session = _Session(page)

    class _Manager:
        def __init__(self, settings, log_fn=None):
            pass

        def launch(self):
            return session

    def _build(page_, settings, **kwargs):
        if on_build:
            on_build(kwargs)
        return _Reasoning()

    monkeypatch.setattr(je, "BrowserManager", _Manager)
    monkeypatch.setattr(je, "detect_platform", lambda url: platform)
    monkeypatch.setattr(je, "HybridFillController", lambda *args, **kwargs: controller)
    monkeypatch.setattr(je, "build_reasoning_service", _build)
    return session


def _claimed(queue, **fields):
    queue.submit(target_url="https://jobs.example.com/apply/1", **fields)
    return queue.claim("w-1")


def _executor(database, queue, classifier=None, settings=None):
    return je.JobExecutor(
        database,
        queue,
        "w-1",
        settings=settings or _settings(),
        classifier=classifier or _Classifier(),
    )


def _event_types(database, job_id):
    with database.session() as session:
        rows = session.execute(select(JobLog).where(JobLog.job_id == job_id)).scalars().all()
        return [row.event_type for row in rows]


def test_stops_at_review_without_submitting(monkeypatch, database, queue):
    page = _Page()
    session = _install(
        monkeypatch,
        page=page,
        platform=_Platform(review=[False, True]),
        controller=_Controller([ScreenResult(outcome="done", llm_calls=2, scroll_rounds=3)]),
    )
    job = _claimed(queue, input_data={"profile": {"first_name": "Ada"}})

    report = _executor(database, queue).execute(job)

    assert report.disposition == "completed"
    stored = queue.get(job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert stored.worker_id is None
    assert stored.result_data["stopped_at"] == "review"
    assert stored.result_data["platform"] == "fake"
    assert stored.result_data["screens"] == [
        {"screen": 1, "outcome": "done", "llm_calls": 2, "scroll_rounds": 3}
    ]
    assert page.visited == ["https://jobs.example.com/apply/1"]
    assert page.clicked == []
    assert session.closed is True
    events = _event_types(database, job.id)
    assert "job_started" in events and "job_finished" in events


def test_task_description_prefixes_fill_prompt(monkeypatch, database, queue):
    controller = _Controller([ScreenResult(outcome="review_detected")])
    _install(monkeypatch, page=_Page(), platform=_Platform(), controller=controller)
    job = _claimed(queue, task_description="Apply as a contractor")

    _executor(database, queue).execute(job)

    assert controller.calls[0]["fill_prompt"] == "Apply as a contractor\n\nPROMPT"
    assert controller.calls[0]["page_label"] == "screen 1"
    assert queue.get(job.id).result_data["stopped_at"] == "review"


def test_submits_at_review_when_requested(monkeypatch, database, queue):
    page = _Page()
    _install(
        monkeypatch,
        page=page,
        platform=_Platform(review=[True]),
        controller=_Controller([ScreenResult(outcome="done")]),
    )
    job = _claimed(queue, input_data={"submit": True})

    _executor(database, queue).execute(job)

    stored = queue.get(job.id)
    assert stored.status == JobStatus.SUCCEEDED
    assert page.clicked == ["Submit Application"]
    assert stored.result_data["stopped_at"] == "submitted"
    assert stored.result_data["confirmed"] is True


def test_blocker_fails_job_with_intervention_flag(monkeypatch, database, queue):
    _install(monkeypatch, page=_Page(), platform=_Platform(), controller=_Controller([ScreenResult(outcome="done")]))
    blocker = BlockerResult(type="captcha", confidence=0.95, source="dom", details="recaptcha iframe")
    job = _claimed(queue)

    report = _executor(database, queue, classifier=_Classifier(blocker)).execute(job)

    stored = queue.get(job.id)
    assert report.error_code == "blocker_detected"
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "blocker_detected"
    assert stored.error_details["blocker_type"] == "captcha"
    assert stored.error_details["requires_intervention"] is True
    assert "blocker_detected" in _event_types(database, job.id)


def test_sso_url_is_treated_as_login_blocker(monkeypatch, database, queue):
    platform = _Platform(hint=PageHint(page_type="sso_signin", title="Google Sign-In"))
    _install(monkeypatch, page=_Page(), platform=platform, controller=_Controller([ScreenResult(outcome="done")]))
    job = _claimed(queue)

    _executor(database, queue).execute(job)

    stored = queue.get(job.id)
    assert stored.error_code == "blocker_detected"
    assert stored.error_details["blocker_type"] == "login"
    assert stored.error_details["blocker"]["source"] == "url"


def test_obstacle_from_fill_screen(monkeypatch, database, queue):
    blocker = BlockerResult(type="2fa", confidence=0.85, source="text", details="two-factor")
    _install(
        monkeypatch,
        page=_Page(),
        platform=_Platform(),
        controller=_Controller([ScreenResult(outcome="obstacle_detected", blocker=blocker)]),
    )
    job = _claimed(queue)

    _executor(database, queue).execute(job)

    assert queue.get(job.id).error_details["blocker_type"] == "2fa"


def test_validation_and_navigation_failures(monkeypatch, database, queue):
    _install(
        monkeypatch,
        page=_Page(),
        platform=_Platform(),
        controller=_Controller(
            [ScreenResult(outcome="validation_failed", detail="still invalid", unresolved_fields=["Email"])]
        ),
    )
    job = _claimed(queue)
    _executor(database, queue).execute(job)
    stored = queue.get(job.id)
    assert stored.error_code == "validation_failed"
    assert stored.error_details["unresolved_fields"] == ["Email"]

    _install(
        monkeypatch,
        page=_Page(),
        platform=_Platform(),
        controller=_Controller([ScreenResult(outcome="navigation_failed", detail="no next")]),
    )
    job = _claimed(queue)
    _executor(database, queue).execute(job)
    assert queue.get(job.id).error_code == "navigation_failed"


def test_screen_limit(monkeypatch, database, queue):
    controller = _Controller([ScreenResult(outcome="done")])
    _install(monkeypatch, page=_Page(), platform=_Platform(), controller=controller)
    job = _claimed(queue)

    _executor(database, queue, settings=_settings(max_screens=3)).execute(job)

    assert queue.get(job.id).error_code == "screen_limit_exceeded"
    assert len(controller.calls) == 3


def test_job_timeout_is_terminal(monkeypatch, database, queue):
    _install(
        monkeypatch,
        page=_Page(),
        platform=_Platform(),
        controller=_Controller([JobTimeoutError("job timeout budget exhausted during scroll")]),
    )
    job = _claimed(queue, timeout_seconds=60)

    _executor(database, queue).execute(job)

    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "timeout"
    assert stored.error_details["timeout_seconds"] == 60
    assert stored.retry_count == 0


def test_retryable_error_requeues_with_backoff(monkeypatch, database, queue, clock):
    page = _Page()
    page.goto_error = RuntimeError("net::ERR_CONNECTION_REFUSED at https://jobs.example.com")
    session = _install(monkeypatch, page=page, platform=_Platform(), controller=_Controller([ScreenResult(outcome="done")]))
    job = _claimed(queue)

    report = _executor(database, queue).execute(job)

    assert report.disposition == "requeued"
    assert report.error_code == "network_error"
    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.retry_count == 1
    assert stored.scheduled_at > clock.now
    assert session.closed is True


def test_non_retryable_error_fails(monkeypatch, database, queue):
    _install(
        monkeypatch,
        page=_Page(),
        platform=_Platform(),
        controller=_Controller([RuntimeError("captcha widget refused to load")]),
    )
    job = _claimed(queue)

    _executor(database, queue).execute(job)

    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "captcha_blocked"


def test_missing_api_key_is_configuration_error(monkeypatch, database, queue):
    _install(monkeypatch, page=_Page(), platform=_Platform(), controller=_Controller([ScreenResult(outcome="done")]))
    monkeypatch.setattr(je, "build_reasoning_service", _REAL_BUILD_REASONING)
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    job = _claimed(queue)

    _executor(database, queue).execute(job)

    stored = queue.get(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "configuration_error"


def test_lost_ownership_abandons_result(monkeypatch, database, queue):
    job = _claimed(queue)

    def _stolen():
        queue.release(job.id, "w-1", reason="test")
        return ScreenResult(outcome="review_detected")

    _install(monkeypatch, page=_Page(), platform=_Platform(), controller=_Controller([_stolen]))

    report = _executor(database, queue).execute(job)

    assert report.disposition == "abandoned"
    stored = queue.get(job.id)
    assert stored.status == JobStatus.PENDING
    assert stored.result_data is None


def test_usage_events_are_logged_and_summarised(monkeypatch, database, queue):
    def _on_build(kwargs):
        kwargs["on_usage"](UsageEvent(purpose="act", model="m1", prompt_tokens=100, completion_tokens=20))

    _install(
        monkeypatch,
        page=_Page(),
        platform=_Platform(),
        controller=_Controller([ScreenResult(outcome="review_detected")]),
        on_build=_on_build,
    )
    job = _claimed(queue)

    _executor(database, queue).execute(job)

    usage = queue.get(job.id).result_data["llm_usage"]
    assert usage == {"requests": 1, "prompt_tokens": 100, "completion_tokens": 20}
    assert "llm_usage" in _event_types(database, job.id)


class _CountingQueue:
    def __init__(self, accept=True):
        self.accept = accept
        self.beats = 0
        self.beat = threading.Event()

    def heartbeat(self, job_id, worker_id):
        self.beats += 1
        self.beat.set()
        return self.accept


def test_heartbeat_thread_renews_until_stopped():
    q = _CountingQueue()
    hb = je.HeartbeatThread(q, 1, "w-1", interval=0.01, stall_timeout=60)
    hb.start()
    assert q.beat.wait(2)
    hb.stop()
    hb.join(2)
    assert not hb.is_alive()
    assert not hb.ownership_lost.is_set()
    assert q.beats >= 1


def test_heartbeat_thread_flags_lost_ownership():
    hb = je.HeartbeatThread(_CountingQueue(accept=False), 1, "w-1", interval=0.01, stall_timeout=60)
    hb.start()
    assert hb.ownership_lost.wait(2)
    hb.join(2)
    assert not hb.is_alive()


def test_heartbeat_thread_stops_when_executor_stalls():
    ticks = iter(range(0, 10_000, 100))
    q = _CountingQueue()
    hb = je.HeartbeatThread(q, 1, "w-1", interval=0.01, stall_timeout=150, clock=lambda: float(next(ticks)))
    hb.start()
    assert hb.stalled.wait(2)
    hb.join(2)
    assert q.beats <= 1


def test_guard_stops_work_once_heartbeat_has_stalled(database, queue, clock):
    job = _claimed(queue)
    ticks = iter(range(0, 10_000, 100))
    hb = je.HeartbeatThread(queue, job.id, "w-1", interval=0.01, stall_timeout=150, clock=lambda: float(next(ticks)))
    hb.start()
    assert hb.stalled.wait(2)
    hb.join(2)

    clock.advance(200)
    assert queue.reap_stale(120).requeued == [job.id]
    taken = queue.claim("w-2")
    assert taken is not None and taken.id == job.id

    with pytest.raises(OwnershipLostError):
        _executor(database, queue)._guard(hb, float("inf"), "screen 2")


class _TimedController:
    """fill_screen that moves a shared fake clock and reports progress through on_progress."""

    def __init__(self, now, steps):
        self.now = now
        self.steps = steps

    def fill_screen(self, page, **kwargs):
        for advance, pause in self.steps:
            self.now[0] += advance
            time.sleep(pause)
            kwargs["on_progress"]("ai_pass")
        return ScreenResult(outcome="review_detected")


def _timed_executor(database, queue, now):
    settings = _settings()
    settings.worker.stall_timeout_seconds = 150
    return je.JobExecutor(
        database,
        queue,
        "w-1",
        settings=settings,
        classifier=_Classifier(),
        clock=lambda: now[0],
    )


def test_long_screen_with_steady_progress_keeps_heartbeat(monkeypatch, database, queue):
    now = [0.0]
    # 1000s on one screen, but never more than 100s between transitions
    _install(monkeypatch, page=_Page(), platform=_Platform(), controller=_TimedController(now, [(100, 0.06)] * 10))
    job = _claimed(queue, timeout_seconds=100_000)

    report = _timed_executor(database, queue, now).execute(job)

    assert now[0] == 1000
    assert report.disposition == "completed"
    assert queue.get(job.id).result_data["stopped_at"] == "review"


def test_hung_screen_is_abandoned_before_submit(monkeypatch, database, queue):
    now = [0.0]
    page = _Page()
    _install(monkeypatch, page=page, platform=_Platform(), controller=_TimedController(now, [(1000, 0.3)]))
    job = _claimed(queue, timeout_seconds=100_000, input_data={"submit": True})

    report = _timed_executor(database, queue, now).execute(job)

    assert report.disposition == "abandoned"
    assert page.clicked == []
    stored = queue.get(job.id)
    assert stored.status in ACTIVE_STATUSES
    assert stored.worker_id == "w-1"
    assert stored.result_data is None
