from __future__ import annotations

import logging
from datetime import datetime, timezone

import pytest

from foreman.clock import ManualClock
from foreman.errors import JobExecutionError
from foreman.execution import JobAttempt
from foreman.jobs import ATTEMPT_COUNT_KEY, JobBuilder, JobDataMap, JobDetail, JobKey
from foreman.listeners import SchedulerListener
from foreman.retry import RecurringRetryStrategy
from foreman.triggers import OneShotTrigger, TriggerKey

UTC = timezone.utc
NOW = datetime(2026, 1, 1, 8, 0, tzinfo=UTC)


def _attempt(job: JobDetail, **kwargs) -> JobAttempt:
    trigger = OneShotTrigger(TriggerKey("t"), job=job, start_time=NOW)
    return JobAttempt(job, trigger, scheduled_fire_time=NOW, clock=ManualClock(NOW), **kwargs)


def test_job_data_map_rejects_non_string_keys() -> None:
    data = JobDataMap()
    with pytest.raises(TypeError):
        data[1] = "x"  # type: ignore[index]


def test_typed_getters() -> None:
    data = JobDataMap({"n": 3, "s": "x", "b": True})
    assert data.get_int("n") == 3
    assert data.get_str("s") == "x"
    assert data.get_bool("b") is True
    assert data.get_int("missing", 7) == 7
    with pytest.raises(TypeError):
        data.get_int("b")
    with pytest.raises(TypeError):
        data.get_str("n")


@pytest.mark.parametrize("raw", ["2", -1, True, 1.5, None])
def test_attempt_count_fails_closed(raw, caplog: pytest.LogCaptureFixture) -> None:
    data = JobDataMap({ATTEMPT_COUNT_KEY: raw})
    with caplog.at_level(logging.WARNING):
        assert data.attempt_count == 0


def test_data_map_copy_is_independent() -> None:
    data = JobDataMap({"a": 1})
    clone = data.copy()
    clone["a"] = 2
    clone.attempt_count = 4
    assert data["a"] == 1
    assert data.attempt_count == 0


def test_job_detail_copy_keeps_identity_and_strategy() -> None:
    strategy = RecurringRetryStrategy()
    job = JobBuilder.new_job(lambda ctx: None).with_identity("j", "g").using_job_data("k", "v").with_retry_strategy(strategy).build()
    clone = job.copy()
    assert clone.key == JobKey("j", "g")
    assert clone.retry_strategy is strategy
    assert clone.job_data_map is not job.job_data_map
    assert clone.job_data_map["k"] == "v"


def test_job_detail_rejects_non_callable_body() -> None:
    with pytest.raises(TypeError):
        JobDetail(JobKey("j"), job=42)


def test_class_body_is_instantiated_per_firing() -> None:
    instances = []

    class Counter:
        def __init__(self) -> None:
            instances.append(self)

        def execute(self, context) -> None:
            return None

    job = JobBuilder.new_job(Counter).build()
    assert job.key == JobKey("Counter")
    _attempt(job).run()
    _attempt(job).run()
    assert len(instances) == 2
    assert instances[0] is not instances[1]


def test_attempt_success_resets_count_and_exposes_attempt() -> None:
    seen = []
    job = JobBuilder.new_job(lambda ctx: seen.append(ctx.attempt) or "done").with_identity("j").build()
    job.job_data_map.attempt_count = 2
    outcome = _attempt(job).run()
    assert seen == [3]
    assert outcome.success is True
    assert outcome.result == "done"
    assert outcome.decision is None
    assert job.job_data_map.attempt_count == 0
    assert outcome.run_id.startswith("DEFAULT.j:20260101080000-")


def test_attempt_failure_keeps_count_and_asks_strategy() -> None:
    def boom(ctx) -> None:
        raise ValueError("bad input")

    job = (
        JobBuilder.new_job(boom)
        .with_identity("j")
        .with_retry_strategy(RecurringRetryStrategy(maximum_attempts=2, cool_down_seconds=10))
        .build()
    )
    outcome = _attempt(job).run()
    assert outcome.success is False
    assert isinstance(outcome.error, JobExecutionError)
    assert isinstance(outcome.error.cause, ValueError)
    assert job.job_data_map.attempt_count == 1
    assert outcome.wants_retry
    assert outcome.decision.retry_at == NOW.replace(second=10)
    assert outcome.retry_job is not job
    assert outcome.retry_job.job_data_map.attempt_count == 1


def test_failing_strategy_is_treated_as_give_up() -> None:
    class BrokenStrategy(RecurringRetryStrategy):
        def on_failure(self, attempt_count, job, trigger, now):
            raise RuntimeError("strategy broke")

    def boom(ctx) -> None:
        raise JobExecutionError("nope")

    job = JobBuilder.new_job(boom).with_retry_strategy(BrokenStrategy()).build()
    outcome = _attempt(job).run()
    assert outcome.decision.give_up
    assert "strategy broke" in outcome.decision.reason


def test_listener_errors_do_not_fail_the_job() -> None:
    class Loud(SchedulerListener):
        def job_to_be_executed(self, context) -> None:
            raise RuntimeError("listener down")

    job = JobBuilder.new_job(lambda ctx: None).build()
    outcome = _attempt(job, listeners=[Loud()]).run()
    assert outcome.success is True


def test_strategy_without_retry_support_is_not_consulted() -> None:
    calls = []

    class NoRetry(RecurringRetryStrategy):
        supports_retry = False

        def on_failure(self, attempt_count, job, trigger, now):
            calls.append(attempt_count)
            return super().on_failure(attempt_count, job, trigger, now)

    def boom(ctx) -> None:
        raise JobExecutionError("nope")

    outcome = _attempt(JobBuilder.new_job(boom).with_retry_strategy(NoRetry()).build()).run()
    assert calls == []
    assert outcome.decision.give_up
    assert outcome.decision.reason == "retries not supported"
    assert outcome.retry_job is None
