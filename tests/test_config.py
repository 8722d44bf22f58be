from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import yaml

from foreman import cli
from foreman.clock import ManualClock
from foreman.config import build_job, build_scheduler, build_trigger, load_config, select_jobs
from foreman.errors import ConfigError
from foreman.jobs import JobKey
from foreman.retry import RecurringRetryStrategy
from foreman.triggers import CronTrigger, IntervalTrigger, OneShotTrigger, TriggerKey

UTC = timezone.utc
REPO_ROOT = Path(__file__).resolve().parents[1]


def _base_config(triggers: list, **job_overrides: object) -> dict:
    job = {
        "name": "job-1",
        "job": "foreman.jobs:JobDataMap",
        "triggers": triggers,
    }
    job.update(job_overrides)
    return {
        "version": 1,
        "scheduler": {"thread_count": 2, "timezone": "UTC"},
        "jobs": [job],
    }


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "foreman.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def _write_jobs_module(tmp_path: Path, marker: Path) -> str:
    module = f"jobs_{tmp_path.name}"
    (tmp_path / f"{module}.py").write_text(
        (
            "from pathlib import Path\n"
            "\n"
            "def ok(context):\n"
            f"    Path({str(marker)!r}).write_text(str(context.attempt), encoding='utf-8')\n"
            "\n"
            "def broken(context):\n"
            "    raise RuntimeError('broken on purpose')\n"
        ),
        encoding="utf-8",
    )
    return module


def test_parse_all_trigger_types(tmp_path: Path) -> None:
    cfg = _base_config(
        [
            {"type": "once", "at": "2030-01-01T09:00:00"},
            {"name": "hourly", "type": "interval", "every": "1h", "repeat_count": 3},
            {"type": "cron", "expression": "0 0 6 ? * MON-FRI", "timezone": "Europe/London"},
        ],
        retry={"strategy": "recurring", "max_attempts": 2, "cool_down_seconds": 15},
        data={"records": 10},
    )
    config = load_config(_write_config(tmp_path, cfg))

    assert config.settings.thread_count == 2
    assert config.settings.misfire_threshold == timedelta(seconds=60)
    spec = config.jobs[0]
    assert spec.key == JobKey("job-1")
    assert [t.name for t in spec.triggers] == ["job-1.once-0", "hourly", "job-1.cron-2"]
    assert spec.triggers[0].at == datetime(2030, 1, 1, 9, 0, tzinfo=UTC)
    assert spec.triggers[1].every == timedelta(hours=1)
    assert spec.triggers[1].repeat_count == 3
    assert spec.triggers[2].timezone == "Europe/London"
    assert spec.retry.strategy == "recurring"
    assert spec.data == {"records": 10}


def test_unknown_keys_rejected(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "5m", "jitter": 3}])
    with pytest.raises(ConfigError, match=r"Unknown keys in jobs\[0\].triggers\[0\]"):
        load_config(_write_config(tmp_path, cfg))


def test_unknown_timezone_rejected(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "cron", "expression": "0 0 6 * * ?", "timezone": "America/NotAZone"}])
    with pytest.raises(ConfigError, match="Invalid timezone"):
        load_config(_write_config(tmp_path, cfg))


def test_bad_interval_rejected(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "5 minutes"}])
    with pytest.raises(ConfigError, match="must be in format"):
        load_config(_write_config(tmp_path, cfg))


def test_repeat_count_and_forever_conflict(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "30s", "repeat_count": 2, "forever": True}])
    with pytest.raises(ConfigError, match="cannot set both"):
        load_config(_write_config(tmp_path, cfg))


def test_cron_errors_carry_field_path(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "cron", "expression": "0 0 12 15 * MON"}])
    with pytest.raises(ConfigError, match=r"jobs\[0\].triggers\[0\].*cannot both be specified"):
        load_config(_write_config(tmp_path, cfg))


def test_duplicate_job_name_rejected(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "5m"}])
    cfg["jobs"].append(dict(cfg["jobs"][0], triggers=[{"name": "other", "type": "interval", "every": "5m"}]))
    with pytest.raises(ConfigError, match="Duplicate job name"):
        load_config(_write_config(tmp_path, cfg))


def test_non_durable_job_requires_triggers(tmp_path: Path) -> None:
    with pytest.raises(ConfigError, match="must be non-empty unless durable"):
        load_config(_write_config(tmp_path, _base_config([])))
    config = load_config(_write_config(tmp_path, _base_config([], durable=True)))
    assert config.jobs[0].durable is True


def test_unknown_retry_strategy_rejected(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "5m"}], retry={"strategy": "exponential"})
    with pytest.raises(ConfigError, match="strategy must be one of"):
        load_config(_write_config(tmp_path, cfg))


def test_select_jobs_filters_disabled(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "5m"}], enabled=False)
    config = load_config(_write_config(tmp_path, cfg))
    assert [spec.name for spec in select_jobs(config, None, include_disabled=True)] == ["job-1"]
    with pytest.raises(ConfigError, match="No enabled jobs"):
        select_jobs(config, None)
    with pytest.raises(ConfigError, match="Unknown job"):
        select_jobs(config, "missing", include_disabled=True)


def test_build_scheduler_registers_triggers(tmp_path: Path) -> None:
    module = _write_jobs_module(tmp_path, tmp_path / "marker.txt")
    cfg = _base_config(
        [
            {"name": "nightly", "type": "cron", "expression": "0 0 2 * * ?"},
            {"name": "poll", "type": "interval", "every": "10m", "start": "2026-01-01T00:00:00"},
        ],
        job=f"{module}:ok",
        retry={"strategy": "recurring", "max_attempts": 4},
    )
    clock = ManualClock(datetime(2026, 1, 1, tzinfo=UTC))
    scheduler = build_scheduler(load_config(_write_config(tmp_path, cfg)), clock=clock)
    try:
        assert scheduler.get_trigger_keys() == [TriggerKey("nightly"), TriggerKey("poll")]
        nightly = scheduler.get_trigger(TriggerKey("nightly"))
        poll = scheduler.get_trigger(TriggerKey("poll"))
        assert isinstance(nightly, CronTrigger)
        assert nightly.next_fire_time == datetime(2026, 1, 1, 2, 0, tzinfo=UTC)
        assert isinstance(poll, IntervalTrigger)
        assert poll.next_fire_time == datetime(2026, 1, 1, tzinfo=UTC)
        job = scheduler.get_job(JobKey("job-1"))
        assert isinstance(job.retry_strategy, RecurringRetryStrategy)
        assert job.retry_strategy.maximum_attempts == 4
    finally:
        scheduler.shutdown()


def test_unimportable_job_reference(tmp_path: Path) -> None:
    cfg = _base_config([{"type": "interval", "every": "5m"}], job="does_not_exist_anywhere:run")
    config = load_config(_write_config(tmp_path, cfg))
    with pytest.raises(ConfigError, match="Cannot import module"):
        build_job(config.jobs[0], tmp_path)


def test_missing_attribute_reference(tmp_path: Path) -> None:
    module = _write_jobs_module(tmp_path, tmp_path / "marker.txt")
    cfg = _base_config([{"type": "interval", "every": "5m"}], job=f"{module}:nope")
    config = load_config(_write_config(tmp_path, cfg))
    with pytest.raises(ConfigError, match='has no attribute "nope"'):
        build_job(config.jobs[0], tmp_path)


def test_sample_config_is_valid() -> None:
    config = load_config(REPO_ROOT / "foreman.yaml")
    assert {spec.name for spec in config.jobs} == {"extract-orders", "quality-check", "backfill"}
    for spec in config.jobs:
        job = build_job(spec, REPO_ROOT)
        assert job.key == spec.key


def test_command_validate_and_preview(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _base_config(
        [
            {"name": "hourly", "type": "interval", "every": "1h", "start": "2030-01-01T00:00:00"},
            {"name": "once", "type": "once"},
        ]
    )
    config_path = _write_config(tmp_path, cfg)

    assert cli.command_validate(config_path) == 0
    output = capsys.readouterr().out
    assert "Config valid" in output
    assert "Enabled jobs: 1" in output

    assert cli.command_preview(config_path, job_name=None, count=3) == 0
    output = capsys.readouterr().out
    assert "Next 3 run(s):" in output
    assert "2030-01-01T00:00:00+00:00" in output
    assert "2030-01-01T02:00:00+00:00" in output
    assert "2030-01-01T03:00:00+00:00" not in output


def test_command_run_reports_success(tmp_path: Path) -> None:
    marker = tmp_path / "marker.txt"
    module = _write_jobs_module(tmp_path, marker)
    cfg = _base_config([{"type": "interval", "every": "1d"}], job=f"{module}:ok")
    assert cli.command_run(_write_config(tmp_path, cfg), job_name="job-1") == 0
    assert marker.read_text(encoding="utf-8") == "1"


def test_command_run_reports_failure(tmp_path: Path) -> None:
    module = _write_jobs_module(tmp_path, tmp_path / "marker.txt")
    cfg = _base_config([{"type": "interval", "every": "1d"}], job=f"{module}:broken")
    assert cli.command_run(_write_config(tmp_path, cfg), job_name=None) == 1


def test_main_returns_one_on_config_error(tmp_path: Path) -> None:
    missing = tmp_path / "missing.yaml"
    assert cli.main(["--config", str(missing), "--log-file", "", "validate"]) == 1


def test_one_shot_trigger_without_time_is_built_unscheduled(tmp_path: Path) -> None:
    config = load_config(_write_config(tmp_path, _base_config([{"type": "once"}])))
    assert config.jobs[0].triggers[0].at is None
    trigger = build_trigger(config.jobs[0].triggers[0])
    assert isinstance(trigger, OneShotTrigger)
    assert trigger.start_time is None
