"""
Tests for the event-driven run history.
"""

import json
from datetime import datetime, timedelta, timezone

from cronjobs.events import (
    EVENT_JOB_ABANDONED,
    EVENT_JOB_ADDED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    EVENT_JOB_SUBMITTED,
    JobEvent,
)
from cronjobs.history import RunHistory, RunStatus

START = datetime(2024, 1, 1, 2, 0, tzinfo=timezone.utc)


def _fire(history, job_name, run_id, minutes, *codes, **kwargs):
    scheduled = START + timedelta(minutes=minutes)
    for code in codes:
        history(JobEvent(code, job_name, scheduled, run_id, **kwargs))


def test_run_lifecycle(tmp_path):
    history = RunHistory(tmp_path / "history" / "runs.json")

    _fire(history, "report", "run1", 0, EVENT_JOB_SUBMITTED)
    assert history.last_run("report")['status'] == RunStatus.RUNNING

    _fire(history, "report", "run1", 0, EVENT_JOB_EXECUTED, duration_seconds=1.23456)
    run = history.last_run("report")
    assert run['status'] == RunStatus.SUCCESS
    assert run['duration_seconds'] == 1.235
    assert run['scheduled_time'] == "2024-01-01T02:00:00+00:00"
    assert run['missed'] is False
    assert run['error'] is None
    assert len(history) == 1


def test_failed_and_missed_runs(tmp_path):
    history = RunHistory(tmp_path / "runs.json")

    _fire(history, "report", "run1", 0, EVENT_JOB_MISSED, EVENT_JOB_SUBMITTED)
    _fire(history, "report", "run1", 0, EVENT_JOB_ERROR, exception=RuntimeError("disk full"))

    run = history.last_run("report")
    assert run['status'] == 'failed'
    assert run['error'] == "RuntimeError: disk full"
    assert run['missed'] is True
    assert history.runs(missed=False) == []


def test_completion_before_submission(tmp_path):
    history = RunHistory(tmp_path / "runs.json")

    _fire(history, "report", "run1", 0, EVENT_JOB_EXECUTED, duration_seconds=0.5)
    _fire(history, "report", "run1", 0, EVENT_JOB_SUBMITTED)

    assert history.runs() == [{
        'run_id': "run1",
        'job_name': "report",
        'scheduled_time': "2024-01-01T02:00:00+00:00",
        'status': "success",
        'missed': False,
        'duration_seconds': 0.5,
        'error': None,
    }]


def test_abandoned_run(tmp_path):
    history = RunHistory(tmp_path / "runs.json")

    _fire(history, "slow", "run1", 0, EVENT_JOB_SUBMITTED, EVENT_JOB_ABANDONED)

    assert [r['run_id'] for r in history.runs(status=RunStatus.ABANDONED)] == ["run1"]


def test_events_without_run_are_ignored(tmp_path):
    history = RunHistory(tmp_path / "runs.json")

    history(JobEvent(EVENT_JOB_ADDED, "report"))
    history(JobEvent(EVENT_JOB_EXECUTED, "report"))

    assert len(history) == 0
    assert not (tmp_path / "runs.json").exists()


def test_queries_order_by_scheduled_time(tmp_path):
    history = RunHistory(tmp_path / "runs.json")

    _fire(history, "b", "run2", 2, EVENT_JOB_SUBMITTED, EVENT_JOB_EXECUTED)
    _fire(history, "a", "run1", 1, EVENT_JOB_SUBMITTED, EVENT_JOB_EXECUTED)
    _fire(history, "a", "run3", 3, EVENT_JOB_SUBMITTED)

    # 02:30+01:00 is 01:30 UTC, before every other run
    history(JobEvent(EVENT_JOB_SUBMITTED, "b", datetime(
        2024, 1, 1, 2, 30, tzinfo=timezone(timedelta(hours=1))), "run0"))

    assert [r['run_id'] for r in history.runs()] == ["run3", "run2", "run1", "run0"]
    assert [r['run_id'] for r in history.runs(job_name="a")] == ["run3", "run1"]
    assert [r['run_id'] for r in history.runs(status="success")] == ["run2", "run1"]
    assert [r['run_id'] for r in history.runs(limit=2)] == ["run3", "run2"]
    assert history.last_run("missing") is None


def test_max_entries_keeps_newest(tmp_path):
    history = RunHistory(tmp_path / "runs.json", max_entries=3)

    for i in range(5):
        _fire(history, "report", f"run{i}", i, EVENT_JOB_SUBMITTED)

    assert len(history) == 3
    assert [r['run_id'] for r in history.runs()] == ["run4", "run3", "run2"]


def test_history_survives_reload(tmp_path):
    history_file = tmp_path / "runs.json"
    history = RunHistory(history_file)
    _fire(history, "report", "run1", 0, EVENT_JOB_SUBMITTED, EVENT_JOB_EXECUTED)

    reloaded = RunHistory(history_file)
    assert reloaded.runs() == history.runs()
    assert json.loads(history_file.read_text())[0]['run_id'] == "run1"
    assert not history_file.with_name("runs.json.tmp").exists()


def test_unreadable_file_starts_empty(tmp_path):
    history_file = tmp_path / "runs.json"
    history_file.write_text("{not json")

    history = RunHistory(history_file)
    assert len(history) == 0

    _fire(history, "report", "run1", 0, EVENT_JOB_SUBMITTED)
    assert len(json.loads(history_file.read_text())) == 1


def test_clear(tmp_path):
    history = RunHistory(tmp_path / "runs.json")
    _fire(history, "a", "run1", 0, EVENT_JOB_SUBMITTED)
    _fire(history, "b", "run2", 1, EVENT_JOB_SUBMITTED)

    history.clear(job_name="a")
    assert [r['run_id'] for r in history.runs()] == ["run2"]

    history.clear()
    assert history.runs() == []
    assert json.loads((tmp_path / "runs.json").read_text()) == []
