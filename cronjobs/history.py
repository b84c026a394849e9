"""
Run history built from scheduler events.

RunHistory is an event listener: the service attaches it when a history
file is configured, and it turns the events of each firing (submitted,
missed, executed, failed, abandoned) into one run entry keyed by run id.
Entries are kept in a JSON file, capped at the most recent max_entries:

    [
      {
        "run_id": "3f2a9c1b",
        "job_name": "nightly_report",
        "scheduled_time": "2024-01-01T02:00:00+01:00",
        "status": "success",
        "missed": false,
        "duration_seconds": 1.52,
        "error": null
      }
    ]
"""

import json
import logging
import os
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from cronjobs.events import (
    EVENT_JOB_ABANDONED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    EVENT_JOB_SUBMITTED,
    JobEvent,
)

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    """Outcome of one firing."""
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ABANDONED = "abandoned"


class RunHistory:
    """Keeps one entry per firing, updated as the firing's events arrive."""

    EVENTS = (
        EVENT_JOB_SUBMITTED | EVENT_JOB_MISSED | EVENT_JOB_EXECUTED |
        EVENT_JOB_ERROR | EVENT_JOB_ABANDONED
    )

    def __init__(self, history_file: Union[str, Path], max_entries: int = 1000):
        """
        Initialize run history, reading existing entries from the file.

        Args:
            history_file: Path to history JSON file
            max_entries: Maximum number of runs to keep
        """
        self.history_file = Path(history_file).expanduser()
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Any]] = self._load()

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.history_file.exists():
            return {}
        try:
            entries = json.loads(self.history_file.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Ignoring unreadable run history {self.history_file}: {e}")
            return {}
        return {entry['run_id']: entry for entry in entries if entry.get('run_id')}

    def _save(self):
        self.history_file.parent.mkdir(parents=True, exist_ok=True)
        partial = self.history_file.with_name(self.history_file.name + '.tmp')
        partial.write_text(json.dumps(list(self._runs.values()), indent=2))
        os.replace(partial, self.history_file)

    def __call__(self, event: JobEvent):
        """Apply a scheduler event to its run entry."""
        if event.run_id is None or not event.code & self.EVENTS:
            return

        with self._lock:
            entry = self._runs.get(event.run_id)
            if entry is None:
                # Completion can be reported before submission
                entry = {
                    'run_id': event.run_id,
                    'job_name': event.job_name,
                    'scheduled_time': _isoformat(event.scheduled_time),
                    'status': RunStatus.RUNNING.value,
                    'missed': False,
                    'duration_seconds': None,
                    'error': None,
                }
                self._runs[event.run_id] = entry

            if event.code == EVENT_JOB_MISSED:
                entry['missed'] = True
            elif event.code == EVENT_JOB_EXECUTED:
                entry['status'] = RunStatus.SUCCESS.value
            elif event.code == EVENT_JOB_ERROR:
                entry['status'] = RunStatus.FAILED.value
                entry['error'] = f"{type(event.exception).__name__}: {event.exception}"
            elif event.code == EVENT_JOB_ABANDONED:
                entry['status'] = RunStatus.ABANDONED.value

            if event.duration_seconds is not None:
                entry['duration_seconds'] = round(event.duration_seconds, 3)

            while len(self._runs) > self.max_entries:
                del self._runs[next(iter(self._runs))]

            try:
                self._save()
            except OSError as e:
                logger.warning(f"Failed to write run history: {e}")

    def runs(
        self,
        job_name: Optional[str] = None,
        status: Optional[Union[RunStatus, str]] = None,
        missed: Optional[bool] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query runs, latest scheduled time first.

        Args:
            job_name: Only runs of this job
            status: Only runs with this outcome
            missed: Only runs that were (or were not) late
            limit: Maximum number of runs to return

        Returns:
            Copies of the matching run entries
        """
        status = RunStatus(status).value if status is not None else None
        with self._lock:
            runs = [dict(entry) for entry in self._runs.values()]

        runs = [
            run for run in runs
            if (job_name is None or run['job_name'] == job_name)
            and (status is None or run['status'] == status)
            and (missed is None or run['missed'] == missed)
        ]
        runs.sort(key=_scheduled, reverse=True)
        return runs[:limit] if limit else runs

    def last_run(self, job_name: str) -> Optional[Dict[str, Any]]:
        runs = self.runs(job_name=job_name, limit=1)
        return runs[0] if runs else None

    def clear(self, job_name: Optional[str] = None):
        """Forget runs, of one job or of all jobs."""
        with self._lock:
            self._runs = {
                run_id: entry for run_id, entry in self._runs.items()
                if job_name is not None and entry['job_name'] != job_name
            }
            self._save()

    def __len__(self):
        return len(self._runs)


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _scheduled(run: Dict[str, Any]) -> datetime:
    value = run.get('scheduled_time')
    return datetime.fromisoformat(value) if value else _EPOCH


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
