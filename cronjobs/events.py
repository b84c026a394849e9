"""
Scheduler event codes and the event object passed to listeners.

Codes are bit flags so a listener can subscribe to several at once:

    service.add_listener(on_failure, EVENT_JOB_ERROR | EVENT_JOB_MISSED)
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

EVENT_SCHEDULER_STARTED = 2 ** 0
EVENT_SCHEDULER_SHUTDOWN = 2 ** 1
EVENT_JOB_ADDED = 2 ** 2
EVENT_JOB_REMOVED = 2 ** 3
EVENT_JOB_SUBMITTED = 2 ** 4
EVENT_JOB_EXECUTED = 2 ** 5
EVENT_JOB_ERROR = 2 ** 6
EVENT_JOB_MISSED = 2 ** 7
EVENT_JOB_EXPIRED = 2 ** 8
EVENT_JOB_ABANDONED = 2 ** 9

EVENT_ALL = (
    EVENT_SCHEDULER_STARTED | EVENT_SCHEDULER_SHUTDOWN | EVENT_JOB_ADDED |
    EVENT_JOB_REMOVED | EVENT_JOB_SUBMITTED | EVENT_JOB_EXECUTED |
    EVENT_JOB_ERROR | EVENT_JOB_MISSED | EVENT_JOB_EXPIRED | EVENT_JOB_ABANDONED
)


@dataclass
class JobEvent:
    """An event emitted by the scheduler."""
    code: int
    job_name: Optional[str] = None
    scheduled_time: Optional[datetime] = None
    run_id: Optional[str] = None
    exception: Optional[BaseException] = None
    duration_seconds: Optional[float] = None
