"""
Cron Job Scheduler

Register jobs against cron schedules and run them on a thread pool.

Features:
- Quartz-style cron expressions (seconds, optional year, L/W/# day rules)
  as well as classic 5-field cron, evaluated in any timezone
- Job CRUD: register, get, list, delete, delete all
- Pluggable job types resolved by identifier at registration time
- No overlapping firings of the same job; missed firings run once
- Optional SQLAlchemy job store, JSON run history and event listeners
"""

from cronjobs.config import SchedulerConfig, JobConfig, setup_logging
from cronjobs.errors import (
    SchedulerError,
    InvalidScheduleError,
    DuplicateJobError,
    NotFoundError,
    UnknownJobTypeError,
    ExecutionError,
)
from cronjobs.history import RunHistory, RunStatus
from cronjobs.jobs import Job, FunctionJob, CommandJob, JobTypeRegistry
from cronjobs.models import JobDefinition, JobRecord, JobState
from cronjobs.params import ParameterBag, to_bag, to_mapping
from cronjobs.registry import JobRegistry
from cronjobs.schedule import CronSchedule, parse
from cronjobs.service import SchedulerService
from cronjobs.store import MemoryJobStore, SQLAlchemyJobStore

__version__ = "0.1.0"
__all__ = [
    "SchedulerService",
    "SchedulerConfig",
    "JobConfig",
    "setup_logging",
    "SchedulerError",
    "InvalidScheduleError",
    "DuplicateJobError",
    "NotFoundError",
    "UnknownJobTypeError",
    "ExecutionError",
    "Job",
    "FunctionJob",
    "CommandJob",
    "JobTypeRegistry",
    "RunHistory",
    "RunStatus",
    "JobDefinition",
    "JobRecord",
    "JobState",
    "ParameterBag",
    "to_bag",
    "to_mapping",
    "JobRegistry",
    "CronSchedule",
    "parse",
    "MemoryJobStore",
    "SQLAlchemyJobStore",
]
