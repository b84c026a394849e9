"""
Data models for scheduled jobs.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from cronjobs.schedule import DEFAULT_TIMEZONE, CronSchedule


class JobState(str, Enum):
    """Lifecycle state of a registered job."""
    SCHEDULED = "scheduled"
    FIRING = "firing"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class JobDefinition:
    """
    Everything needed to register a job.

    This is the form an application fills in and also what the registry
    hands back from lookups. Params are copied on construction so the
    caller's mapping can change afterwards without affecting the job.
    """
    name: str
    job_type: str
    schedule: str  # cron expression
    timezone: str = DEFAULT_TIMEZONE
    params: Dict[str, str] = field(default_factory=dict)
    description: Optional[str] = None

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Job name cannot be empty")
        object.__setattr__(self, 'params', dict(self.params or {}))
        object.__setattr__(self, 'timezone', self.timezone or DEFAULT_TIMEZONE)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for JSON or database storage."""
        return {
            'name': self.name,
            'job_type': self.job_type,
            'schedule': self.schedule,
            'timezone': self.timezone,
            'params': dict(self.params),
            'description': self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'JobDefinition':
        """Create from a dict produced by to_dict (or a config entry)."""
        return cls(
            name=data['name'],
            job_type=data['job_type'],
            schedule=data['schedule'],
            timezone=data.get('timezone') or DEFAULT_TIMEZONE,
            params=data.get('params') or {},
            description=data.get('description'),
        )


@dataclass
class JobRecord:
    """
    Registry entry: a definition, its parsed schedule and runtime state.

    Runtime fields are only mutated while the registry lock is held.
    """
    definition: JobDefinition
    schedule: CronSchedule
    next_fire_time: Optional[datetime] = None
    last_fire_time: Optional[datetime] = None
    executing: bool = False
    deferred: bool = False
    state: JobState = JobState.SCHEDULED
    fire_count: int = 0

    @property
    def name(self) -> str:
        return self.definition.name

    @property
    def dispatchable(self) -> bool:
        """True if the engine may still fire this job."""
        return self.state in (JobState.SCHEDULED, JobState.FIRING)

    def is_due(self, now: datetime) -> bool:
        if not self.dispatchable:
            return False
        if self.deferred:
            return True
        return self.next_fire_time is not None and self.next_fire_time <= now

    def to_info(self) -> Dict[str, Any]:
        """Summary dictionary, in the shape returned by the service."""
        return {
            'id': self.name,
            'name': self.name,
            'job_type': self.definition.job_type,
            'schedule': self.definition.schedule,
            'timezone': self.definition.timezone,
            'trigger': self.schedule.to_cron(),
            'state': self.state.value,
            'next_run': self.next_fire_time.isoformat() if self.next_fire_time else None,
            'last_run': self.last_fire_time.isoformat() if self.last_fire_time else None,
            'executing': self.executing,
            'pending': self.deferred,
            'fire_count': self.fire_count,
        }
