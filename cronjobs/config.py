"""
Scheduler configuration management.

Handles loading, saving, and validating scheduler configuration, and
setting up logging from it. Configuration lives in a JSON file:

    {
      "engine": {"max_workers": 5, "shutdown_grace_seconds": 30},
      "logging": {"level": "INFO", "file": "~/.cronjobs/logs/scheduler.log"},
      "jobs": [
        {
          "name": "nightly_report",
          "job_type": "command",
          "schedule": "0 0 2 * * ?",
          "timezone": "Europe/Amsterdam",
          "params": {"command": "make report"}
        }
      ]
    }
"""

import json
import logging
import logging.handlers
import os
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from dotenv import load_dotenv

from cronjobs.errors import DuplicateJobError, InvalidScheduleError, NotFoundError
from cronjobs.models import JobDefinition
from cronjobs.schedule import DEFAULT_TIMEZONE, is_valid, parse, resolve_timezone

load_dotenv()

logger = logging.getLogger(__name__)

ENV_DATA_DIR = 'CRONJOBS_DATA_DIR'
ENV_CONFIG_PATH = 'SCHEDULER_CONFIG_PATH'
ENV_MAX_WORKERS = 'SCHEDULER_MAX_WORKERS'
ENV_JOB_STORE_URL = 'SCHEDULER_JOB_STORE_URL'
ENV_HISTORY_FILE = 'SCHEDULER_HISTORY_FILE'
ENV_TIMEZONE = 'SCHEDULER_TIMEZONE'
ENV_GRACE_SECONDS = 'SCHEDULER_GRACE_SECONDS'
ENV_LOG_DIR = 'SCHEDULER_LOG_DIR'


def get_data_dir() -> Path:
    """Get the data directory for scheduler files."""
    data_dir = os.environ.get(ENV_DATA_DIR)
    if data_dir:
        return Path(data_dir).expanduser()
    return Path.home() / ".cronjobs"


def _get_default_log_file() -> str:
    """Get default log file path from environment or default."""
    if os.environ.get(ENV_LOG_DIR):
        return str(Path(os.environ[ENV_LOG_DIR]).expanduser() / "scheduler.log")
    return str(get_data_dir() / "logs" / "scheduler.log")


@dataclass
class JobConfig:
    """A job entry in the configuration file."""
    name: str
    job_type: str
    schedule: str  # cron expression
    timezone: str = DEFAULT_TIMEZONE
    params: Dict[str, str] = field(default_factory=dict)
    enabled: bool = True
    description: Optional[str] = None

    def to_definition(self) -> JobDefinition:
        return JobDefinition(
            name=self.name,
            job_type=self.job_type,
            schedule=self.schedule,
            timezone=self.timezone,
            params=self.params,
            description=self.description,
        )

    @classmethod
    def from_definition(cls, definition: JobDefinition, enabled: bool = True) -> 'JobConfig':
        return cls(
            name=definition.name,
            job_type=definition.job_type,
            schedule=definition.schedule,
            timezone=definition.timezone,
            params=dict(definition.params),
            enabled=enabled,
            description=definition.description,
        )


@dataclass
class EngineConfig:
    """Scheduler engine configuration."""
    max_workers: int = 5
    shutdown_grace_seconds: float = 30.0
    misfire_threshold_seconds: float = 1.0
    max_wait_seconds: float = 60.0
    default_timezone: str = DEFAULT_TIMEZONE
    job_store_url: Optional[str] = None  # None keeps jobs in memory only
    history_file: Optional[str] = None  # None disables run history
    history_max_entries: int = 1000


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None  # Set dynamically in __post_init__
    max_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    def __post_init__(self):
        if self.file is None:
            self.file = _get_default_log_file()


def setup_logging(config: Optional[LoggingConfig] = None, verbose: bool = False,
                  log_to_file: bool = True):
    """
    Setup logging configuration.

    Args:
        config: Logging settings (defaults to LoggingConfig())
        verbose: Force DEBUG level
        log_to_file: Also write to the configured rotating log file
    """
    config = config or LoggingConfig()
    level = logging.DEBUG if verbose else getattr(logging, config.level.upper(), logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.addHandler(console_handler)

    if log_to_file and config.file:
        log_path = Path(config.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        ))
        root_logger.addHandler(file_handler)


class SchedulerConfig:
    """
    Scheduler configuration manager.

    Loads and manages scheduler configuration from JSON file,
    with support for validation and defaults.

    Configuration path priority:
    1. Explicit config_path argument
    2. SCHEDULER_CONFIG_PATH environment variable
    3. Default: ~/.cronjobs/scheduler_config.json

    Environment variables (SCHEDULER_MAX_WORKERS, SCHEDULER_JOB_STORE_URL,
    SCHEDULER_HISTORY_FILE, SCHEDULER_TIMEZONE, SCHEDULER_GRACE_SECONDS)
    override the file's engine settings.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize scheduler configuration.

        Args:
            config_path: Path to configuration file. If None, uses env var or default.
        """
        if config_path:
            self.config_path = Path(config_path).expanduser()
        elif os.environ.get(ENV_CONFIG_PATH):
            self.config_path = Path(os.environ[ENV_CONFIG_PATH]).expanduser()
        else:
            self.config_path = get_data_dir() / "scheduler_config.json"

        self.jobs: List[JobConfig] = []
        self.engine: EngineConfig = EngineConfig()
        self.logging: LoggingConfig = LoggingConfig()

        if self.config_path.exists():
            self.load()
        else:
            logger.info(f"No config found at {self.config_path}, using defaults")

        self._apply_env_overrides()

    def load(self):
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                data = json.load(f)

            self.jobs = []
            for job_data in data.get('jobs', []):
                self.jobs.append(JobConfig(
                    name=job_data['name'],
                    job_type=job_data['job_type'],
                    schedule=job_data['schedule'],
                    timezone=job_data.get('timezone', DEFAULT_TIMEZONE),
                    params={str(k): str(v) for k, v in job_data.get('params', {}).items()},
                    enabled=job_data.get('enabled', True),
                    description=job_data.get('description')
                ))

            if 'engine' in data:
                self.engine = EngineConfig(**data['engine'])

            if 'logging' in data:
                self.logging = LoggingConfig(**data['logging'])

            logger.info(f"Loaded {len(self.jobs)} job(s) from {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to load config from {self.config_path}: {e}")
            raise

    def _apply_env_overrides(self):
        env = os.environ
        if env.get(ENV_MAX_WORKERS):
            self.engine.max_workers = int(env[ENV_MAX_WORKERS])
        if env.get(ENV_JOB_STORE_URL):
            self.engine.job_store_url = env[ENV_JOB_STORE_URL]
        if env.get(ENV_HISTORY_FILE):
            self.engine.history_file = env[ENV_HISTORY_FILE]
        if env.get(ENV_TIMEZONE):
            self.engine.default_timezone = env[ENV_TIMEZONE]
        if env.get(ENV_GRACE_SECONDS):
            self.engine.shutdown_grace_seconds = float(env[ENV_GRACE_SECONDS])

    def save(self):
        """Save configuration to JSON file."""
        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'engine': asdict(self.engine),
            'logging': asdict(self.logging),
            'jobs': [asdict(job) for job in self.jobs],
        }

        with open(self.config_path, 'w') as f:
            json.dump(data, f, indent=2)

        logger.info(f"Saved configuration to {self.config_path}")

    def _index(self, name: str) -> Optional[int]:
        for index, job in enumerate(self.jobs):
            if job.name == name:
                return index
        return None

    def _check_job(self, job: JobConfig):
        job.to_definition()
        parse(job.schedule, job.timezone)

    def add_job(self, job: Union[JobConfig, JobDefinition]):
        """
        Add a job entry. A JobDefinition is added as an enabled entry.

        Raises:
            DuplicateJobError: If an entry with the same name exists
            InvalidScheduleError: If the schedule or timezone does not parse
            ValueError: If the name is empty
        """
        if isinstance(job, JobDefinition):
            job = JobConfig.from_definition(job)
        if self._index(job.name) is not None:
            raise DuplicateJobError(job.name)
        self._check_job(job)
        self.jobs.append(job)
        logger.info(f"Added job to configuration: {job.name}")

    def remove_job(self, name: str) -> bool:
        """
        Remove a job entry.

        Returns:
            True if an entry was removed, False if there was none
        """
        index = self._index(name)
        if index is None:
            return False
        del self.jobs[index]
        logger.info(f"Removed job from configuration: {name}")
        return True

    def get_job(self, name: str) -> JobConfig:
        """
        Raises:
            NotFoundError: If no entry has this name
        """
        index = self._index(name)
        if index is None:
            raise NotFoundError(name)
        return self.jobs[index]

    def update_job(self, name: str, **changes) -> JobConfig:
        """
        Change fields of a job entry.

        The changed entry is checked like a new one before it replaces the
        old one, so a rejected update leaves the configuration as it was.

        Returns:
            The updated entry

        Raises:
            NotFoundError: If no entry has this name
            TypeError: If a change names a field JobConfig does not have
            DuplicateJobError: If a rename collides with another entry
            InvalidScheduleError: If the schedule or timezone does not parse
        """
        index = self._index(name)
        if index is None:
            raise NotFoundError(name)

        updated = replace(self.jobs[index], **changes)
        if updated.name != name and self._index(updated.name) is not None:
            raise DuplicateJobError(updated.name)
        self._check_job(updated)

        self.jobs[index] = updated
        logger.info(f"Updated job in configuration: {name} ({', '.join(sorted(changes))})")
        return updated

    def set_enabled(self, name: str, enabled: bool) -> JobConfig:
        return self.update_job(name, enabled=enabled)

    def definitions(self, enabled_only: bool = True) -> List[JobDefinition]:
        """Job definitions for the entries, by default only the enabled ones."""
        return [job.to_definition() for job in self.jobs if job.enabled or not enabled_only]

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if self.engine.max_workers < 1:
            errors.append("engine: 'max_workers' must be at least 1")
        if self.engine.shutdown_grace_seconds < 0:
            errors.append("engine: 'shutdown_grace_seconds' cannot be negative")
        if self.engine.max_wait_seconds <= 0:
            errors.append("engine: 'max_wait_seconds' must be positive")
        try:
            resolve_timezone(self.engine.default_timezone)
        except InvalidScheduleError as e:
            errors.append(f"engine: {e}")

        seen = set()
        for job in self.jobs:
            if job.name in seen:
                errors.append(f"Job {job.name}: duplicate name")
            seen.add(job.name)

            if not job.name or not job.name.strip():
                errors.append("Job entry with an empty 'name'")

            if not job.job_type or not job.job_type.strip():
                errors.append(f"Job {job.name}: 'job_type' cannot be empty")

            if not job.schedule or not is_valid(job.schedule, job.timezone):
                errors.append(
                    f"Job {job.name}: invalid schedule '{job.schedule}' ({job.timezone})"
                )

        return errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            'config_path': str(self.config_path),
            'engine': asdict(self.engine),
            'logging': asdict(self.logging),
            'jobs': [asdict(job) for job in self.jobs],
        }

    def __repr__(self):
        return f"SchedulerConfig(jobs={len(self.jobs)}, path={self.config_path})"
