"""
Exceptions raised by the scheduler.

Registration-time errors surface synchronously to the caller. Execution
errors are caught by the engine and never propagate past it.
"""


class SchedulerError(Exception):
    """Base class for scheduler errors."""
    pass


class InvalidScheduleError(SchedulerError, ValueError):
    """Raised when a cron expression or timezone cannot be parsed."""
    pass


class DuplicateJobError(SchedulerError):
    """Raised when a job with the same name is already registered."""

    def __init__(self, name: str):
        super().__init__(f"Job '{name}' already exists")
        self.name = name


class NotFoundError(SchedulerError, LookupError):
    """Raised when a job name is not registered."""

    def __init__(self, name: str):
        super().__init__(f"Job '{name}' not found")
        self.name = name


class UnknownJobTypeError(SchedulerError, LookupError):
    """Raised when a job type identifier has no registered factory."""

    def __init__(self, job_type: str):
        super().__init__(f"Unknown job type '{job_type}'")
        self.job_type = job_type


class ExecutionError(SchedulerError):
    """Raised when job execution fails."""
    pass
