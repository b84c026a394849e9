"""
Job types and execution.

A job type is a zero-argument factory returning a Job. The scheduler
resolves the job type identifier when a job is registered and creates a
fresh Job instance for every firing, handing it that firing's own
ParameterBag.

The built-in 'command' job type runs a shell command taken from the job's
parameters, with timeout handling and output logging.
"""

import logging
import os
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from cronjobs.errors import ExecutionError, UnknownJobTypeError
from cronjobs.params import ParameterBag

logger = logging.getLogger(__name__)

JobFactory = Callable[[], 'Job']

DEFAULT_COMMAND_TIMEOUT = 3600


class Job(ABC):
    """A unit of work executed each time a scheduled job fires."""

    @abstractmethod
    def execute(self, params: ParameterBag) -> None:
        """
        Run the job.

        Args:
            params: This firing's parameters. The bag belongs to this call
                alone and may be modified freely.

        Raises:
            Exception: Any failure. The scheduler logs it and keeps the job
                scheduled.
        """


class FunctionJob(Job):
    """Adapts a plain function taking a ParameterBag to the Job interface."""

    def __init__(self, func: Callable[[ParameterBag], Any]):
        self.func = func

    def execute(self, params: ParameterBag) -> None:
        self.func(params)

    def __repr__(self):
        return f"FunctionJob({getattr(self.func, '__name__', self.func)!r})"


class CommandJob(Job):
    """
    Runs a shell command.

    Parameters:
        command: Shell command to execute (required)
        timeout: Timeout in seconds (default: 1 hour)
        working_dir: Working directory for the command
        env.<NAME>: Extra environment variables

    Output lines are logged as they are produced.
    """

    def __init__(self, job_name: Optional[str] = None):
        self.job_name = job_name

    def execute(self, params: ParameterBag) -> None:
        command = params.get('command')
        if not command or not command.strip():
            raise ExecutionError("Command job requires a 'command' parameter")

        extra_env = {
            key[len('env.'):]: value
            for key, value in params.items()
            if key.startswith('env.')
        }
        self.execute_command(
            command,
            timeout=params.get_int('timeout', DEFAULT_COMMAND_TIMEOUT),
            working_dir=params.get('working_dir'),
            env=extra_env or None,
            job_name=params.get('job_name', self.job_name),
        )

    def execute_command(
        self,
        command: str,
        timeout: Optional[int] = DEFAULT_COMMAND_TIMEOUT,
        working_dir: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        job_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Timeout in seconds
            working_dir: Working directory for command execution
            env: Additional environment variables
            job_name: Name of the job (for logging)

        Returns:
            Dict with stdout, stderr, returncode

        Raises:
            ExecutionError: If the command fails, times out or cannot start
        """
        log_prefix = f"[{job_name}] " if job_name else ""
        logger.info(f"{log_prefix}Executing command: {command}")

        process_env = None
        if env:
            process_env = dict(os.environ)
            process_env.update(env)

        try:
            process = subprocess.Popen(
                command,
                shell=True,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=working_dir,
                env=process_env
            )
        except OSError as e:
            raise ExecutionError(f"Command could not be started: {e}") from e

        stdout_lines: List[str] = []
        stderr_lines: List[str] = []

        def read_stream(stream, output_list):
            for line in stream:
                line = line.rstrip('\n')
                output_list.append(line)
                logger.info(f"{log_prefix}{line}")

        # Drain both pipes concurrently so neither can fill up and block
        stdout_thread = threading.Thread(target=read_stream, args=(process.stdout, stdout_lines))
        stderr_thread = threading.Thread(target=read_stream, args=(process.stderr, stderr_lines))
        stdout_thread.start()
        stderr_thread.start()

        try:
            process.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            process.kill()
            process.wait()
            stdout_thread.join()
            stderr_thread.join()
            logger.error(f"{log_prefix}Command timed out after {timeout}s: {command}")
            raise ExecutionError(f"Command timed out after {timeout}s") from e

        stdout_thread.join()
        stderr_thread.join()

        stdout = '\n'.join(stdout_lines)
        stderr = '\n'.join(stderr_lines)

        if process.returncode != 0:
            raise ExecutionError(
                f"Command failed with exit code {process.returncode}: {stderr}"
            )

        return {
            'stdout': stdout,
            'stderr': stderr,
            'returncode': process.returncode
        }


class JobTypeRegistry:
    """
    Maps job type identifiers to job factories.

    Populate it at startup:

        job_types = JobTypeRegistry()
        job_types.register('report', ReportJob)

        @job_types.job_type('cleanup')
        def cleanup(params):
            ...
    """

    def __init__(self, include_builtins: bool = True):
        self._factories: Dict[str, JobFactory] = {}
        self._lock = threading.Lock()
        if include_builtins:
            self.register('command', CommandJob)

    def register(self, type_id: str, factory: JobFactory, replace: bool = False):
        """
        Register a job factory.

        Args:
            type_id: Identifier used in job definitions
            factory: Zero-argument callable returning a Job
            replace: Allow replacing an existing registration

        Raises:
            ValueError: If type_id is already registered and replace is False
        """
        if not type_id or not type_id.strip():
            raise ValueError("Job type identifier cannot be empty")
        if not callable(factory):
            raise TypeError(f"Factory for job type '{type_id}' is not callable")
        with self._lock:
            if type_id in self._factories and not replace:
                raise ValueError(f"Job type '{type_id}' is already registered")
            self._factories[type_id] = factory
        logger.debug(f"Registered job type '{type_id}'")

    def register_function(self, type_id: str, func: Callable[[ParameterBag], Any],
                          replace: bool = False):
        """Register a plain function taking a ParameterBag as a job type."""
        self.register(type_id, lambda: FunctionJob(func), replace=replace)

    def job_type(self, type_id: str):
        """Decorator form of register_function."""
        def decorator(func):
            self.register_function(type_id, func)
            return func
        return decorator

    def unregister(self, type_id: str) -> bool:
        with self._lock:
            return self._factories.pop(type_id, None) is not None

    def resolve(self, type_id: str) -> JobFactory:
        """
        Look up the factory for a job type.

        Raises:
            UnknownJobTypeError: If the type is not registered
        """
        factory = self._factories.get(type_id)
        if factory is None:
            raise UnknownJobTypeError(type_id)
        return factory

    def create(self, type_id: str) -> Job:
        """Create a new Job instance of the given type."""
        job = self.resolve(type_id)()
        if not isinstance(job, Job):
            raise ExecutionError(
                f"Factory for job type '{type_id}' returned {type(job).__name__}, not a Job"
            )
        return job

    def __contains__(self, type_id: str) -> bool:
        return type_id in self._factories

    def types(self) -> List[str]:
        return sorted(self._factories)

