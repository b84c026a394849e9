"""
Core scheduler service.

Provides the scheduling engine behind the job CRUD operations:
- One control thread computes due jobs and makes every dispatch decision
- A thread pool runs job firings concurrently
- Firings of the same job never overlap; a firing that comes due while the
  previous one is still running waits for it to finish
- Missed firings are skipped: a late job runs once, then resumes its schedule
- Execution failures are logged and never affect future scheduling
- Shutdown waits for running firings up to a grace period

Usage:

    job_types = JobTypeRegistry()
    job_types.register_function('hello', lambda params: print(params['who']))

    with SchedulerService(job_types=job_types) as service:
        service.register_job('greeter', 'hello', '0 */5 * * * ?',
                             timezone='Europe/Amsterdam', params={'who': 'world'})
        ...
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as futures_wait
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from cronjobs.config import SchedulerConfig
from cronjobs.errors import SchedulerError
from cronjobs.events import (
    EVENT_ALL,
    EVENT_JOB_ABANDONED,
    EVENT_JOB_ADDED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_EXPIRED,
    EVENT_JOB_MISSED,
    EVENT_JOB_REMOVED,
    EVENT_JOB_SUBMITTED,
    EVENT_SCHEDULER_SHUTDOWN,
    EVENT_SCHEDULER_STARTED,
    JobEvent,
)
from cronjobs.history import RunHistory
from cronjobs.jobs import JobTypeRegistry
from cronjobs.models import JobDefinition, JobRecord, JobState
from cronjobs.params import ParameterBag, to_bag
from cronjobs.registry import JobRegistry, utcnow
from cronjobs.store import JobStore, SQLAlchemyJobStore

logger = logging.getLogger(__name__)

Listener = Callable[[JobEvent], Any]


class SchedulerService:
    """
    Scheduler engine and job management API.

    Construct one explicitly and pass it to whatever needs to manage jobs;
    there is no module-level scheduler instance.
    """

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        job_types: Optional[JobTypeRegistry] = None,
        store: Optional[JobStore] = None,
        max_workers: Optional[int] = None,
        grace_period: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize scheduler service.

        Args:
            config: Scheduler configuration (loaded from the default path if None)
            job_types: Job type registry (a registry with the built-in types if None)
            store: Job definition store; defaults to SQLAlchemyJobStore when
                the config names a job_store_url, else in-memory only. Its
                definitions are registered immediately.
            max_workers: Maximum number of concurrent job executions
            grace_period: Seconds shutdown waits for running jobs
            clock: Returns the current aware datetime (for tests)
        """
        self.config = config or SchedulerConfig()
        engine_config = self.config.engine

        self.max_workers = max_workers or engine_config.max_workers
        self.grace_period = engine_config.shutdown_grace_seconds if grace_period is None else grace_period
        self.misfire_threshold = engine_config.misfire_threshold_seconds
        self.max_wait = engine_config.max_wait_seconds
        self.default_timezone = engine_config.default_timezone
        self.job_types = job_types or JobTypeRegistry()
        self._clock = clock or utcnow

        if store is None and engine_config.job_store_url:
            store = SQLAlchemyJobStore(url=engine_config.job_store_url)
        self.registry = JobRegistry(store=store, clock=self._clock)

        self._executor: Optional[ThreadPoolExecutor] = None
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._wakeup = threading.Event()
        self._futures: Dict[Future, Tuple[str, str, datetime]] = {}
        self._futures_lock = threading.Lock()
        self._listeners: List[Tuple[Listener, int]] = []
        self._listeners_lock = threading.Lock()

        self.history: Optional[RunHistory] = None
        if engine_config.history_file:
            self.history = RunHistory(
                engine_config.history_file,
                max_entries=engine_config.history_max_entries
            )
            self.add_listener(self.history, RunHistory.EVENTS)

        # Registry and store agree from construction on
        self.registry.load(validate=self._check_job_type)

        logger.info(
            f"Scheduler initialized (workers={self.max_workers}, "
            f"store={self.registry.store!r})"
        )

    # ------------------------------------------------------------------
    # Events

    def add_listener(self, callback: Listener, mask: int = EVENT_ALL):
        """
        Register a callback for scheduler events.

        Args:
            callback: Called with a JobEvent. Exceptions it raises are logged.
            mask: Bitwise OR of the EVENT_* codes to receive
        """
        with self._listeners_lock:
            self._listeners.append((callback, mask))

    def remove_listener(self, callback: Listener):
        with self._listeners_lock:
            self._listeners = [(cb, mask) for cb, mask in self._listeners if cb is not callback]

    def _dispatch_event(self, event: JobEvent):
        with self._listeners_lock:
            listeners = list(self._listeners)
        for callback, mask in listeners:
            if event.code & mask:
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Error notifying listener {callback!r}")

    # ------------------------------------------------------------------
    # Job management

    def _check_job_type(self, definition: JobDefinition):
        self.job_types.resolve(definition.job_type)

    def register_job(
        self,
        name: str,
        job_type: str,
        schedule: str,
        timezone: Optional[str] = None,
        params: Optional[Mapping[str, str]] = None,
        description: Optional[str] = None,
    ) -> JobDefinition:
        """
        Register a cron job.

        Args:
            name: Unique job name
            job_type: Registered job type identifier
            schedule: Cron expression
            timezone: Timezone the schedule is evaluated in (config default if None)
            params: String parameters passed to every firing
            description: Human-readable description

        Returns:
            The registered JobDefinition

        Raises:
            DuplicateJobError: If the name is taken
            InvalidScheduleError: If the schedule or timezone is invalid
            UnknownJobTypeError: If job_type is not registered
            TypeError: If a parameter key or value is not a string
        """
        definition = JobDefinition(
            name=name,
            job_type=job_type,
            schedule=schedule,
            timezone=timezone or self.default_timezone,
            params=dict(params or {}),
            description=description,
        )
        return self.schedule_job(definition)

    def schedule_job(self, definition: JobDefinition) -> JobDefinition:
        """Register a job from a filled-in JobDefinition. See register_job."""
        self._check_job_type(definition)
        to_bag(definition.params)  # rejects non-string keys and values

        record = self.registry.add(definition)
        self._dispatch_event(JobEvent(EVENT_JOB_ADDED, definition.name, record.next_fire_time))
        if record.state is JobState.EXPIRED:
            self._dispatch_event(JobEvent(EVENT_JOB_EXPIRED, definition.name))
        self._wakeup.set()
        return definition

    def get_job(self, name: str) -> JobDefinition:
        """
        Get a registered job.

        Raises:
            NotFoundError: If the job does not exist
        """
        return self.registry.get(name)

    def list_jobs(self) -> List[JobDefinition]:
        """Snapshot of all registered jobs."""
        return self.registry.list_all()

    def delete_job(self, name: str) -> bool:
        """
        Delete a job. Deleting an unknown job is a no-op.

        A firing that is already running completes normally.

        Returns:
            True if removed, False if not found
        """
        removed = self.registry.delete(name)
        if removed:
            self._dispatch_event(JobEvent(EVENT_JOB_REMOVED, name))
            self._wakeup.set()
        return removed

    def delete_all_jobs(self) -> int:
        """
        Delete every job.

        Returns:
            Number of jobs removed
        """
        names = self.registry.delete_all()
        for name in names:
            self._dispatch_event(JobEvent(EVENT_JOB_REMOVED, name))
        self._wakeup.set()
        return len(names)

    def trigger_job(self, name: str) -> bool:
        """
        Fire a job once as soon as possible, outside its schedule.

        If the job is running, the extra firing starts when it finishes.
        The regular schedule is unaffected.

        Returns:
            True if a firing was queued, False if the job has expired

        Raises:
            NotFoundError: If the job does not exist
        """
        with self.registry.lock:
            record = self.registry.get_record(name)
            if not record.dispatchable:
                logger.warning(f"Job '{name}' is {record.state.value}; not triggering")
                return False
            record.deferred = True
        logger.info(f"Job '{name}' triggered manually")
        self._wakeup.set()
        return True

    def next_fire_time(self, name: str) -> Optional[datetime]:
        """Next scheduled fire time of a job, or None if it has none."""
        return self.registry.get_record(name).next_fire_time

    def get_job_info(self, name: str) -> Dict[str, Any]:
        """
        Get runtime information about a specific job.

        Raises:
            NotFoundError: If the job does not exist
        """
        with self.registry.lock:
            return self.registry.get_record(name).to_info()

    def get_jobs(self) -> List[Dict[str, Any]]:
        """Runtime information for every job."""
        with self.registry.lock:
            return [record.to_info() for record in self.registry.records()]

    def get_run_history(self, job_name: Optional[str] = None, status: Optional[str] = None,
                        limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Recorded runs, latest first. Empty when no history file is configured.

        Args:
            job_name: Only runs of this job
            status: Only runs with this outcome ('running', 'success',
                'failed', 'abandoned')
            limit: Maximum number of runs to return
        """
        if self.history is None:
            return []
        return self.history.runs(job_name=job_name, status=status, limit=limit)

    def load_jobs_from_config(self) -> int:
        """
        Register the enabled jobs from the configuration file.

        Jobs that are already registered (for example loaded from a
        persistent store) are left as they are.

        Returns:
            Number of jobs registered

        Raises:
            ValueError: If the configuration does not validate
        """
        errors = self.config.validate()
        if errors:
            logger.error("Configuration validation failed:")
            for error in errors:
                logger.error(f"  - {error}")
            raise ValueError("Invalid configuration")

        definitions = self.config.definitions()
        logger.info(f"Loading {len(definitions)} enabled job(s) from configuration")

        registered = 0
        for definition in definitions:
            if definition.name in self.registry:
                logger.info(f"Job '{definition.name}' already registered, keeping existing")
                continue
            try:
                self.schedule_job(definition)
                registered += 1
            except (SchedulerError, ValueError, TypeError) as e:
                logger.error(f"Failed to load job '{definition.name}': {e}")
        return registered

    # ------------------------------------------------------------------
    # Lifecycle

    @property
    def running(self) -> bool:
        return self._running

    def start(self):
        """Start the scheduler. Enabled jobs from the configuration are registered first."""
        if self._running:
            logger.warning("Scheduler is already running")
            return

        logger.info("Starting scheduler...")
        self.load_jobs_from_config()

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers,
            thread_name_prefix='cronjobs-worker'
        )
        self._running = True
        self._wakeup.clear()
        self._thread = threading.Thread(target=self._run_loop, name='cronjobs-scheduler', daemon=True)
        self._thread.start()

        logger.info("Scheduler started successfully")
        self._dispatch_event(JobEvent(EVENT_SCHEDULER_STARTED))

        jobs = self.get_jobs()
        if jobs:
            logger.info(f"Loaded {len(jobs)} job(s):")
            for job in jobs:
                logger.info(f"  - {job['id']}: next run at {job['next_run']}")
        else:
            logger.info("No jobs loaded")

    def shutdown(self, wait: bool = True, grace_period: Optional[float] = None) -> List[str]:
        """
        Stop the scheduler.

        No new firings are dispatched. Running firings get up to the grace
        period to finish; any still running afterwards are abandoned (left
        to finish on their own) and reported as warnings.

        Args:
            wait: Wait for running firings; if False every firing still
                running is abandoned at once
            grace_period: Seconds to wait for running jobs (config default if None)

        Returns:
            Names of jobs whose firings were abandoned
        """
        if not self._running:
            logger.warning("Scheduler is not running")
            return []

        logger.info("Stopping scheduler...")
        self._running = False
        self._wakeup.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._thread = None

        grace = self.grace_period if grace_period is None else grace_period
        with self._futures_lock:
            in_flight = dict(self._futures)

        not_done = {future for future in in_flight if not future.done()}
        if not_done and wait:
            logger.info(f"Waiting up to {grace}s for {len(not_done)} running job(s)")
            _, not_done = futures_wait(not_done, timeout=grace)

        self._executor.shutdown(wait=False)
        self._executor = None

        abandoned = sorted(in_flight[future] for future in not_done)
        for name, run_id, scheduled_time in abandoned:
            if wait:
                logger.warning(f"Job '{name}' still running after {grace}s grace period; abandoning it")
            else:
                logger.warning(f"Job '{name}' still running at shutdown; abandoning it")
            self._dispatch_event(JobEvent(EVENT_JOB_ABANDONED, name, scheduled_time, run_id))

        logger.info("Scheduler stopped")
        self._dispatch_event(JobEvent(EVENT_SCHEDULER_SHUTDOWN))
        return [name for name, _, _ in abandoned]

    def close(self):
        """Shut down if running and release the job store."""
        if self._running:
            self.shutdown()
        self.registry.store.close()

    def __enter__(self) -> 'SchedulerService':
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.shutdown()

    # ------------------------------------------------------------------
    # Engine

    def _run_loop(self):
        logger.debug("Scheduler loop started")
        while self._running:
            self._wakeup.clear()
            try:
                wait_seconds = self._process_jobs()
            except Exception:
                logger.exception("Error processing jobs")
                wait_seconds = self.max_wait
            if not self._running:
                break
            self._wakeup.wait(wait_seconds)
        logger.debug("Scheduler loop stopped")

    def _process_jobs(self) -> float:
        """
        Dispatch every due job.

        Returns:
            Seconds until the next job is due (capped by max_wait)
        """
        now = self._clock()
        events: List[JobEvent] = []
        next_wakeup: Optional[datetime] = None

        with self.registry.lock:
            for record in self.registry.records():
                if not record.dispatchable:
                    continue
                try:
                    if record.is_due(now):
                        if record.executing:
                            self._defer(record, now)
                        else:
                            events.extend(self._dispatch(record, now))
                except Exception:
                    # One broken record must not stop the others
                    logger.exception(f"Failed to dispatch job '{record.name}'")
                    continue

                if record.next_fire_time is not None and \
                        (next_wakeup is None or record.next_fire_time < next_wakeup):
                    next_wakeup = record.next_fire_time

        for event in events:
            self._dispatch_event(event)

        if next_wakeup is None:
            return self.max_wait
        remaining = (next_wakeup - self._clock()).total_seconds()
        return min(self.max_wait, max(0.0, remaining))

    def _defer(self, record: JobRecord, now: datetime):
        """Hold a due firing until the running one finishes."""
        if not record.deferred:
            logger.info(f"Job '{record.name}' is still running; next firing deferred until it completes")
            record.deferred = True
        # Collapse the missed fire time into the deferred firing
        if record.next_fire_time is not None and record.next_fire_time <= now:
            record.next_fire_time = record.schedule.next_fire_time(now)

    def _dispatch(self, record: JobRecord, now: datetime) -> List[JobEvent]:
        """Submit one firing. Called with the registry lock held."""
        events = []
        name = record.name
        if record.next_fire_time is not None and record.next_fire_time <= now:
            scheduled_time = record.next_fire_time
        else:
            scheduled_time = now

        run_id = uuid.uuid4().hex[:8]
        lateness = (now - scheduled_time).total_seconds()
        if lateness > self.misfire_threshold:
            logger.warning(
                f"Job '{name}' missed scheduled run time {scheduled_time.isoformat()} "
                f"by {lateness:.1f}s; running once now"
            )
            events.append(JobEvent(EVENT_JOB_MISSED, name, scheduled_time, run_id))

        params = to_bag(record.definition.params)

        record.executing = True
        record.deferred = False
        record.state = JobState.FIRING
        record.last_fire_time = now
        record.fire_count += 1
        record.next_fire_time = record.schedule.next_fire_time(now)

        future = self._executor.submit(self._run_job, record, params, scheduled_time, run_id)
        with self._futures_lock:
            self._futures[future] = (name, run_id, scheduled_time)
        future.add_done_callback(self._forget_future)

        events.append(JobEvent(EVENT_JOB_SUBMITTED, name, scheduled_time, run_id))
        return events

    def _forget_future(self, future: Future):
        with self._futures_lock:
            self._futures.pop(future, None)

    def _run_job(self, record: JobRecord, params: ParameterBag,
                 scheduled_time: datetime, run_id: str):
        """Execute one firing on a worker thread."""
        name = record.name
        log_prefix = f"[{name}:{run_id}]"
        started = time.monotonic()
        logger.info(f"{log_prefix} Starting job run")

        error: Optional[Exception] = None
        try:
            job = self.job_types.create(record.definition.job_type)
            job.execute(params)
        except Exception as e:
            error = e
            logger.error(f"{log_prefix} Job raised exception: {e}", exc_info=True)
        finally:
            duration = time.monotonic() - started
            expired = self._finish(record)

        if error is None:
            logger.info(f"{log_prefix} Completed successfully in {duration:.2f}s")

        code = EVENT_JOB_EXECUTED if error is None else EVENT_JOB_ERROR
        self._dispatch_event(JobEvent(code, name, scheduled_time, run_id, error, duration))
        if expired:
            self._dispatch_event(JobEvent(EVENT_JOB_EXPIRED, name))

    def _finish(self, record: JobRecord) -> bool:
        """
        Mark a firing complete.

        Returns:
            True if the job has now expired
        """
        expired = False
        with self.registry.lock:
            record.executing = False
            if record.state is JobState.FIRING:
                if record.next_fire_time is None and not record.deferred:
                    record.state = JobState.EXPIRED
                    expired = True
                    logger.info(f"Job '{record.name}' has no further fire times")
                else:
                    record.state = JobState.SCHEDULED
        self._wakeup.set()
        return expired

    def __repr__(self):
        state = 'running' if self._running else 'stopped'
        return f"SchedulerService({state}, jobs={len(self.registry)})"
