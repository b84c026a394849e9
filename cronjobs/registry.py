"""
Job registry: the single owner of every JobRecord.

Mutations (add, delete, delete_all) are serialised by one re-entrant lock,
which the engine also holds while it makes dispatch decisions. The name ->
record mapping is copy-on-write: writers build a new dict and swap the
reference, so readers take a consistent snapshot without locking.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, List, Mapping, Optional, Set

from cronjobs.errors import DuplicateJobError, NotFoundError, SchedulerError
from cronjobs.models import JobDefinition, JobRecord, JobState
from cronjobs.schedule import parse
from cronjobs.store import JobStore, MemoryJobStore

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobRegistry:
    """In-memory job registry with optional write-through persistence."""

    def __init__(self, store: Optional[JobStore] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize registry.

        Args:
            store: Persistence for definitions (defaults to MemoryJobStore)
            clock: Returns the current aware datetime; used for initial
                next fire times
        """
        self.lock = threading.RLock()
        self.store = store or MemoryJobStore()
        self._clock = clock or utcnow
        self._records: Mapping[str, JobRecord] = {}
        # Stored names whose definitions failed to load
        self._unloaded: Set[str] = set()

    def _insert(self, definition: JobDefinition, persist: bool) -> JobRecord:
        # Parsing happens before taking the lock; a bad schedule never
        # touches registry state.
        schedule = parse(definition.schedule, definition.timezone)

        with self.lock:
            if definition.name in self._records:
                raise DuplicateJobError(definition.name)

            record = JobRecord(definition=definition, schedule=schedule)
            record.next_fire_time = schedule.next_fire_time(self._clock())
            if record.next_fire_time is None:
                record.state = JobState.EXPIRED
                logger.warning(f"Job '{definition.name}' has no future fire time ({schedule})")

            if persist:
                stale = definition.name in self._unloaded
                if stale:
                    logger.warning(f"Replacing persisted definition of '{definition.name}' that could not be loaded")
                self.store.add(definition, replace=stale)
                self._unloaded.discard(definition.name)

            records = dict(self._records)
            records[definition.name] = record
            self._records = records

        logger.info(
            f"Registered job '{definition.name}' ({definition.job_type}), "
            f"next run at {record.next_fire_time}"
        )
        return record

    def add(self, definition: JobDefinition) -> JobRecord:
        """
        Register a job and compute its first fire time.

        Raises:
            DuplicateJobError: If a job with the same name exists, here or in
                the store
            InvalidScheduleError: If the schedule or timezone is invalid
        """
        return self._insert(definition, persist=True)

    def load(self, validate: Optional[Callable[[JobDefinition], None]] = None) -> int:
        """
        Register every definition held by the store.

        Definitions already registered are skipped. Definitions that fail
        validation or no longer parse are logged and skipped; they stay in
        the store until deleted or replaced by a new registration.

        Args:
            validate: Called with each definition; raises to reject it

        Returns:
            Number of jobs loaded
        """
        loaded = 0
        for definition in self.store.load_all():
            if definition.name in self._records:
                logger.debug(f"Job '{definition.name}' already registered, not reloading")
                continue
            try:
                if validate is not None:
                    validate(definition)
                self._insert(definition, persist=False)
                loaded += 1
            except (SchedulerError, ValueError) as e:
                logger.error(f"Failed to load persisted job '{definition.name}': {e}")
                with self.lock:
                    self._unloaded.add(definition.name)
        if loaded:
            logger.info(f"Loaded {loaded} job(s) from {self.store!r}")
        return loaded

    def get(self, name: str) -> JobDefinition:
        """
        Get a job definition by name.

        Raises:
            NotFoundError: If no job has this name
        """
        return self.get_record(name).definition

    def get_record(self, name: str) -> JobRecord:
        record = self._records.get(name)
        if record is None:
            raise NotFoundError(name)
        return record

    def list_all(self) -> List[JobDefinition]:
        """Snapshot of all registered definitions."""
        return [record.definition for record in self._records.values()]

    def records(self) -> List[JobRecord]:
        """Snapshot of all records (runtime fields may change afterwards)."""
        return list(self._records.values())

    def delete(self, name: str) -> bool:
        """
        Remove a job. Deleting an unknown name is a no-op.

        A firing already running is not interrupted; the job simply never
        fires again.

        A stored definition that failed to load is removed from the store.

        Returns:
            True if a job was removed, False if it was not registered
        """
        with self.lock:
            record = self._records.get(name)
            if record is None:
                removed = self.store.remove(name)
                self._unloaded.discard(name)
                if removed:
                    logger.info(f"Removed unloaded persisted job '{name}'")
                return removed
            self.store.remove(name)
            record.state = JobState.CANCELLED
            record.next_fire_time = None
            record.deferred = False
            records = dict(self._records)
            del records[name]
            self._records = records

        logger.info(f"Removed job '{name}'")
        return True

    def delete_all(self) -> List[str]:
        """
        Remove every job in one step.

        Returns:
            Names of the removed jobs, including stored definitions that
            failed to load
        """
        with self.lock:
            removed = self._records
            unloaded = sorted(self._unloaded)
            self.store.remove_all()
            self._records = {}
            self._unloaded = set()
            for record in removed.values():
                record.state = JobState.CANCELLED
                record.next_fire_time = None
                record.deferred = False

        names = list(removed) + unloaded
        logger.info(f"Removed all jobs ({len(names)})")
        return names

    def __len__(self):
        return len(self._records)

    def __contains__(self, name: str) -> bool:
        return name in self._records

    def __repr__(self):
        return f"JobRegistry(jobs={len(self._records)}, store={self.store!r})"
