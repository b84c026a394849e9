"""
Job definition persistence.

The registry writes every add/delete through to a store so jobs survive a
restart. MemoryJobStore keeps nothing beyond the process; SQLAlchemyJobStore
keeps definitions in a database table (SQLite by default):

    store = SQLAlchemyJobStore(url='sqlite:///scheduler_jobs.db')
"""

import json
import logging
import threading
from datetime import datetime
from typing import Dict, List

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    insert,
    select,
)
from sqlalchemy.exc import IntegrityError

from cronjobs.errors import DuplicateJobError
from cronjobs.models import JobDefinition

logger = logging.getLogger(__name__)

DEFAULT_TABLE_NAME = "cronjobs_jobs"


class JobStore:
    """Interface for job definition persistence."""

    def load_all(self) -> List[JobDefinition]:
        raise NotImplementedError

    def add(self, definition: JobDefinition, replace: bool = False):
        """
        Persist a definition.

        Args:
            definition: Definition to store
            replace: Overwrite a stored definition with the same name

        Raises:
            DuplicateJobError: If the name is stored and replace is False
        """
        raise NotImplementedError

    def remove(self, name: str) -> bool:
        """Remove a definition. Returns True if one was stored."""
        raise NotImplementedError

    def remove_all(self):
        raise NotImplementedError

    def close(self):
        pass


class MemoryJobStore(JobStore):
    """Keeps definitions in a dict; nothing survives the process."""

    def __init__(self):
        self._jobs: Dict[str, JobDefinition] = {}
        self._lock = threading.Lock()

    def load_all(self) -> List[JobDefinition]:
        with self._lock:
            return list(self._jobs.values())

    def add(self, definition: JobDefinition, replace: bool = False):
        with self._lock:
            if definition.name in self._jobs and not replace:
                raise DuplicateJobError(definition.name)
            self._jobs[definition.name] = definition

    def remove(self, name: str) -> bool:
        with self._lock:
            return self._jobs.pop(name, None) is not None

    def remove_all(self):
        with self._lock:
            self._jobs.clear()

    def __repr__(self):
        return f"MemoryJobStore(jobs={len(self._jobs)})"


class SQLAlchemyJobStore(JobStore):
    """
    Persists job definitions to a database table with SQLAlchemy Core.

    Only definitions are stored. Runtime state (next fire time, last fire
    time) is recomputed when jobs are loaded, so missed firings during
    downtime collapse into at most one immediate firing. Names are the
    primary key; inserting a stored name raises DuplicateJobError.
    """

    def __init__(self, url: str = 'sqlite:///scheduler_jobs.db',
                 table_name: str = DEFAULT_TABLE_NAME, engine=None):
        """
        Initialize the store and create its table if missing.

        Args:
            url: SQLAlchemy database URL (ignored when engine is given)
            table_name: Name of the table holding job definitions
            engine: Existing SQLAlchemy engine to reuse
        """
        self.engine = engine or create_engine(url)
        self.metadata = MetaData()
        self.table = Table(
            table_name,
            self.metadata,
            Column('name', String(191), primary_key=True),
            Column('job_type', String(191), nullable=False),
            Column('schedule', String(255), nullable=False),
            Column('timezone', String(64), nullable=False),
            Column('params', Text, nullable=False),
            Column('description', Text),
            Column('created_at', DateTime, nullable=False),
        )
        self.metadata.create_all(self.engine)
        logger.info(f"Job store initialized: {self.engine.url.render_as_string(hide_password=True)}")

    def load_all(self) -> List[JobDefinition]:
        definitions = []
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(self.table).order_by(self.table.c.created_at, self.table.c.name)
            )
            for row in rows:
                try:
                    definitions.append(JobDefinition(
                        name=row.name,
                        job_type=row.job_type,
                        schedule=row.schedule,
                        timezone=row.timezone,
                        params=json.loads(row.params),
                        description=row.description,
                    ))
                except (ValueError, TypeError) as e:
                    logger.error(f"Skipping unreadable job '{row.name}' in store: {e}")
        return definitions

    def add(self, definition: JobDefinition, replace: bool = False):
        try:
            with self.engine.begin() as conn:
                if replace:
                    conn.execute(delete(self.table).where(self.table.c.name == definition.name))
                conn.execute(insert(self.table).values(
                    name=definition.name,
                    job_type=definition.job_type,
                    schedule=definition.schedule,
                    timezone=definition.timezone,
                    params=json.dumps(definition.params, sort_keys=True),
                    description=definition.description,
                    created_at=datetime.now(),
                ))
        except IntegrityError as e:
            raise DuplicateJobError(definition.name) from e

    def remove(self, name: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(self.table).where(self.table.c.name == name))
        return result.rowcount > 0

    def remove_all(self):
        with self.engine.begin() as conn:
            conn.execute(delete(self.table))

    def close(self):
        self.engine.dispose()

    def __repr__(self):
        return f"SQLAlchemyJobStore(url={self.engine.url})"
