# fleet_event_sync/queue.py
"""
Job queue seam between the ingestion core and whatever consumes its jobs.

The core only ever needs two things from a queue: to enqueue a job (most
notably the reference-data refresh) and to read per-status counts for
monitoring. `JobQueue` captures exactly that. Two implementations ship:

- SqlJobQueue: rows in the queued_jobs table, one logical queue per name.
  The owning consumer moves jobs through waiting -> active -> completed|failed.
- InMemoryJobQueue: process-local, for tests and embedding.

A job enqueued with a dedupe_key is dropped (enqueue returns False) while
another job with the same key is still waiting or active, so repeated
triggers collapse into one pending request.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from fleet_event_sync.storage import session_scope
from fleet_event_sync.storage.tables import QueuedJob, utc_now

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'InMemoryJobQueue',
    'JobQueue',
    'JobState',
    'QueueCounts',
    'QueuedJobSnapshot',
    'SqlJobQueue',
]


class JobState(str, Enum):
    WAITING = 'waiting'
    ACTIVE = 'active'
    COMPLETED = 'completed'
    FAILED = 'failed'


_PENDING_STATES: tuple[str, ...] = (JobState.WAITING.value, JobState.ACTIVE.value)


class QueueCounts(BaseModel):
    """Per-status job counts for one queue."""

    model_config = ConfigDict(frozen=True)

    active: int = 0
    waiting: int = 0
    completed: int = 0
    failed: int = 0


class QueuedJobSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    queue_name: str
    job_name: str
    payload: dict[str, Any]
    dedupe_key: str | None = None
    status: JobState
    remove_on_complete: bool = False
    error_message: str | None = None
    created_at: datetime


class JobQueue(Protocol):
    @property
    def name(self) -> str: ...

    def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        dedupe_key: str | None = None,
        remove_on_complete: bool = False,
    ) -> bool: ...

    def counts(self) -> QueueCounts: ...


# =============================================================================
# SQL-backed queue
# =============================================================================


class SqlJobQueue:
    """
    One named queue stored in queued_jobs.

    Example:
        >>> reference_queue = SqlJobQueue(session_factory, 'master-data-sync')
        >>> reference_queue.enqueue('sync-all-reference-data', {}, dedupe_key='x')
        True
        >>> reference_queue.enqueue('sync-all-reference-data', {}, dedupe_key='x')
        False
    """

    def __init__(self, session_factory: sessionmaker[Session], queue_name: str) -> None:
        self._session_factory: sessionmaker[Session] = session_factory
        self._queue_name: str = queue_name

    @property
    def name(self) -> str:
        return self._queue_name

    def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        dedupe_key: str | None = None,
        remove_on_complete: bool = False,
    ) -> bool:
        with session_scope(self._session_factory) as session:
            if dedupe_key is not None:
                existing_id: int | None = session.scalar(
                    select(QueuedJob.id)
                    .where(
                        QueuedJob.queue_name == self._queue_name,
                        QueuedJob.dedupe_key == dedupe_key,
                        QueuedJob.status.in_(_PENDING_STATES),
                    )
                    .limit(1)
                )
                if existing_id is not None:
                    logger.debug(
                        'Job %r already pending in %s (dedupe key %r)',
                        job_name,
                        self._queue_name,
                        dedupe_key,
                    )
                    return False

            session.add(
                QueuedJob(
                    queue_name=self._queue_name,
                    job_name=job_name,
                    payload=payload,
                    dedupe_key=dedupe_key,
                    status=JobState.WAITING.value,
                    remove_on_complete=remove_on_complete,
                )
            )

        logger.info('Enqueued %r on %s', job_name, self._queue_name)
        return True

    def counts(self) -> QueueCounts:
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(QueuedJob.status, func.count(QueuedJob.id))
                .where(QueuedJob.queue_name == self._queue_name)
                .group_by(QueuedJob.status)
            ).all()

        by_status: dict[str, int] = {status: count for status, count in rows}
        return QueueCounts(
            active=by_status.get(JobState.ACTIVE.value, 0),
            waiting=by_status.get(JobState.WAITING.value, 0),
            completed=by_status.get(JobState.COMPLETED.value, 0),
            failed=by_status.get(JobState.FAILED.value, 0),
        )

    # -------------------------------------------------------------------------
    # Consumer side
    # -------------------------------------------------------------------------

    def claim_next(self) -> QueuedJobSnapshot | None:
        """Mark the oldest waiting job active and return it."""
        with session_scope(self._session_factory) as session:
            job: QueuedJob | None = session.scalar(
                select(QueuedJob)
                .where(
                    QueuedJob.queue_name == self._queue_name,
                    QueuedJob.status == JobState.WAITING.value,
                )
                .order_by(QueuedJob.id)
                .limit(1)
            )
            if job is None:
                return None
            job.status = JobState.ACTIVE.value
            job.updated_at = utc_now()
            session.flush()
            return QueuedJobSnapshot.model_validate(job)

    def _transition(self, job_id: int, target: JobState, error: str | None) -> None:
        with session_scope(self._session_factory) as session:
            job: QueuedJob | None = session.get(QueuedJob, job_id)
            if job is None:
                raise KeyError(f'Queued job not found: {job_id}')

            if target is JobState.COMPLETED and job.remove_on_complete:
                session.execute(delete(QueuedJob).where(QueuedJob.id == job_id))
                return

            job.status = target.value
            job.error_message = error
            job.updated_at = utc_now()

    def mark_active(self, job_id: int) -> None:
        self._transition(job_id, JobState.ACTIVE, None)

    def mark_completed(self, job_id: int) -> None:
        self._transition(job_id, JobState.COMPLETED, None)

    def mark_failed(self, job_id: int, error_message: str) -> None:
        self._transition(job_id, JobState.FAILED, error_message)


# =============================================================================
# In-memory queue
# =============================================================================


@dataclass(slots=True)
class _MemoryJob:
    job_id: int
    job_name: str
    payload: dict[str, Any]
    dedupe_key: str | None
    remove_on_complete: bool
    status: JobState = JobState.WAITING
    error_message: str | None = None
    created_at: datetime = field(default_factory=utc_now)


class InMemoryJobQueue:
    """Thread-safe process-local queue with the same semantics as SqlJobQueue."""

    def __init__(self, queue_name: str = 'memory') -> None:
        self._queue_name: str = queue_name
        self._lock: threading.Lock = threading.Lock()
        self._jobs: dict[int, _MemoryJob] = {}
        self._next_id: int = 1

    @property
    def name(self) -> str:
        return self._queue_name

    @property
    def jobs(self) -> list[QueuedJobSnapshot]:
        with self._lock:
            return [
                QueuedJobSnapshot(
                    id=job.job_id,
                    queue_name=self._queue_name,
                    job_name=job.job_name,
                    payload=job.payload,
                    dedupe_key=job.dedupe_key,
                    status=job.status,
                    remove_on_complete=job.remove_on_complete,
                    error_message=job.error_message,
                    created_at=job.created_at,
                )
                for job in self._jobs.values()
            ]

    def enqueue(
        self,
        job_name: str,
        payload: dict[str, Any],
        *,
        dedupe_key: str | None = None,
        remove_on_complete: bool = False,
    ) -> bool:
        with self._lock:
            if dedupe_key is not None and any(
                job.dedupe_key == dedupe_key
                and job.status in (JobState.WAITING, JobState.ACTIVE)
                for job in self._jobs.values()
            ):
                return False

            self._jobs[self._next_id] = _MemoryJob(
                job_id=self._next_id,
                job_name=job_name,
                payload=dict(payload),
                dedupe_key=dedupe_key,
                remove_on_complete=remove_on_complete,
            )
            self._next_id += 1
            return True

    def counts(self) -> QueueCounts:
        with self._lock:
            statuses: list[JobState] = [job.status for job in self._jobs.values()]
        return QueueCounts(
            active=statuses.count(JobState.ACTIVE),
            waiting=statuses.count(JobState.WAITING),
            completed=statuses.count(JobState.COMPLETED),
            failed=statuses.count(JobState.FAILED),
        )

    def set_state(
        self,
        job_id: int,
        state: JobState,
        error_message: str | None = None,
    ) -> None:
        with self._lock:
            job: _MemoryJob = self._jobs[job_id]
            if state is JobState.COMPLETED and job.remove_on_complete:
                del self._jobs[job_id]
                return
            job.status = state
            job.error_message = error_message
