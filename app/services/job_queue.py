"""
Durable priority job queue backed by the job_queue table.

Jobs are claimed with a conditional UPDATE (pending -> running) so two workers
can never run the same job. Transient failures are retried with exponential
backoff until the attempt ceiling, then dead-lettered; permanent failures go
straight to failed.
"""
import logging
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.errors import (
    ErrorKind,
    RETRYABLE_KINDS,
    ResourceNotFound,
    TransientInfrastructureFailure,
    ValidationFailure,
)
from app.models import (
    Job,
    JobPriority,
    JobStatus,
    JobType,
    PRIORITY_RANK,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobRecord:
    """Detached snapshot of a job row handed to workers and handlers."""
    id: str
    store_id: Optional[str]
    job_type: JobType
    payload: dict
    priority: JobPriority
    status: JobStatus
    attempts: int
    max_attempts: int
    idempotency_key: Optional[str]
    enqueued_at: datetime
    available_at: datetime
    last_error: Optional[str] = None

    @classmethod
    def from_row(cls, job: Job) -> "JobRecord":
        return cls(
            id=job.id,
            store_id=job.store_id,
            job_type=JobType(job.job_type),
            payload=dict(job.payload or {}),
            priority=JobPriority(job.priority),
            status=JobStatus(job.status),
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            idempotency_key=job.idempotency_key,
            enqueued_at=job.enqueued_at,
            available_at=job.available_at,
            last_error=job.last_error,
        )


def serialize_job(job: Job) -> dict[str, Any]:
    return {
        "id": job.id,
        "storeId": job.store_id,
        "jobType": job.job_type.value,
        "priority": job.priority.value,
        "status": job.status.value,
        "attempts": job.attempts,
        "maxAttempts": job.max_attempts,
        "idempotencyKey": job.idempotency_key,
        "lastError": job.last_error,
        "errorKind": job.error_kind,
        "replayedJobId": job.replayed_job_id,
        "payload": job.payload,
        "enqueuedAt": job.enqueued_at.isoformat() if job.enqueued_at else None,
        "availableAt": job.available_at.isoformat() if job.available_at else None,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "finishedAt": job.finished_at.isoformat() if job.finished_at else None,
    }


# Statuses covered by the unique idempotency_key index
KEYED_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.SUCCEEDED)


def _keyed_job_id(db: Session, idempotency_key: str) -> Optional[str]:
    row = (
        db.query(Job.id)
        .filter(Job.idempotency_key == idempotency_key, Job.status.in_(KEYED_STATUSES))
        .first()
    )
    return row[0] if row else None


def _running_claim(job_id: str, worker_id: Optional[str]) -> list:
    clauses = [Job.id == job_id, Job.status == JobStatus.RUNNING]
    if worker_id is not None:
        clauses.append(Job.locked_by == worker_id)
    return clauses


class JobQueue:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[random.Random] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        backoff_jitter: Optional[float] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock or utcnow
        self.rng = rng or random.Random()
        self.max_attempts = max_attempts if max_attempts is not None else settings.JOB_MAX_ATTEMPTS
        self.backoff_base = backoff_base if backoff_base is not None else settings.JOB_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max if backoff_max is not None else settings.JOB_BACKOFF_MAX_SECONDS
        self.backoff_jitter = backoff_jitter if backoff_jitter is not None else settings.JOB_BACKOFF_JITTER

    def enqueue(
        self,
        job_type: JobType,
        payload: dict,
        priority: JobPriority = JobPriority.MEDIUM,
        *,
        store_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        dedupe: bool = False,
    ) -> str:
        """
        Persist a new pending job and return its id.

        With dedupe=True and an idempotency_key, an existing job with the same
        key that is pending, running or succeeded is returned instead.
        """
        job_type = JobType(job_type)
        priority = JobPriority(priority)
        with self.session_factory() as db:
            if dedupe and idempotency_key:
                existing_id = _keyed_job_id(db, idempotency_key)
                if existing_id is not None:
                    logger.debug("Job %s already queued for key %s", existing_id, idempotency_key)
                    return existing_id

            now = self.clock()
            job = Job(
                store_id=store_id,
                job_type=job_type,
                payload=payload,
                priority=priority,
                priority_rank=PRIORITY_RANK[priority],
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=self.max_attempts,
                idempotency_key=idempotency_key,
                enqueued_at=now,
                available_at=now,
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                # A concurrent enqueue inserted the same key first
                db.rollback()
                existing_id = _keyed_job_id(db, idempotency_key) if idempotency_key else None
                if existing_id is None:
                    raise TransientInfrastructureFailure(f"Could not enqueue {job_type.value} job")
                if not dedupe:
                    raise ValidationFailure(f"Job {existing_id} already holds idempotency key {idempotency_key}")
                logger.debug("Job %s already queued for key %s", existing_id, idempotency_key)
                return existing_id
            logger.info("Enqueued %s job %s (priority=%s, store=%s)", job_type.value, job.id, priority.value, store_id)
            return job.id

    def dequeue_next(self, worker_id: str) -> Optional[JobRecord]:
        """Claim the most urgent eligible job: priority tier, then FIFO."""
        with self.session_factory() as db:
            now = self.clock()
            candidates = (
                db.query(Job.id)
                .filter(Job.status == JobStatus.PENDING, Job.available_at <= now)
                .order_by(Job.priority_rank.asc(), Job.enqueued_at.asc(), Job.id.asc())
                .limit(10)
                .all()
            )
            for (job_id,) in candidates:
                claimed = db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.status == JobStatus.PENDING)
                    .values(status=JobStatus.RUNNING, locked_by=worker_id, started_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                db.commit()
                if claimed.rowcount == 1:
                    job = db.get(Job, job_id, populate_existing=True)
                    return JobRecord.from_row(job)
                # Another worker won this one
            return None

    def complete(self, job_id: str, worker_id: Optional[str] = None) -> bool:
        """
        Mark a running job succeeded. With worker_id, only the worker that
        currently holds the claim may complete it.
        """
        with self.session_factory() as db:
            now = self.clock()
            result = db.execute(
                update(Job)
                .where(*_running_claim(job_id, worker_id))
                .values(status=JobStatus.SUCCEEDED, finished_at=now, locked_by=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                logger.warning("complete(%s) ignored: job is not running under %s", job_id, worker_id or "any worker")
                return False
            logger.info("Job %s succeeded", job_id)
            return True

    def backoff_delay(self, attempts: int) -> float:
        """base * 2^(attempts-1), capped, with +/- jitter fraction."""
        delay = min(self.backoff_base * (2 ** max(attempts - 1, 0)), self.backoff_max)
        if self.backoff_jitter:
            delay += delay * self.rng.uniform(-self.backoff_jitter, self.backoff_jitter)
        return max(delay, 0.0)

    def fail(
        self,
        job_id: str,
        error: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        worker_id: Optional[str] = None,
    ) -> Optional[JobStatus]:
        """
        Record a failed run. Returns the job's new status, or None when the job
        was not running (terminal states never regress) or, with worker_id,
        when another worker holds the claim.
        """
        kind = ErrorKind(kind)
        claim = _running_claim(job_id, worker_id)
        with self.session_factory() as db:
            job = db.query(Job).filter(*claim).first()
            if job is None:
                logger.warning("fail(%s) ignored: job is not running under %s", job_id, worker_id or "any worker")
                return None

            now = self.clock()
            attempts = job.attempts + 1
            if kind not in RETRYABLE_KINDS:
                new_status = JobStatus.FAILED
                values = {"finished_at": now}
            elif attempts >= job.max_attempts:
                new_status = JobStatus.DEAD_LETTERED
                values = {"finished_at": now}
            else:
                new_status = JobStatus.PENDING
                values = {"available_at": now + timedelta(seconds=self.backoff_delay(attempts)), "started_at": None}

            result = db.execute(
                update(Job)
                .where(*claim)
                .values(
                    status=new_status,
                    attempts=attempts,
                    last_error=(error or "")[:2000],
                    error_kind=kind.value,
                    locked_by=None,
                    updated_at=now,
                    **values,
                )
                .execution_options(synchronize_session=False)
            )
            db.commit()
            if result.rowcount != 1:
                logger.warning("fail(%s) lost a race: job is no longer running", job_id)
                return None

            if new_status == JobStatus.PENDING:
                logger.info("Job %s attempt %s failed (%s); retry scheduled", job_id, attempts, kind.value)
            else:
                logger.error("Job %s %s after %s attempt(s): %s", job_id, new_status.value, attempts, error)
            return new_status

    def replay(self, job_id: str) -> str:
        """Re-enqueue a failed or dead-lettered job as a fresh job; the original stays terminal."""
        with self.session_factory() as db:
            original = db.query(Job).filter(Job.id == job_id).first()
            if original is None:
                raise ResourceNotFound(f"Job {job_id} not found")
            if original.status not in (JobStatus.FAILED, JobStatus.DEAD_LETTERED):
                raise ValidationFailure(f"Job {job_id} is {original.status.value}; only failed or dead-lettered jobs can be replayed")

            now = self.clock()
            copy = Job(
                store_id=original.store_id,
                job_type=original.job_type,
                payload=original.payload,
                priority=original.priority,
                priority_rank=original.priority_rank,
                status=JobStatus.PENDING,
                attempts=0,
                max_attempts=original.max_attempts,
                idempotency_key=original.idempotency_key,
                enqueued_at=now,
                available_at=now,
            )
            db.add(copy)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                raise ValidationFailure(
                    f"Job {job_id} cannot be replayed: idempotency key {original.idempotency_key} is already queued"
                )
            original.replayed_job_id = copy.id
            db.commit()
            logger.info("Replayed job %s as %s", job_id, copy.id)
            return copy.id

    def release_stale(self, lease_seconds: Optional[int] = None) -> int:
        """Treat running jobs whose lease expired as transient failures."""
        lease = lease_seconds if lease_seconds is not None else settings.JOB_LEASE_SECONDS
        cutoff = self.clock() - timedelta(seconds=lease)
        with self.session_factory() as db:
            stale = (
                db.query(Job.id, Job.locked_by)
                .filter(Job.status == JobStatus.RUNNING, Job.started_at < cutoff)
                .all()
            )
        released = 0
        for job_id, locked_by in stale:
            # Fenced on the expired holder so a fresh claim is left alone
            outcome = self.fail(job_id, f"Lease expired after {lease}s", ErrorKind.TRANSIENT, worker_id=locked_by)
            if outcome is not None:
                released += 1
        if released:
            logger.warning("Released %s stale job(s)", released)
        return released

    def purge_finished(self, older_than_days: Optional[int] = None) -> int:
        """Delete succeeded jobs that finished more than older_than_days ago."""
        days = older_than_days if older_than_days is not None else settings.JOB_RETENTION_DAYS
        cutoff = self.clock() - timedelta(days=days)
        with self.session_factory() as db:
            result = db.execute(
                delete(Job)
                .where(Job.status == JobStatus.SUCCEEDED, Job.finished_at < cutoff)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        if result.rowcount:
            logger.info("Purged %s succeeded job(s) older than %s day(s)", result.rowcount, days)
        return result.rowcount

    def get(self, db: Session, job_id: str) -> Optional[Job]:
        return db.query(Job).filter(Job.id == job_id).first()

    def list_jobs(
        self,
        db: Session,
        *,
        store_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
        job_type: Optional[JobType] = None,
        limit: int = 50,
    ) -> list[Job]:
        query = db.query(Job)
        if store_id:
            query = query.filter(Job.store_id == store_id)
        if status:
            query = query.filter(Job.status == status)
        if job_type:
            query = query.filter(Job.job_type == job_type)
        return query.order_by(Job.enqueued_at.desc()).limit(limit).all()

    def stats(self, db: Session, store_id: Optional[str] = None) -> dict[str, int]:
        query = db.query(Job.status, func.count(Job.id))
        if store_id:
            query = query.filter(Job.store_id == store_id)
        counts = {status.value: 0 for status in JobStatus}
        for status, count in query.group_by(Job.status).all():
            counts[JobStatus(status).value] = count
        counts["total"] = sum(counts[s.value] for s in JobStatus)
        return counts
