"""Durable job queue on the ``background_jobs`` table.

Jobs are claimed with ``SELECT ... FOR UPDATE SKIP LOCKED`` followed by a
conditional status update, so several worker processes can share the table.
A running job whose lease expired (worker died mid-job) becomes claimable again.
"""

import logging
from datetime import timedelta

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.models import BackgroundJob
from app.services.timeutils import db_datetime, utcnow

logger = logging.getLogger(__name__)

QUEUED = "queued"
RUNNING = "running"
DONE = "done"
FAILED = "failed"


class RetryJob(Exception):
    """Raised by a handler to run the job again later."""

    def __init__(self, reason: str = "", delay_seconds: float | None = None):
        super().__init__(reason)
        self.reason = reason
        self.delay_seconds = delay_seconds


def enqueue(
    db: Session,
    name: str,
    payload: dict | None = None,
    delay_seconds: float = 0,
    max_attempts: int | None = None,
) -> BackgroundJob:
    """Add a job to the session; it becomes visible when the caller commits."""
    job = BackgroundJob(
        name=name,
        payload=payload or {},
        status=QUEUED,
        run_at=db_datetime(db, utcnow() + timedelta(seconds=delay_seconds)),
        attempts=0,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
    )
    db.add(job)
    logger.info("Enqueued job %s %s (delay %ss)", name, payload or {}, delay_seconds)
    return job


def has_pending_job(db: Session, name: str) -> bool:
    return (
        db.query(BackgroundJob.id)
        .filter(BackgroundJob.name == name, BackgroundJob.status.in_([QUEUED, RUNNING]))
        .first()
        is not None
    )


def claim_next_job(db: Session) -> BackgroundJob | None:
    now = utcnow()
    db_now = db_datetime(db, now)
    lease_cutoff = db_datetime(db, now - timedelta(seconds=settings.JOB_LEASE_SECONDS))

    candidate = (
        db.query(BackgroundJob)
        .filter(
            or_(
                and_(BackgroundJob.status == QUEUED, BackgroundJob.run_at <= db_now),
                and_(BackgroundJob.status == RUNNING, BackgroundJob.locked_at < lease_cutoff),
            )
        )
        .order_by(BackgroundJob.run_at.asc(), BackgroundJob.id.asc())
        .with_for_update(skip_locked=True)
        .first()
    )
    if candidate is None:
        db.rollback()
        return None

    if candidate.status == RUNNING:
        logger.warning("Reclaiming job %s (%s) after expired lease", candidate.id, candidate.name)

    updated = (
        db.query(BackgroundJob)
        .filter(
            BackgroundJob.id == candidate.id,
            BackgroundJob.status == candidate.status,
            BackgroundJob.attempts == candidate.attempts,
        )
        .update(
            {
                BackgroundJob.status: RUNNING,
                BackgroundJob.locked_at: db_now,
                BackgroundJob.attempts: BackgroundJob.attempts + 1,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if updated != 1:
        return None
    db.refresh(candidate)
    return candidate


def retry_delay_seconds(attempts: int) -> float:
    return settings.JOB_RETRY_BASE_SECONDS * 2 ** max(attempts - 1, 0)


def complete_job(db: Session, job: BackgroundJob) -> None:
    job.status = DONE
    job.locked_at = None
    job.last_error = None
    db.commit()


def reschedule_job(db: Session, job: BackgroundJob, error: str, delay_seconds: float) -> None:
    job.status = QUEUED
    job.locked_at = None
    job.last_error = error
    job.run_at = db_datetime(db, utcnow() + timedelta(seconds=delay_seconds))
    db.commit()
    logger.info(
        "Job %s (%s) rescheduled in %ss after attempt %s/%s: %s",
        job.id,
        job.name,
        delay_seconds,
        job.attempts,
        job.max_attempts,
        error,
    )


def fail_job(db: Session, job: BackgroundJob, error: str) -> None:
    job.status = FAILED
    job.locked_at = None
    job.last_error = error
    db.commit()
    logger.error("Job %s (%s) failed after %s attempts: %s", job.id, job.name, job.attempts, error)
