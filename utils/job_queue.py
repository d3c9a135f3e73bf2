"""
Delayed Job Queue
Named queues of delayed jobs persisted in the database, consumed by the worker's
scheduler poll with lease-based claiming (at-least-once delivery)
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
from flask import current_app
from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from models import db, JobStatus, QueuedJob, utcnow
from utils.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300
DEFAULT_BATCH_SIZE = 50


class JobQueue:
    """
    Producer/consumer queue shared by the web and worker processes

    A job stays in the table until its handler returns. A worker that dies
    mid-job leaves the row RUNNING; once its lease expires another poll
    claims it again.
    """

    def __init__(self):
        self._handlers: Dict[str, Callable] = {}

    def init_app(self, app):
        app.extensions['job_queue'] = self

    def register_worker(self, queue_name: str, handler: Callable):
        """
        Register the handler for a queue

        Args:
            queue_name: Queue to consume
            handler: Callable taking (job_name, payload)
        """
        self._handlers[queue_name] = handler

    def handler_for(self, queue_name: str) -> Optional[Callable]:
        return self._handlers.get(queue_name)

    def enqueue(self, queue_name: str, job_name: str, payload: Dict,
                delay_seconds: Optional[float] = None, dedupe_key: Optional[str] = None,
                now: Optional[datetime] = None) -> Optional[str]:
        """
        Schedule a job to run once after an optional delay

        A pending or running job with the same dedupe key makes this a no-op.

        Returns:
            Job id, or None when deduplicated
        """
        now = now or utcnow()
        if dedupe_key and QueuedJob.query.filter_by(dedupe_key=dedupe_key).first():
            logger.info(f"Job {dedupe_key} already pending, skipping enqueue")
            return None

        job = QueuedJob(
            queue_name=queue_name,
            job_name=job_name,
            payload=dict(payload),
            dedupe_key=dedupe_key,
            status=JobStatus.PENDING,
            max_attempts=current_app.config.get('JOB_MAX_ATTEMPTS', 3),
            run_at=now + timedelta(seconds=max(0, delay_seconds or 0))
        )
        db.session.add(job)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.info(f"Job {dedupe_key} enqueued concurrently, skipping")
            return None

        logger.debug(f"Enqueued {queue_name}/{job_name} as {job.id} (delay={delay_seconds or 0}s)")
        return job.id

    def pending_jobs(self, queue_name: Optional[str] = None, job_name: Optional[str] = None) -> List[QueuedJob]:
        query = QueuedJob.query.filter(QueuedJob.status == JobStatus.PENDING)
        if queue_name:
            query = query.filter(QueuedJob.queue_name == queue_name)
        if job_name:
            query = query.filter(QueuedJob.job_name == job_name)
        return query.order_by(QueuedJob.run_at).all()

    @staticmethod
    def _claimable(now: datetime):
        return or_(
            and_(QueuedJob.status == JobStatus.PENDING, QueuedJob.run_at <= now),
            and_(QueuedJob.status == JobStatus.RUNNING, QueuedJob.locked_until < now)
        )

    def run_due(self, now: Optional[datetime] = None, limit: int = DEFAULT_BATCH_SIZE) -> int:
        """
        Claim and run jobs that are due

        Returns:
            Number of jobs executed by this call
        """
        now = now or utcnow()
        due_ids = [
            job_id for (job_id,) in db.session.query(QueuedJob.id).filter(
                self._claimable(now)
            ).order_by(QueuedJob.run_at).limit(limit).all()
        ]

        processed = 0
        for job_id in due_ids:
            if self._claim(job_id, now):
                self._execute(job_id, now)
                processed += 1
        return processed

    def _claim(self, job_id: str, now: datetime) -> bool:
        lease = current_app.config.get('JOB_LEASE_SECONDS', DEFAULT_LEASE_SECONDS)
        claimed = QueuedJob.query.filter(
            QueuedJob.id == job_id,
            self._claimable(now)
        ).update({
            'status': JobStatus.RUNNING,
            'locked_until': now + timedelta(seconds=lease),
            'attempts': QueuedJob.attempts + 1,
        }, synchronize_session=False)
        db.session.commit()
        return claimed == 1

    def _execute(self, job_id: str, now: datetime):
        job = db.session.get(QueuedJob, job_id)
        if job is None:
            return
        queue_name, job_name, payload = job.queue_name, job.job_name, dict(job.payload or {})

        handler = self.handler_for(queue_name)
        if handler is None:
            self._fail(job_id, f"No worker registered for queue {queue_name}", now, retry=False)
            return

        try:
            handler(job_name, payload)
        except ConfigurationError as e:
            db.session.rollback()
            self._fail(job_id, f"{e.message} {e.details or ''}".strip(), now, retry=False)
            return
        except Exception as e:
            db.session.rollback()
            self._fail(job_id, str(e) or e.__class__.__name__, now, retry=True)
            return

        QueuedJob.query.filter_by(id=job_id).delete(synchronize_session=False)
        db.session.commit()
        logger.debug(f"Job {queue_name}/{job_name} ({job_id}) done")

    def _fail(self, job_id: str, error: str, now: datetime, retry: bool):
        job = db.session.get(QueuedJob, job_id)
        if job is None:
            return

        job.last_error = error[:2000]
        job.locked_until = None
        if retry and job.attempts < job.max_attempts:
            delay = current_app.config.get('JOB_RETRY_BACKOFF_SECONDS', 5) * (2 ** (job.attempts - 1))
            job.status = JobStatus.PENDING
            job.run_at = now + timedelta(seconds=delay)
            logger.warning(
                f"Job {job.queue_name}/{job.job_name} failed (attempt {job.attempts}), retrying in {delay}s: {error}"
            )
        else:
            job.status = JobStatus.FAILED
            job.dedupe_key = None
            logger.error(f"Job {job.queue_name}/{job.job_name} failed permanently after {job.attempts} attempts: {error}")
        db.session.commit()


job_queue = JobQueue()
