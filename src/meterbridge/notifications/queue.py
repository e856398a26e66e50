"""Database-backed job queue for outbound notifications.

Jobs are rows in ``notification_jobs``. Producers call ``add``; a worker calls
``claim_due`` and then ``complete`` or ``fail``. A failed attempt is rescheduled
with the job's own backoff until its attempts run out. This retry domain is
independent of the webhook ledger's retry counter.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import select

from meterbridge.common.database import DatabaseManager
from meterbridge.notifications.models import NotificationJobModel

logger = logging.getLogger(__name__)

EMAIL_QUEUE = "email"


@dataclass(frozen=True)
class Backoff:
    type: str = "exponential"
    delay: int = 5000  # milliseconds

    def delay_for(self, attempts_made: int) -> timedelta:
        """Delay before the next try, given how many attempts already failed."""
        if self.type == "fixed":
            return timedelta(milliseconds=self.delay)
        return timedelta(milliseconds=self.delay * 2 ** max(attempts_made - 1, 0))


@dataclass(frozen=True)
class JobOptions:
    attempts: int = 3
    backoff: Backoff = field(default_factory=Backoff)


class DatabaseJobQueue:
    """Persists jobs using its own short-lived sessions."""

    def __init__(self, db: DatabaseManager, queue_name: str = EMAIL_QUEUE):
        self.db = db
        self.queue_name = queue_name

    async def add(
        self,
        name: str,
        data: dict[str, Any],
        options: Optional[JobOptions] = None,
    ) -> NotificationJobModel:
        options = options or JobOptions()
        async with self.db.get_session() as session:
            job = NotificationJobModel(
                queue=self.queue_name,
                name=name,
                job_type=data.get("jobType", name),
                payload=data.get("payload", {}),
                status="pending",
                attempts_made=0,
                max_attempts=options.attempts,
                backoff_type=options.backoff.type,
                backoff_delay_ms=options.backoff.delay,
                next_attempt_at=datetime.now(timezone.utc),
            )
            session.add(job)
            await session.flush()
        return job

    async def claim_due(self, limit: int = 50) -> list[NotificationJobModel]:
        now = datetime.now(timezone.utc)
        async with self.db.get_session() as session:
            result = await session.execute(
                select(NotificationJobModel)
                .where(
                    NotificationJobModel.queue == self.queue_name,
                    NotificationJobModel.status == "pending",
                    NotificationJobModel.next_attempt_at <= now,
                )
                .order_by(NotificationJobModel.next_attempt_at.asc())
                .limit(limit)
            )
            return list(result.scalars().all())

    async def complete(self, job_id: str) -> None:
        async with self.db.get_session() as session:
            job = await session.get(NotificationJobModel, job_id)
            if job is None:
                return
            job.attempts_made += 1
            job.status = "completed"
            job.last_error = None

    async def fail(self, job_id: str, error: str) -> Optional[NotificationJobModel]:
        """Record a failed attempt; reschedule or give up."""
        async with self.db.get_session() as session:
            job = await session.get(NotificationJobModel, job_id)
            if job is None:
                return None
            job.attempts_made += 1
            job.last_error = error
            if job.attempts_made >= job.max_attempts:
                job.status = "failed"
                logger.error(
                    "Notification job %s (%s) failed permanently after %d attempts: %s",
                    job.id, job.job_type, job.attempts_made, error,
                )
            else:
                backoff = Backoff(job.backoff_type, job.backoff_delay_ms)
                job.next_attempt_at = datetime.now(timezone.utc) + backoff.delay_for(job.attempts_made)
            await session.flush()
            return job
