"""Drains due notification jobs and hands them to the email sender."""

import logging
from dataclasses import dataclass

from meterbridge.notifications.email import EmailSender
from meterbridge.notifications.queue import DatabaseJobQueue

logger = logging.getLogger(__name__)


@dataclass
class DrainReport:
    claimed: int = 0
    sent: int = 0
    failed: int = 0


class NotificationWorker:
    def __init__(self, queue: DatabaseJobQueue, sender: EmailSender):
        self.queue = queue
        self.sender = sender

    async def run_once(self, limit: int = 50) -> DrainReport:
        report = DrainReport()
        for job in await self.queue.claim_due(limit):
            report.claimed += 1
            try:
                delivered = await self.sender.send(job.job_type, job.payload or {})
                error = None if delivered else "Email provider rejected the message"
            except Exception as exc:
                logger.exception("Notification job %s raised", job.id)
                delivered, error = False, str(exc)

            if delivered:
                await self.queue.complete(job.id)
                report.sent += 1
            else:
                await self.queue.fail(job.id, error or "delivery failed")
                report.failed += 1
        return report
