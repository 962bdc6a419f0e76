"""
Expiration sweeper

Periodically expires PENDING bookings whose deadline passed. Runs in bounded
batches so one run never holds the worker for long, and is safe to run in
several workers at once: each booking is claimed through its own lock and
the status is re-checked by the UPDATE itself.
"""

from typing import Dict, Optional
import logging

from boxoffice.config import settings
from boxoffice.schemas.tasks import ReleaseTicketsPayload
from boxoffice.services.booking_service import BookingService

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    def __init__(
        self,
        booking_service: BookingService,
        task_queue=None,
        batch_size: int = settings.SWEEP_BATCH_SIZE,
        max_batches: int = settings.SWEEP_MAX_BATCHES,
    ):
        self.booking_service = booking_service
        self.task_queue = task_queue
        self.batch_size = batch_size
        self.max_batches = max_batches

    async def sweep(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """
        Run expiration batches until the backlog is drained or the batch cap is hit
        """
        batch_size = batch_size or self.batch_size
        totals = {"batches": 0, "expired": 0, "skipped": 0, "failed": 0, "release_queued": 0}

        for _ in range(self.max_batches):
            report = await self.booking_service.expire_stale_bookings(batch_size)
            totals["batches"] += 1
            totals["expired"] += report.expired
            totals["skipped"] += report.skipped
            totals["failed"] += report.failed

            for item in report.pending_release:
                if await self._queue_release(item):
                    totals["release_queued"] += 1

            # Short batch means nothing left; a batch with no progress would repeat itself
            if len(report.items) < batch_size or report.expired == 0:
                break

        if totals["expired"] or totals["failed"]:
            logger.info(f"Expiration sweep finished: {totals}")
        return totals

    async def _queue_release(self, item) -> bool:
        if self.task_queue is None:
            logger.warning(
                f"No task queue to retry ticket release for expired booking {item.booking_id}; "
                "reservation cleanup will recover the tickets",
                extra={"booking_id": item.booking_id}
            )
            return False

        await self.task_queue.enqueue(
            "release_tickets",
            ReleaseTicketsPayload(ticket_ids=item.ticket_ids, user_id=item.user_id),
            job_id=f"release:{item.booking_id}"
        )
        return True
