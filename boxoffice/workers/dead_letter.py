"""
Dead-letter store for tasks that will not be retried
"""

from typing import Any, List, Optional
import logging
import uuid

from sqlalchemy import select

from boxoffice.core.database import DatabaseManager, db_manager as default_db_manager
from boxoffice.core.exceptions import InvalidStateError, NotFoundError
from boxoffice.core.metrics import DEAD_LETTERS
from boxoffice.models.base import utcnow
from boxoffice.models.dead_letter import DeadLetterTask, DeadLetterStatus

logger = logging.getLogger(__name__)


class DeadLetterStore:
    """
    Records failed tasks for operator review; requeue or discard them later
    """

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or default_db_manager

    async def record(
        self,
        task_name: str,
        payload: Any,
        error: BaseException,
        attempts: int = 1,
        job_id: Optional[str] = None,
    ) -> DeadLetterTask:
        if not isinstance(payload, dict):
            payload = {"raw": repr(payload)}

        entry = DeadLetterTask(
            task_name=task_name,
            job_id=job_id,
            payload=payload,
            attempts=attempts,
            error_type=type(error).__name__,
            error_message=str(error)[:2000],
            status=DeadLetterStatus.PENDING_REVIEW,
            failed_at=utcnow(),
        )
        async with self.db_manager.atomic_transaction() as session:
            session.add(entry)

        DEAD_LETTERS.labels(task=task_name).inc()
        logger.error(
            f"Task {task_name} dead-lettered after {attempts} attempt(s): {type(error).__name__}: {error}",
            extra={"task": task_name, "job_id": job_id, "attempt": attempts}
        )
        return entry

    async def list(
        self,
        status: Optional[DeadLetterStatus] = DeadLetterStatus.PENDING_REVIEW,
        task_name: Optional[str] = None,
        limit: int = 100,
    ) -> List[DeadLetterTask]:
        query = select(DeadLetterTask).order_by(DeadLetterTask.failed_at.desc()).limit(limit)
        if status is not None:
            query = query.where(DeadLetterTask.status == status)
        if task_name:
            query = query.where(DeadLetterTask.task_name == task_name)

        async with self.db_manager.session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def _resolve(self, dead_letter_id: uuid.UUID, status: DeadLetterStatus) -> DeadLetterTask:
        async with self.db_manager.atomic_transaction() as session:
            entry = await session.get(DeadLetterTask, dead_letter_id, with_for_update=True)
            if entry is None:
                raise NotFoundError("Dead letter", dead_letter_id)
            if entry.status != DeadLetterStatus.PENDING_REVIEW:
                raise InvalidStateError(
                    f"Dead letter {dead_letter_id} is already {entry.status.value}",
                    entry.status
                )
            entry.status = status
            entry.resolved_at = utcnow()
        return entry

    async def requeue(self, dead_letter_id: uuid.UUID, task_queue) -> str:
        """
        Put a dead letter back on the queue with a fresh attempt budget
        """
        async with self.db_manager.session() as session:
            entry = await session.get(DeadLetterTask, dead_letter_id)
        if entry is None:
            raise NotFoundError("Dead letter", dead_letter_id)
        if entry.status != DeadLetterStatus.PENDING_REVIEW:
            raise InvalidStateError(
                f"Dead letter {dead_letter_id} is already {entry.status.value}",
                entry.status
            )

        job_id = await task_queue.enqueue(entry.task_name, entry.payload)
        await self._resolve(dead_letter_id, DeadLetterStatus.REQUEUED)
        logger.info(
            f"Requeued dead letter {dead_letter_id} as job {job_id}",
            extra={"task": entry.task_name, "job_id": job_id}
        )
        return job_id

    async def discard(self, dead_letter_id: uuid.UUID) -> DeadLetterTask:
        entry = await self._resolve(dead_letter_id, DeadLetterStatus.DISCARDED)
        logger.info(f"Discarded dead letter {dead_letter_id}", extra={"task": entry.task_name})
        return entry
