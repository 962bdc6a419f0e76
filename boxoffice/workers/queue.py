"""
Task queue client over arq

Producers enqueue a validated payload under a task name together with the
retry policy the worker should apply to it. The arq pool is created by the
process owner and injected; nothing here is a module-level singleton.
"""

from dataclasses import asdict, dataclass, replace
from datetime import timedelta
from typing import Any, Dict, Optional, Union
import logging
import random

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job, JobStatus
from pydantic import BaseModel

from boxoffice.config import settings
from boxoffice.core.exceptions import ExternalServiceError
from boxoffice.schemas.tasks import parse_task_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Attempts and capped exponential backoff with jitter"""
    attempts: int = settings.TASK_MAX_ATTEMPTS
    base_delay: float = settings.TASK_BACKOFF_BASE_SECONDS
    max_delay: float = settings.TASK_BACKOFF_MAX_SECONDS
    jitter: float = settings.TASK_BACKOFF_JITTER_SECONDS

    def backoff(self, attempt: int) -> float:
        """Delay before retrying after ``attempt`` (1-based) failed"""
        delay = min(self.max_delay, self.base_delay * (2 ** max(attempt - 1, 0)))
        return delay + random.uniform(0, self.jitter)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RetryPolicy":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


# Periodic jobs are re-run by their schedule rather than retried
DEFAULT_RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "expire_bookings": RetryPolicy(attempts=1),
    "release_expired_reservation_locks": RetryPolicy(attempts=1),
}


def retry_policy_for(task_name: str) -> RetryPolicy:
    return DEFAULT_RETRY_POLICIES.get(task_name, RetryPolicy())


class TaskQueue:
    """
    Enqueue tasks and look up job status
    """

    def __init__(self, pool: ArqRedis, queue_name: str = settings.QUEUE_NAME):
        self.pool = pool
        self.queue_name = queue_name

    @classmethod
    async def connect(cls, redis_url: Optional[str] = None, queue_name: str = settings.QUEUE_NAME) -> "TaskQueue":
        pool = await create_pool(
            RedisSettings.from_dsn(redis_url or settings.REDIS_URL),
            default_queue_name=queue_name
        )
        return cls(pool, queue_name=queue_name)

    async def close(self):
        await self.pool.aclose()

    async def enqueue(
        self,
        task_name: str,
        payload: Union[BaseModel, Dict[str, Any]],
        *,
        attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        job_id: Optional[str] = None,
        defer_by: Optional[float] = None,
    ) -> str:
        """
        Validate and enqueue a task

        Args:
            task_name: Registered task name
            payload: Payload model or dict for that task
            attempts: Override for the task's attempt limit
            backoff: Override for the base backoff delay in seconds
            job_id: Deduplication id; a job with the same id is not enqueued twice

        Returns:
            The arq job id
        """
        data = payload.model_dump(mode="json") if isinstance(payload, BaseModel) else dict(payload)
        # Raises TaskPayloadError before anything reaches the broker
        parse_task_payload(task_name, data)
        data["task"] = task_name

        policy = retry_policy_for(task_name)
        if attempts is not None:
            policy = replace(policy, attempts=attempts)
        if backoff is not None:
            policy = replace(policy, base_delay=backoff)

        try:
            job = await self.pool.enqueue_job(
                task_name,
                data,
                policy.to_dict(),
                _job_id=job_id,
                _queue_name=self.queue_name,
                _defer_by=timedelta(seconds=defer_by) if defer_by else None,
            )
        except Exception as e:
            logger.error(f"Failed to enqueue {task_name}: {e}", extra={"task": task_name})
            raise ExternalServiceError("task_queue", f"Could not enqueue {task_name}") from e

        if job is None:
            # arq refuses duplicates of a job id that is queued or still has a result
            logger.info(f"Job {job_id} for {task_name} already enqueued", extra={"task": task_name, "job_id": job_id})
            return job_id

        logger.info(f"Enqueued {task_name} as job {job.job_id}", extra={"task": task_name, "job_id": job.job_id})
        return job.job_id

    async def job_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Status and, once finished, result of a job; None if unknown"""
        job = Job(job_id, self.pool, _queue_name=self.queue_name)
        status = await job.status()
        if status == JobStatus.not_found:
            return None

        info = {"job_id": job_id, "status": status.value, "result": None}
        if status == JobStatus.complete:
            result = await job.result_info()
            if result is not None:
                info["success"] = result.success
                info["result"] = result.result if result.success else {"error": str(result.result)}
        return info
