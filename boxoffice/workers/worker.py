"""
Booking worker

Runs the task handlers on arq. Retries are decided here rather than by arq:
a retryable failure with attempts left raises ``arq.Retry`` with the task's
backoff, and anything else lands in the dead-letter table.

Usage:
    python -m boxoffice.workers.worker
"""

from contextlib import suppress
from typing import Any, Dict, Optional
import asyncio
import logging
import signal
import time

from arq import Retry, cron, func
from arq.connections import ArqRedis, RedisSettings, create_pool
from arq.worker import Worker

from boxoffice.config import settings
from boxoffice.container import build_container
from boxoffice.core.exceptions import BoxOfficeException, TaskPayloadError
from boxoffice.core.logging import setup_logging
from boxoffice.core.metrics import TASK_DURATION, TASK_OUTCOMES
from boxoffice.core.redis import init_redis, close_redis
from boxoffice.schemas.tasks import parse_task_payload
from boxoffice.workers.dead_letter import DeadLetterStore
from boxoffice.workers.queue import RetryPolicy, TaskQueue
from boxoffice.workers.tasks import TASK_NAMES, TaskHandlers

logger = logging.getLogger(__name__)

# arq's own retry ceiling; the per-task attempt limit is enforced by BookingWorker
ARQ_MAX_TRIES = 25


class BookingWorker:
    """
    arq worker for the booking task handlers

    The Redis pool is created and owned by the caller; ``start`` and
    ``stop`` are called by the process owner.
    """

    def __init__(
        self,
        redis_pool: ArqRedis,
        handlers: TaskHandlers,
        dead_letters: DeadLetterStore,
        *,
        queue_name: str = settings.QUEUE_NAME,
        max_jobs: int = settings.WORKER_MAX_JOBS,
        task_timeout: float = settings.TASK_TIMEOUT_SECONDS,
        enable_cron: bool = True,
    ):
        self.redis_pool = redis_pool
        self.handlers = handlers
        self.dead_letters = dead_letters
        self.queue_name = queue_name
        self.max_jobs = max_jobs
        self.task_timeout = task_timeout
        self.enable_cron = enable_cron
        self.worker: Optional[Worker] = None
        self._run_task: Optional[asyncio.Task] = None

    async def execute(
        self,
        task_name: str,
        ctx: Dict[str, Any],
        raw_payload: Any,
        retry_policy: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Validate, run and account for one attempt of a task
        """
        job_id = ctx.get("job_id")
        attempt = ctx.get("job_try", 1)
        policy = RetryPolicy.from_dict(retry_policy)
        log_extra = {"task": task_name, "job_id": job_id, "attempt": attempt}

        try:
            payload = parse_task_payload(task_name, raw_payload)
        except TaskPayloadError as e:
            TASK_OUTCOMES.labels(task=task_name, outcome="invalid").inc()
            await self.dead_letters.record(task_name, raw_payload, e, attempts=attempt, job_id=job_id)
            return {"status": "dead_lettered", "error": e.code}

        handler = self.handlers.handler_for(task_name)
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(handler(payload), timeout=self.task_timeout)
        except asyncio.TimeoutError:
            error: BaseException = TimeoutError(f"{task_name} timed out after {self.task_timeout}s")
            retryable = True
        except BoxOfficeException as e:
            error, retryable = e, e.retryable
        except Exception as e:
            logger.error(f"Unexpected error in {task_name}: {e}", extra=log_extra, exc_info=True)
            error, retryable = e, True
        else:
            TASK_DURATION.labels(task=task_name).observe(time.perf_counter() - started)
            TASK_OUTCOMES.labels(task=task_name, outcome="completed").inc()
            logger.info(f"Task {task_name} completed", extra=log_extra)
            return {"status": "completed", **(result or {})}

        TASK_DURATION.labels(task=task_name).observe(time.perf_counter() - started)

        if retryable and attempt < policy.attempts:
            delay = policy.backoff(attempt)
            TASK_OUTCOMES.labels(task=task_name, outcome="retried").inc()
            logger.warning(
                f"Task {task_name} failed on attempt {attempt}/{policy.attempts}, "
                f"retrying in {delay:.1f}s: {error}",
                extra=log_extra
            )
            raise Retry(defer=delay)

        TASK_OUTCOMES.labels(task=task_name, outcome="dead_lettered").inc()
        await self.dead_letters.record(task_name, raw_payload, error, attempts=attempt, job_id=job_id)
        return {"status": "dead_lettered", "error": type(error).__name__}

    def _function(self, task_name: str):
        async def run(ctx: Dict[str, Any], payload: Any, retry_policy: Optional[Dict[str, Any]] = None):
            return await self.execute(task_name, ctx, payload, retry_policy)

        run.__qualname__ = run.__name__ = task_name
        return func(
            run,
            name=task_name,
            max_tries=ARQ_MAX_TRIES,
            # Slightly above our own timeout so ours fires first
            timeout=self.task_timeout + 5,
        )

    def _cron_jobs(self):
        sweep_minutes = set(range(0, 60, settings.SWEEP_INTERVAL_MINUTES))
        cleanup_minutes = set(range(0, 60, settings.RESERVATION_CLEANUP_INTERVAL_MINUTES))

        async def expire_bookings_cron(ctx):
            return await self.execute("expire_bookings", ctx, {}, RetryPolicy(attempts=1).to_dict())

        async def reservation_cleanup_cron(ctx):
            return await self.execute(
                "release_expired_reservation_locks", ctx, {}, RetryPolicy(attempts=1).to_dict()
            )

        return [
            cron(expire_bookings_cron, name="cron:expire_bookings", minute=sweep_minutes, unique=True),
            cron(reservation_cleanup_cron, name="cron:release_expired_reservation_locks", minute=cleanup_minutes, unique=True),
        ]

    def build(self) -> Worker:
        return Worker(
            functions=[self._function(name) for name in TASK_NAMES],
            cron_jobs=self._cron_jobs() if self.enable_cron else None,
            redis_pool=self.redis_pool,
            queue_name=self.queue_name,
            max_jobs=self.max_jobs,
            job_timeout=self.task_timeout + 5,
            keep_result=3600,
            max_tries=ARQ_MAX_TRIES,
            handle_signals=False,
        )

    async def start(self):
        if self._run_task is not None:
            return
        self.worker = self.build()
        self._run_task = asyncio.create_task(self.worker.async_run())
        logger.info(f"Booking worker started on queue {self.queue_name}")

    async def stop(self):
        if self._run_task is None:
            return
        await self.worker.close()
        self._run_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._run_task
        self._run_task = None
        self.worker = None
        logger.info("Booking worker stopped")


async def run_worker():
    """Process entry point: own the clients, run until SIGINT or SIGTERM"""
    setup_logging()
    redis_client = await init_redis()
    pool = await create_pool(
        RedisSettings.from_dsn(settings.REDIS_URL),
        default_queue_name=settings.QUEUE_NAME
    )
    container = build_container(redis_client=redis_client, task_queue=TaskQueue(pool))
    worker = BookingWorker(pool, container.task_handlers, container.dead_letters)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await worker.start()
    try:
        await stop_event.wait()
    finally:
        await worker.stop()
        await container.close()
        await close_redis()


def main():
    logger.info("Starting booking worker...")
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
