"""
Object graph for one process

The API process and the worker process each build one container from the
clients they own. Tests build it with their own database manager and a
mocked gateway.
"""

from dataclasses import dataclass
from typing import Optional

from boxoffice.core.cache import CacheManager
from boxoffice.core.database import DatabaseManager, db_manager as default_db_manager
from boxoffice.core.locks import LockManager, build_lock_manager
from boxoffice.services.booking_service import BookingService
from boxoffice.services.payment_gateway import PaymentGateway, RazorpayGateway
from boxoffice.services.reservation_service import ReservationService
from boxoffice.workers.dead_letter import DeadLetterStore
from boxoffice.workers.queue import TaskQueue
from boxoffice.workers.sweeper import ExpirationSweeper
from boxoffice.workers.tasks import TaskHandlers


@dataclass
class Container:
    db_manager: DatabaseManager
    lock_manager: LockManager
    cache: CacheManager
    gateway: PaymentGateway
    reservation_service: ReservationService
    booking_service: BookingService
    sweeper: ExpirationSweeper
    task_handlers: TaskHandlers
    dead_letters: DeadLetterStore
    task_queue: Optional[TaskQueue] = None

    async def close(self):
        close = getattr(self.gateway, "close", None)
        if close is not None:
            await close()


def build_container(
    redis_client=None,
    task_queue: Optional[TaskQueue] = None,
    gateway: Optional[PaymentGateway] = None,
    db_manager: Optional[DatabaseManager] = None,
    lock_manager: Optional[LockManager] = None,
) -> Container:
    db_manager = db_manager or default_db_manager
    lock_manager = lock_manager or build_lock_manager(redis_client, db_manager)
    cache = CacheManager(redis_client)
    gateway = gateway or RazorpayGateway()

    reservation_service = ReservationService(lock_manager, db_manager=db_manager, cache=cache)
    booking_service = BookingService(
        reservation_service,
        lock_manager,
        gateway,
        db_manager=db_manager,
        cache=cache,
        task_queue=task_queue,
    )
    sweeper = ExpirationSweeper(booking_service, task_queue=task_queue)

    return Container(
        db_manager=db_manager,
        lock_manager=lock_manager,
        cache=cache,
        gateway=gateway,
        reservation_service=reservation_service,
        booking_service=booking_service,
        sweeper=sweeper,
        task_handlers=TaskHandlers(booking_service, reservation_service, sweeper),
        dead_letters=DeadLetterStore(db_manager),
        task_queue=task_queue,
    )
