"""
Task handlers

One coroutine per task name. Each takes its validated payload and returns a
small JSON-able result stored by arq. Handlers are safe to replay: running
one twice leaves the same state as running it once.
"""

from typing import Any, Awaitable, Callable, Dict
import logging

from boxoffice.core.exceptions import InvalidStateError
from boxoffice.models.booking import BookingStatus
from boxoffice.schemas.tasks import (
    CancelBookingPayload,
    VerifyPaymentPayload,
    ProcessRefundPayload,
    ReleaseTicketsPayload,
    ExpireBookingsPayload,
    ReleaseExpiredReservationLocksPayload,
)
from boxoffice.services.booking_service import BookingService
from boxoffice.services.reservation_service import ReservationService
from boxoffice.workers.sweeper import ExpirationSweeper

logger = logging.getLogger(__name__)

TASK_NAMES = (
    "cancel_booking",
    "verify_payment",
    "process_refund",
    "release_tickets",
    "expire_bookings",
    "release_expired_reservation_locks",
)


class TaskHandlers:
    def __init__(
        self,
        booking_service: BookingService,
        reservation_service: ReservationService,
        sweeper: ExpirationSweeper,
    ):
        self.booking_service = booking_service
        self.reservation_service = reservation_service
        self.sweeper = sweeper

    def handler_for(self, task_name: str) -> Callable[[Any], Awaitable[Dict[str, Any]]]:
        if task_name not in TASK_NAMES:
            raise KeyError(f"No handler registered for task {task_name}")
        return getattr(self, task_name)

    async def cancel_booking(self, payload: CancelBookingPayload) -> Dict[str, Any]:
        try:
            booking = await self.booking_service.cancel_booking(payload.booking_id, payload.user_id)
        except InvalidStateError as e:
            # A replay after a successful cancel finds the booking already CANCELED
            if e.details.get("status") != BookingStatus.CANCELED.value:
                raise
            logger.info(
                f"Booking {payload.booking_id} already canceled",
                extra={"booking_id": payload.booking_id}
            )
            return {"booking_id": str(payload.booking_id), "status": BookingStatus.CANCELED.value, "replayed": True}
        return {"booking_id": str(booking.id), "status": booking.status}

    async def verify_payment(self, payload: VerifyPaymentPayload) -> Dict[str, Any]:
        booking = await self.booking_service.verify_and_capture_payment(
            payload.booking_id,
            payload.method,
            payload.external_payment_id,
            payload.proof
        )
        return {"booking_id": str(booking.id), "status": booking.status}

    async def process_refund(self, payload: ProcessRefundPayload) -> Dict[str, Any]:
        booking = await self.booking_service.refund(
            payload.booking_id,
            reason=payload.reason,
            initiated_by=payload.initiated_by
        )
        return {"booking_id": str(booking.id), "status": booking.status, "refund_id": booking.refund_id}

    async def release_tickets(self, payload: ReleaseTicketsPayload) -> Dict[str, Any]:
        released = await self.reservation_service.release_tickets(payload.ticket_ids, payload.user_id)
        return {"released": released}

    async def expire_bookings(self, payload: ExpireBookingsPayload) -> Dict[str, Any]:
        return await self.sweeper.sweep(payload.batch_size)

    async def release_expired_reservation_locks(
        self,
        payload: ReleaseExpiredReservationLocksPayload,
    ) -> Dict[str, Any]:
        return await self.reservation_service.release_expired_reservation_locks(payload.batch_size)
