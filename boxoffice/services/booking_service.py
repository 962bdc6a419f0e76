"""
Booking lifecycle

Owns the Booking aggregate and its state machine:

    PENDING -> PAID | CANCELED | EXPIRED
    PAID    -> REFUNDED

Every transition runs under the booking's distributed lock and is written as
a conditional UPDATE on (status, version), so a transition that loses a race
changes nothing. Ticket side effects go through the reservation service,
which takes section locks after the booking lock.
"""

from datetime import timedelta
from decimal import Decimal
from functools import partial
from typing import Any, List, Optional, Sequence
import json
import logging
import time
import uuid

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.config import settings
from boxoffice.core.cache import CacheManager, booking_key, user_bookings_key, section_seats_key
from boxoffice.core.database import DatabaseManager, db_manager as default_db_manager
from boxoffice.core.exceptions import (
    AuthorizationError,
    ConflictError,
    InvalidQuantityError,
    InvalidSectionError,
    InvalidStateError,
    LockUnavailableError,
    NotFoundError,
    PaymentRejectedError,
)
from boxoffice.core.locks import LockHandle, LockManager
from boxoffice.core.metrics import BOOKING_TRANSITIONS
from boxoffice.models.base import utcnow
from boxoffice.models.booking import Booking, BookingStatus, BookingTicket, PaymentMethod
from boxoffice.models.seat_section import SeatSection
from boxoffice.schemas.booking import BookingResponse, PaymentOrderResponse, SweepItemResult, SweepReport
from boxoffice.schemas.tasks import CheckoutProof, WebhookProof, ReleaseTicketsPayload
from boxoffice.services.payment_gateway import PaymentGateway
from boxoffice.services.reservation_service import ReservationService, reservation_lock_key

logger = logging.getLogger(__name__)


def booking_lock_key(booking_id: Any) -> str:
    return f"booking:{booking_id}:operation"


class BookingService:
    """
    Creates bookings and drives them through payment, cancellation, refund and expiry
    """

    def __init__(
        self,
        reservation_service: ReservationService,
        lock_manager: LockManager,
        gateway: PaymentGateway,
        db_manager: Optional[DatabaseManager] = None,
        cache: Optional[CacheManager] = None,
        task_queue=None,
    ):
        self.reservation_service = reservation_service
        self.lock_manager = lock_manager
        self.gateway = gateway
        self.db_manager = db_manager or default_db_manager
        self.cache = cache or CacheManager()
        # Optional; used to hand off ticket releases that failed inline
        self.task_queue = task_queue
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load(self, session: AsyncSession, booking_id: uuid.UUID) -> Booking:
        result = await session.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError("Booking", booking_id)
        return booking

    async def _transition(
        self,
        session: AsyncSession,
        booking: Booking,
        to_status: BookingStatus,
        from_statuses: Sequence[BookingStatus],
        **values
    ) -> None:
        """
        Fenced state change; fails if anyone else moved the booking first
        """
        result = await session.execute(
            update(Booking)
            .where(
                Booking.id == booking.id,
                Booking.version == booking.version,
                Booking.status.in_(from_statuses)
            )
            .values(status=to_status, version=Booking.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConflictError(
                f"Booking {booking.id} was modified concurrently",
                details={"booking_id": str(booking.id)}
            )
        await session.refresh(booking)
        BOOKING_TRANSITIONS.labels(to_status=to_status.value).inc()

    @staticmethod
    def _to_response(booking: Booking) -> BookingResponse:
        return BookingResponse.model_validate(booking)

    @staticmethod
    def _ensure_held(handle: LockHandle) -> None:
        if handle.lost:
            raise LockUnavailableError(handle.resource_key)

    async def _invalidate(self, booking: Booking) -> None:
        await self.cache.invalidate_booking(booking.id, booking.user_id)

    async def _release_or_defer(self, ticket_ids: List[uuid.UUID], user_id: uuid.UUID) -> bool:
        """
        Release tickets inline; on failure hand them to the queue if one is wired
        """
        try:
            await self.reservation_service.release_tickets(ticket_ids, user_id)
            return True
        except Exception as e:
            if self.task_queue is None:
                raise
            self.logger.warning(
                f"Inline ticket release failed, queueing release task: {e}",
                extra={"user_id": user_id, "ticket_count": len(ticket_ids)}
            )
            await self.task_queue.enqueue(
                "release_tickets",
                ReleaseTicketsPayload(ticket_ids=ticket_ids, user_id=user_id)
            )
            return False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_booking(
        self,
        user_id: uuid.UUID,
        showtime_id: uuid.UUID,
        section_id: uuid.UUID,
        quantity: int,
        payment_method: Optional[PaymentMethod] = None,
    ) -> BookingResponse:
        """
        Allocate tickets and create a PENDING booking in one transaction

        The booking expires BOOKING_EXPIRATION_MINUTES after creation unless
        it is paid or canceled first.
        """
        if quantity <= 0 or quantity > settings.MAX_TICKETS_PER_BOOKING:
            raise InvalidQuantityError(quantity, settings.MAX_TICKETS_PER_BOOKING)

        async with self.db_manager.session() as session:
            section = await session.get(SeatSection, section_id)
        if section is None:
            raise NotFoundError("Section", section_id)
        if section.showtime_id != showtime_id:
            raise InvalidSectionError()
        if not section.is_active:
            raise InvalidSectionError("Section is not open for sale")

        unit_price = Decimal(section.price_tier.price)
        currency = section.price_tier.currency

        async def _create() -> Booking:
            async with self.db_manager.atomic_transaction() as session:
                now = utcnow()
                booking = Booking(
                    id=uuid.uuid4(),
                    user_id=user_id,
                    showtime_id=showtime_id,
                    section_id=section_id,
                    status=BookingStatus.PENDING,
                    total_amount=unit_price * quantity,
                    currency=currency,
                    expires_at=now + timedelta(minutes=settings.BOOKING_EXPIRATION_MINUTES),
                    payment_method=payment_method,
                    version=1,
                    booking_tickets=[],
                    created_at=now,
                    updated_at=now,
                )
                session.add(booking)
                await session.flush()

                tickets = await self.reservation_service.allocate(
                    session,
                    section_id,
                    quantity,
                    user_id=user_id,
                    booking_id=booking.id
                )
                booking.booking_tickets.extend(
                    BookingTicket(booking_id=booking.id, ticket_id=ticket.id, price=unit_price)
                    for ticket in tickets
                )
                await session.flush()
                return booking

        key = reservation_lock_key(section_id)
        booking = await self.lock_manager.with_lock(key, _create)
        if booking is None:
            raise LockUnavailableError(key)

        BOOKING_TRANSITIONS.labels(to_status=BookingStatus.PENDING.value).inc()
        await self.cache.invalidate(section_seats_key(section_id), user_bookings_key(user_id))
        self.logger.info(
            f"Created booking {booking.id} for {quantity} tickets",
            extra={"booking_id": booking.id, "user_id": user_id, "section_id": section_id, "ticket_count": quantity}
        )
        return self._to_response(booking)

    async def cancel_booking(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> BookingResponse:
        """
        Cancel a PENDING booking and return its tickets to inventory

        Strict-once: cancelling an already canceled booking is an
        InvalidStateError, not a silent success.
        """
        async def _cancel() -> Booking:
            async with self.db_manager.atomic_transaction() as session:
                booking = await self._load(session, booking_id)
                if booking.user_id != user_id:
                    raise AuthorizationError("Booking belongs to another user")
                if booking.status != BookingStatus.PENDING:
                    raise InvalidStateError(
                        f"Cannot cancel booking in status {booking.status.value}",
                        booking.status
                    )
                await self._transition(
                    session,
                    booking,
                    BookingStatus.CANCELED,
                    (BookingStatus.PENDING,),
                    canceled_at=utcnow()
                )

            await self._release_or_defer(booking.ticket_ids, booking.user_id)
            return booking

        key = booking_lock_key(booking_id)
        booking = await self.lock_manager.with_lock(key, _cancel)
        if booking is None:
            raise LockUnavailableError(key)

        await self._invalidate(booking)
        self.logger.info(
            f"Canceled booking {booking_id}",
            extra={"booking_id": booking_id, "user_id": user_id}
        )
        return self._to_response(booking)

    def _verify_proof(self, booking: Booking, external_payment_id: str, proof) -> bool:
        if isinstance(proof, CheckoutProof):
            if booking.gateway_order_id and proof.order_id != booking.gateway_order_id:
                return False
            return self.gateway.verify_signature(proof.order_id, external_payment_id, proof.signature)

        if isinstance(proof, WebhookProof):
            if not self.gateway.verify_webhook(proof.body, proof.signature):
                return False
            try:
                event = json.loads(proof.body)
            except ValueError:
                return False
            entity = event.get("payload", {}).get("payment", {}).get("entity", {})
            if entity.get("id") != external_payment_id:
                return False
            return not booking.gateway_order_id or entity.get("order_id") == booking.gateway_order_id

        return False

    async def verify_and_capture_payment(
        self,
        booking_id: uuid.UUID,
        method: PaymentMethod,
        external_payment_id: str,
        proof,
    ) -> BookingResponse:
        """
        Verify a payment proof and move the booking to PAID with its tickets SOLD

        Replays against a PAID booking return the booking unchanged without
        contacting the gateway. A late payment for a booking that is past
        its expiry but not yet swept is still accepted.
        """
        async with self.lock_manager.hold(booking_lock_key(booking_id), keepalive=True) as handle:
            async with self.db_manager.session() as session:
                booking = await self._load(session, booking_id)

            if booking.status == BookingStatus.PAID:
                if booking.external_payment_id != external_payment_id:
                    self.logger.warning(
                        f"Booking {booking_id} already paid with {booking.external_payment_id}, "
                        f"ignoring payment {external_payment_id}",
                        extra={"booking_id": booking_id}
                    )
                return self._to_response(booking)

            if booking.status != BookingStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot capture payment for booking in status {booking.status.value}",
                    booking.status
                )

            if not self._verify_proof(booking, external_payment_id, proof):
                self.logger.warning(
                    f"Payment proof rejected for booking {booking_id}",
                    extra={"booking_id": booking_id}
                )
                raise PaymentRejectedError(details={"booking_id": str(booking_id)})

            self._ensure_held(handle)
            async with self.db_manager.atomic_transaction() as session:
                booking = await self._load(session, booking_id)
                await self._transition(
                    session,
                    booking,
                    BookingStatus.PAID,
                    (BookingStatus.PENDING,),
                    payment_method=method,
                    external_payment_id=external_payment_id,
                    payment_date=utcnow()
                )
                await self.reservation_service.mark_sold(session, booking.ticket_ids)

        await self._invalidate(booking)
        self.logger.info(
            f"Captured payment {external_payment_id} for booking {booking_id}",
            extra={"booking_id": booking_id, "user_id": booking.user_id}
        )
        return self._to_response(booking)

    async def refund(
        self,
        booking_id: uuid.UUID,
        reason: Optional[str] = None,
        initiated_by: str = "system",
    ) -> BookingResponse:
        """
        Refund a PAID booking through the gateway and restock its tickets

        A gateway failure leaves the booking PAID: unreachable or 5xx is
        retryable, a refusal (GatewayRejectedError) is not. Replays against a
        REFUNDED booking return it unchanged.
        """
        async with self.lock_manager.hold(booking_lock_key(booking_id), keepalive=True) as handle:
            async with self.db_manager.session() as session:
                booking = await self._load(session, booking_id)

            if booking.status == BookingStatus.REFUNDED:
                return self._to_response(booking)
            if booking.status != BookingStatus.PAID:
                raise InvalidStateError(
                    f"Cannot refund booking in status {booking.status.value}",
                    booking.status
                )

            if booking.payment_method == PaymentMethod.RAZORPAY and booking.external_payment_id:
                refund_id = await self.gateway.refund(booking.external_payment_id, booking.total_amount)
            else:
                refund_id = f"manual-refund-{int(time.time() * 1000)}"

            self._ensure_held(handle)
            async with self.db_manager.atomic_transaction() as session:
                booking = await self._load(session, booking_id)
                await self._transition(
                    session,
                    booking,
                    BookingStatus.REFUNDED,
                    (BookingStatus.PAID,),
                    refund_id=refund_id,
                    refund_date=utcnow(),
                    refund_reason=reason,
                    refund_initiated_by=initiated_by
                )
                section_ids = await self.reservation_service.restock_sold_tickets(
                    session, booking.ticket_ids
                )

        await self._invalidate(booking)
        await self.cache.invalidate_sections(section_ids)
        self.logger.info(
            f"Refunded booking {booking_id} ({refund_id})",
            extra={"booking_id": booking_id, "user_id": booking.user_id}
        )
        return self._to_response(booking)

    async def expire_stale_bookings(self, batch_size: int = settings.SWEEP_BATCH_SIZE) -> SweepReport:
        """
        Expire up to ``batch_size`` PENDING bookings past their deadline

        Each booking is handled on its own: one that is locked or already
        moved on is skipped, and a failure on one never stops the batch.
        """
        async with self.db_manager.session() as session:
            result = await session.execute(
                select(Booking.id)
                .where(
                    Booking.status == BookingStatus.PENDING,
                    Booking.expires_at < utcnow()
                )
                .order_by(Booking.expires_at)
                .limit(batch_size)
            )
            booking_ids = list(result.scalars().all())

        report = SweepReport()
        for booking_id in booking_ids:
            report.items.append(await self._expire_one(booking_id))

        if booking_ids:
            self.logger.info(f"Expiration batch finished: {report.summary()}")
        return report

    async def _expire_one(self, booking_id: uuid.UUID) -> SweepItemResult:
        try:
            item = await self.lock_manager.with_lock(
                booking_lock_key(booking_id),
                partial(self._expire_locked, booking_id),
                retry_count=1
            )
        except Exception as e:
            self.logger.error(
                f"Failed to expire booking {booking_id}: {e}",
                extra={"booking_id": booking_id},
                exc_info=True
            )
            return SweepItemResult(booking_id=booking_id, outcome="failed", error=str(e))

        if item is None:
            return SweepItemResult(booking_id=booking_id, outcome="skipped", error="booking is locked")
        return item

    async def _expire_locked(self, booking_id: uuid.UUID) -> SweepItemResult:
        async with self.db_manager.atomic_transaction() as session:
            booking = await self._load(session, booking_id)
            now = utcnow()
            if booking.status != BookingStatus.PENDING:
                return SweepItemResult(booking_id=booking_id, outcome="skipped")

            result = await session.execute(
                update(Booking)
                .where(
                    Booking.id == booking_id,
                    Booking.version == booking.version,
                    Booking.status == BookingStatus.PENDING,
                    Booking.expires_at < now
                )
                .values(status=BookingStatus.EXPIRED, version=Booking.version + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return SweepItemResult(booking_id=booking_id, outcome="skipped")

            user_id, ticket_ids = booking.user_id, booking.ticket_ids

        BOOKING_TRANSITIONS.labels(to_status=BookingStatus.EXPIRED.value).inc()
        await self.cache.invalidate_booking(booking_id, user_id)

        released = True
        try:
            await self.reservation_service.release_tickets(ticket_ids, user_id)
        except Exception as e:
            released = False
            self.logger.warning(
                f"Expired booking {booking_id} but ticket release failed: {e}",
                extra={"booking_id": booking_id}
            )

        return SweepItemResult(
            booking_id=booking_id,
            outcome="expired",
            user_id=user_id,
            ticket_ids=ticket_ids,
            released=released
        )

    async def create_payment_order(self, booking_id: uuid.UUID, user_id: uuid.UUID) -> PaymentOrderResponse:
        """
        Create (or return the existing) gateway order for a PENDING booking
        """
        async with self.lock_manager.hold(booking_lock_key(booking_id), keepalive=True):
            async with self.db_manager.session() as session:
                booking = await self._load(session, booking_id)

            if booking.user_id != user_id:
                raise AuthorizationError("Booking belongs to another user")
            if booking.status != BookingStatus.PENDING:
                raise InvalidStateError(
                    f"Cannot pay for booking in status {booking.status.value}",
                    booking.status
                )

            order_id = booking.gateway_order_id
            if not order_id:
                order_id = await self.gateway.create_order(
                    booking.total_amount, booking.currency, str(booking.id)
                )
                async with self.db_manager.atomic_transaction() as session:
                    await session.execute(
                        update(Booking)
                        .where(Booking.id == booking_id, Booking.status == BookingStatus.PENDING)
                        .values(gateway_order_id=order_id)
                        .execution_options(synchronize_session=False)
                    )
                await self._invalidate(booking)

        return PaymentOrderResponse(
            booking_id=booking.id,
            order_id=order_id,
            amount=booking.total_amount,
            currency=booking.currency,
            key_id=getattr(self.gateway, "key_id", "")
        )

    async def find_by_gateway_order(self, order_id: str) -> Optional[uuid.UUID]:
        async with self.db_manager.session() as session:
            return await session.scalar(
                select(Booking.id).where(Booking.gateway_order_id == order_id)
            )

    async def get_booking(self, booking_id: uuid.UUID, user_id: Optional[uuid.UUID] = None) -> BookingResponse:
        cached = await self.cache.get_validated(booking_key(booking_id), BookingResponse)
        if cached is None:
            async with self.db_manager.session() as session:
                booking = await self._load(session, booking_id)
            cached = self._to_response(booking)
            await self.cache.set_validated(booking_key(booking_id), cached, settings.CACHE_TTL_BOOKING)

        if user_id is not None and cached.user_id != user_id:
            raise AuthorizationError("Booking belongs to another user")
        return cached

    async def list_user_bookings(self, user_id: uuid.UUID) -> List[BookingResponse]:
        key = user_bookings_key(user_id)
        cached = await self.cache.get_validated(key, BookingResponse, is_list=True)
        if cached is not None:
            return cached

        async with self.db_manager.session() as session:
            result = await session.execute(
                select(Booking)
                .where(Booking.user_id == user_id)
                .order_by(Booking.created_at.desc())
            )
            bookings = [self._to_response(b) for b in result.scalars().all()]

        await self.cache.set_validated(key, bookings, settings.CACHE_TTL_BOOKING)
        return bookings
