"""
Seat inventory allocation and release

Every mutation runs under a per-section distributed lock and inside a single
transaction. Ticket status flips are conditional UPDATEs whose rowcount is
checked, and the section counter is adjusted by SQL expressions so it never
drifts from the ticket rows.
"""

from collections import defaultdict
from datetime import timedelta
from functools import partial
from typing import Any, Dict, Iterable, List, Optional, Sequence
import logging
import uuid

from sqlalchemy import select, update, delete
from sqlalchemy.ext.asyncio import AsyncSession

from boxoffice.config import settings
from boxoffice.core.cache import CacheManager, section_seats_key
from boxoffice.core.database import DatabaseManager, db_manager as default_db_manager
from boxoffice.core.exceptions import (
    ConflictError,
    InsufficientInventoryError,
    InvalidQuantityError,
    InvalidSectionError,
    LockUnavailableError,
    NotFoundError,
)
from boxoffice.core.locks import LockManager
from boxoffice.core.metrics import TICKETS_RESERVED, TICKETS_RELEASED
from boxoffice.models.base import utcnow
from boxoffice.models.booking import Booking, BookingTicket, ACTIVE_BOOKING_STATUSES
from boxoffice.models.seat_section import SeatSection
from boxoffice.models.ticket import Ticket, TicketStatus, ReservationLock, RESERVABLE_STATUSES

logger = logging.getLogger(__name__)


def reservation_lock_key(section_id: Any) -> str:
    return f"section:{section_id}:reservation"


def release_lock_key(section_id: Any) -> str:
    return f"section:{section_id}:release"


def held_ticket_ids():
    """Tickets linked to a PENDING or PAID booking"""
    return (
        select(BookingTicket.ticket_id)
        .join(Booking, Booking.id == BookingTicket.booking_id)
        .where(Booking.status.in_(ACTIVE_BOOKING_STATUSES))
    )


class ReservationService:
    """
    Allocates tickets out of a section and returns them to inventory
    """

    def __init__(
        self,
        lock_manager: LockManager,
        db_manager: Optional[DatabaseManager] = None,
        cache: Optional[CacheManager] = None,
    ):
        self.lock_manager = lock_manager
        self.db_manager = db_manager or default_db_manager
        self.cache = cache or CacheManager()
        self.logger = logging.getLogger(__name__)

    async def allocate(
        self,
        session: AsyncSession,
        section_id: uuid.UUID,
        quantity: int,
        user_id: Optional[uuid.UUID] = None,
        booking_id: Optional[uuid.UUID] = None,
    ) -> List[Ticket]:
        """
        Move ``quantity`` reservable tickets to RESERVED inside the caller's transaction

        The caller must hold the section reservation lock. Nothing is
        mutated unless every requested ticket can be taken.
        """
        section = await session.get(SeatSection, section_id)
        if section is None:
            raise NotFoundError("Section", section_id)
        if not section.is_active:
            raise InvalidSectionError("Section is not open for sale")
        if section.available_seats < quantity:
            raise InsufficientInventoryError(section_id, quantity, section.available_seats)

        result = await session.execute(
            select(Ticket)
            .where(
                Ticket.section_id == section_id,
                Ticket.status.in_(RESERVABLE_STATUSES)
            )
            .order_by(Ticket.code)
            .limit(quantity)
        )
        tickets = list(result.scalars().all())
        if len(tickets) < quantity:
            self.logger.warning(
                f"Section {section_id} counter shows {section.available_seats} seats "
                f"but only {len(tickets)} reservable tickets exist",
                extra={"section_id": section_id}
            )
            raise InsufficientInventoryError(section_id, quantity, len(tickets))

        ticket_ids = [ticket.id for ticket in tickets]
        flipped = await session.execute(
            update(Ticket)
            .where(
                Ticket.id.in_(ticket_ids),
                Ticket.status.in_(RESERVABLE_STATUSES)
            )
            .values(status=TicketStatus.RESERVED)
            .execution_options(synchronize_session=False)
        )
        if flipped.rowcount != quantity:
            raise ConflictError(
                "Tickets were taken by a concurrent reservation",
                details={"section_id": str(section_id)}
            )

        counted = await session.execute(
            update(SeatSection)
            .where(
                SeatSection.id == section_id,
                SeatSection.available_seats >= quantity
            )
            .values(available_seats=SeatSection.available_seats - quantity)
            .execution_options(synchronize_session=False)
        )
        if counted.rowcount != 1:
            raise InsufficientInventoryError(section_id, quantity, section.available_seats)

        # Every claim gets a lock row, so expiry cleanup can always find it
        expires_at = utcnow() + timedelta(minutes=settings.RESERVATION_LOCK_MINUTES)
        await session.execute(
            delete(ReservationLock).where(ReservationLock.ticket_id.in_(ticket_ids))
        )
        session.add_all([
            ReservationLock(
                ticket_id=ticket_id,
                user_id=user_id,
                booking_id=booking_id,
                expires_at=expires_at
            )
            for ticket_id in ticket_ids
        ])
        await session.flush()

        for ticket in tickets:
            ticket.status = TicketStatus.RESERVED
        TICKETS_RESERVED.inc(quantity)
        return tickets

    async def reserve_tickets(
        self,
        section_id: uuid.UUID,
        quantity: int,
        user_id: Optional[uuid.UUID] = None,
    ) -> List[uuid.UUID]:
        """
        Reserve tickets without a booking; the claim expires with its reservation lock
        """
        if quantity <= 0:
            raise InvalidQuantityError(quantity)

        async def _reserve() -> List[uuid.UUID]:
            async with self.db_manager.atomic_transaction() as session:
                tickets = await self.allocate(session, section_id, quantity, user_id=user_id)
                return [ticket.id for ticket in tickets]

        key = reservation_lock_key(section_id)
        ticket_ids = await self.lock_manager.with_lock(key, _reserve)
        if ticket_ids is None:
            raise LockUnavailableError(key)

        await self.cache.invalidate(section_seats_key(section_id))
        self.logger.info(
            f"Reserved {len(ticket_ids)} tickets in section {section_id}",
            extra={"section_id": section_id, "user_id": user_id, "ticket_count": len(ticket_ids)}
        )
        return ticket_ids

    async def release_tickets(
        self,
        ticket_ids: Iterable[uuid.UUID],
        user_id: Optional[uuid.UUID] = None,
    ) -> int:
        """
        Return RESERVED tickets to inventory

        Tickets still linked to a PENDING or PAID booking are left alone.
        Safe to replay: a second call finds nothing RESERVED and releases 0.
        """
        ticket_ids = list(dict.fromkeys(ticket_ids))
        if not ticket_ids:
            return 0

        async with self.db_manager.session() as session:
            result = await session.execute(
                select(Ticket.id, Ticket.section_id).where(Ticket.id.in_(ticket_ids))
            )
            by_section: Dict[uuid.UUID, List[uuid.UUID]] = defaultdict(list)
            for ticket_id, section_id in result.all():
                by_section[section_id].append(ticket_id)

        released = 0
        for section_id in sorted(by_section, key=str):
            key = release_lock_key(section_id)
            count = await self.lock_manager.with_lock(
                key,
                partial(self._release_section, section_id, by_section[section_id], user_id)
            )
            if count is None:
                raise LockUnavailableError(key)
            released += count
            await self.cache.invalidate(section_seats_key(section_id))

        if released:
            TICKETS_RELEASED.labels(reason="release").inc(released)
        self.logger.info(
            f"Released {released} of {len(ticket_ids)} tickets",
            extra={"user_id": user_id, "ticket_count": released}
        )
        return released

    async def _release_section(
        self,
        section_id: uuid.UUID,
        ticket_ids: Sequence[uuid.UUID],
        user_id: Optional[uuid.UUID],
    ) -> int:
        async with self.db_manager.atomic_transaction() as session:
            lock_rows = delete(ReservationLock).where(ReservationLock.ticket_id.in_(ticket_ids))
            if user_id is not None:
                lock_rows = lock_rows.where(ReservationLock.user_id == user_id)
            await session.execute(lock_rows)

            result = await session.execute(
                update(Ticket)
                .where(
                    Ticket.id.in_(ticket_ids),
                    Ticket.section_id == section_id,
                    Ticket.status == TicketStatus.RESERVED,
                    Ticket.id.not_in(held_ticket_ids())
                )
                .values(status=TicketStatus.AVAILABLE)
                .execution_options(synchronize_session=False)
            )
            released = result.rowcount

            if released:
                await session.execute(
                    update(SeatSection)
                    .where(SeatSection.id == section_id)
                    .values(available_seats=SeatSection.available_seats + released)
                    .execution_options(synchronize_session=False)
                )
            return released

    async def mark_sold(self, session: AsyncSession, ticket_ids: Sequence[uuid.UUID]) -> int:
        """
        RESERVED to SOLD inside the caller's transaction; clears reservation locks
        """
        if not ticket_ids:
            return 0
        result = await session.execute(
            update(Ticket)
            .where(
                Ticket.id.in_(ticket_ids),
                Ticket.status == TicketStatus.RESERVED
            )
            .values(status=TicketStatus.SOLD)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(ticket_ids):
            raise ConflictError(
                "Booked tickets are no longer reserved",
                details={"expected": len(ticket_ids), "reserved": result.rowcount}
            )
        await session.execute(
            delete(ReservationLock).where(ReservationLock.ticket_id.in_(ticket_ids))
        )
        return result.rowcount

    async def restock_sold_tickets(
        self,
        session: AsyncSession,
        ticket_ids: Sequence[uuid.UUID],
    ) -> List[uuid.UUID]:
        """
        SOLD to AVAILABLE inside the caller's transaction

        Returns the ids of sections whose counters changed.
        """
        if not ticket_ids:
            return []
        result = await session.execute(
            select(Ticket.section_id)
            .where(Ticket.id.in_(ticket_ids), Ticket.status == TicketStatus.SOLD)
            .distinct()
        )
        section_ids = sorted(result.scalars().all(), key=str)

        restocked = 0
        for section_id in section_ids:
            flipped = await session.execute(
                update(Ticket)
                .where(
                    Ticket.id.in_(ticket_ids),
                    Ticket.section_id == section_id,
                    Ticket.status == TicketStatus.SOLD
                )
                .values(status=TicketStatus.AVAILABLE)
                .execution_options(synchronize_session=False)
            )
            if flipped.rowcount:
                await session.execute(
                    update(SeatSection)
                    .where(SeatSection.id == section_id)
                    .values(available_seats=SeatSection.available_seats + flipped.rowcount)
                    .execution_options(synchronize_session=False)
                )
                restocked += flipped.rowcount

        if restocked:
            TICKETS_RELEASED.labels(reason="refund").inc(restocked)
        return section_ids

    async def release_expired_reservation_locks(
        self,
        batch_size: int = settings.RESERVATION_CLEANUP_BATCH_SIZE,
    ) -> Dict[str, int]:
        """
        Release tickets whose reservation lock expired and that no active booking holds
        """
        async with self.db_manager.session() as session:
            result = await session.execute(
                select(ReservationLock.ticket_id, ReservationLock.user_id)
                .where(
                    ReservationLock.expires_at < utcnow(),
                    ReservationLock.ticket_id.not_in(held_ticket_ids())
                )
                .order_by(ReservationLock.expires_at)
                .limit(batch_size)
            )
            rows = result.all()

        by_user: Dict[uuid.UUID, List[uuid.UUID]] = defaultdict(list)
        for ticket_id, user_id in rows:
            by_user[user_id].append(ticket_id)

        report = {"locks": len(rows), "users": len(by_user), "released": 0, "failed": 0}
        for user_id, ticket_ids in by_user.items():
            try:
                report["released"] += await self.release_tickets(ticket_ids, user_id)
            except LockUnavailableError as e:
                # Picked up again by the next cleanup run
                report["failed"] += 1
                self.logger.warning(
                    f"Deferred release of {len(ticket_ids)} expired reservations: {e.message}",
                    extra={"user_id": user_id}
                )

        if rows:
            self.logger.info(f"Expired reservation cleanup: {report}")
        return report

    async def get_available_seat_count(self, section_id: uuid.UUID) -> int:
        """
        Advisory seat count; the cache may lag the database by its TTL
        """
        key = section_seats_key(section_id)
        cached = await self.cache.get_int(key)
        if cached is not None:
            return cached

        async with self.db_manager.session() as session:
            available = await session.scalar(
                select(SeatSection.available_seats).where(SeatSection.id == section_id)
            )
        if available is None:
            raise NotFoundError("Section", section_id)

        await self.cache.set_int(key, available, settings.CACHE_TTL_SECTION)
        return available
