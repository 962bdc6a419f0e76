"""
Database models
"""

from boxoffice.models.base import BaseModel
from boxoffice.models.seat_section import PriceTier, SeatSection
from boxoffice.models.ticket import Ticket, TicketStatus, ReservationLock, RESERVABLE_STATUSES
from boxoffice.models.booking import (
    Booking,
    BookingStatus,
    BookingTicket,
    PaymentMethod,
    ACTIVE_BOOKING_STATUSES,
    TERMINAL_BOOKING_STATUSES,
)
from boxoffice.models.lock import DistributedLock
from boxoffice.models.dead_letter import DeadLetterTask, DeadLetterStatus

__all__ = [
    "BaseModel",
    "PriceTier",
    "SeatSection",
    "Ticket",
    "TicketStatus",
    "ReservationLock",
    "RESERVABLE_STATUSES",
    "Booking",
    "BookingStatus",
    "BookingTicket",
    "PaymentMethod",
    "ACTIVE_BOOKING_STATUSES",
    "TERMINAL_BOOKING_STATUSES",
    "DistributedLock",
    "DeadLetterTask",
    "DeadLetterStatus",
]
