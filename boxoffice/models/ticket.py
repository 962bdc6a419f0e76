"""
Ticket and reservation lock models
"""

from sqlalchemy import Column, String, ForeignKey, Enum, Numeric, Uuid
from sqlalchemy.orm import relationship
import enum

from boxoffice.models.base import BaseModel, UTCDateTime


class TicketStatus(str, enum.Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    SOLD = "SOLD"
    CANCELED = "CANCELED"


# CANCELED tickets go back on sale exactly like AVAILABLE ones
RESERVABLE_STATUSES = (TicketStatus.AVAILABLE, TicketStatus.CANCELED)


class Ticket(BaseModel):
    """
    A single sellable seat in a section
    """
    __tablename__ = "tickets"

    section_id = Column(Uuid(as_uuid=True), ForeignKey("seat_sections.id"), nullable=False, index=True)
    status = Column(
        Enum(TicketStatus),
        default=TicketStatus.AVAILABLE,
        nullable=False,
        index=True
    )
    code = Column(String(32), unique=True, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    section = relationship("SeatSection", back_populates="tickets")
    booking_tickets = relationship("BookingTicket", back_populates="ticket")

    def __repr__(self):
        return f"<Ticket(id={self.id}, code={self.code}, status={self.status})>"


class ReservationLock(BaseModel):
    """
    Time-bounded claim on a RESERVED ticket, optionally tied to a user
    """
    __tablename__ = "reservation_locks"

    ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=False, unique=True)
    user_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    booking_id = Column(Uuid(as_uuid=True), ForeignKey("bookings.id"), nullable=True, index=True)
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    def __repr__(self):
        return f"<ReservationLock(ticket_id={self.ticket_id}, user_id={self.user_id}, expires_at={self.expires_at})>"
