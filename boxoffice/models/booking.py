"""
Booking and BookingTicket models
"""

from sqlalchemy import Column, String, Integer, ForeignKey, Enum, Numeric, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
import enum

from boxoffice.models.base import BaseModel, UTCDateTime


class BookingStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"
    REFUNDED = "REFUNDED"


# A ticket linked to one of these bookings is held and must not be released
ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.PAID)
TERMINAL_BOOKING_STATUSES = (BookingStatus.CANCELED, BookingStatus.EXPIRED, BookingStatus.REFUNDED)


class PaymentMethod(str, enum.Enum):
    RAZORPAY = "RAZORPAY"
    MANUAL = "MANUAL"


class Booking(BaseModel):
    """
    Booking aggregate; ``version`` increments on every state transition
    """
    __tablename__ = "bookings"

    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    showtime_id = Column(Uuid(as_uuid=True), nullable=False)
    section_id = Column(Uuid(as_uuid=True), ForeignKey("seat_sections.id"), nullable=False)
    status = Column(
        Enum(BookingStatus),
        default=BookingStatus.PENDING,
        nullable=False,
        index=True
    )
    total_amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")
    expires_at = Column(UTCDateTime, nullable=False, index=True)

    payment_method = Column(Enum(PaymentMethod), nullable=True)
    external_payment_id = Column(String(255), nullable=True)
    gateway_order_id = Column(String(255), nullable=True, index=True)
    payment_date = Column(UTCDateTime, nullable=True)

    refund_id = Column(String(255), nullable=True)
    refund_date = Column(UTCDateTime, nullable=True)
    refund_reason = Column(String(500), nullable=True)
    refund_initiated_by = Column(String(255), nullable=True)

    canceled_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False, default=1)

    booking_tickets = relationship(
        "BookingTicket",
        back_populates="booking",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def ticket_ids(self):
        return [bt.ticket_id for bt in self.booking_tickets]

    def __repr__(self):
        return f"<Booking(id={self.id}, status={self.status}, amount={self.total_amount}, version={self.version})>"


class BookingTicket(BaseModel):
    """
    Junction table for booking-ticket relationship
    """
    __tablename__ = "booking_tickets"
    __table_args__ = (
        UniqueConstraint("booking_id", "ticket_id", name="uq_booking_ticket"),
    )

    booking_id = Column(Uuid(as_uuid=True), ForeignKey("bookings.id"), nullable=False, index=True)
    ticket_id = Column(Uuid(as_uuid=True), ForeignKey("tickets.id"), nullable=False, index=True)
    price = Column(Numeric(10, 2), nullable=False)

    booking = relationship("Booking", back_populates="booking_tickets")
    ticket = relationship("Ticket", back_populates="booking_tickets")

    def __repr__(self):
        return f"<BookingTicket(booking_id={self.booking_id}, ticket_id={self.ticket_id}, price={self.price})>"
