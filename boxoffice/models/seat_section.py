"""
Price tier and seat section models
"""

from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, Numeric, Uuid, CheckConstraint
from sqlalchemy.orm import relationship

from boxoffice.models.base import BaseModel


class PriceTier(BaseModel):
    """
    Flat unit price shared by one or more sections
    """
    __tablename__ = "price_tiers"

    name = Column(String(100), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="INR")

    sections = relationship("SeatSection", back_populates="price_tier")

    def __repr__(self):
        return f"<PriceTier(id={self.id}, name={self.name}, price={self.price} {self.currency})>"


class SeatSection(BaseModel):
    """
    Section of a showtime; ``available_seats`` is the authoritative unsold count
    """
    __tablename__ = "seat_sections"
    __table_args__ = (
        CheckConstraint("available_seats >= 0", name="ck_section_available_seats_non_negative"),
    )

    # Showtimes are owned by another service
    showtime_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    price_tier_id = Column(Uuid(as_uuid=True), ForeignKey("price_tiers.id"), nullable=False)
    name = Column(String(100), nullable=False)
    available_seats = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    price_tier = relationship("PriceTier", back_populates="sections", lazy="joined")
    tickets = relationship("Ticket", back_populates="section")

    def __repr__(self):
        return f"<SeatSection(id={self.id}, name={self.name}, available={self.available_seats})>"
