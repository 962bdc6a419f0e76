"""
Booking and payment schemas
"""

from pydantic import Field
from typing import List, Optional, Literal
from uuid import UUID
from datetime import datetime
from decimal import Decimal

from boxoffice.schemas.base import BaseSchema, IDSchema, TimestampSchema
from boxoffice.models.booking import BookingStatus, PaymentMethod
from boxoffice.config import settings


class BookingCreate(BaseSchema):
    """Booking creation schema"""
    showtime_id: UUID
    section_id: UUID
    quantity: int = Field(..., ge=1, le=settings.MAX_TICKETS_PER_BOOKING)
    payment_method: Optional[PaymentMethod] = None


class BookingResponse(IDSchema, TimestampSchema):
    """Booking summary, also the cached representation"""
    user_id: UUID
    showtime_id: UUID
    section_id: UUID
    status: BookingStatus
    total_amount: Decimal
    currency: str
    expires_at: datetime
    ticket_ids: List[UUID] = []
    payment_method: Optional[PaymentMethod] = None
    external_payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    payment_date: Optional[datetime] = None
    refund_id: Optional[str] = None
    refund_date: Optional[datetime] = None
    refund_reason: Optional[str] = None
    refund_initiated_by: Optional[str] = None
    canceled_at: Optional[datetime] = None
    version: int


class PaymentOrderResponse(BaseSchema):
    """Gateway order the client completes checkout against"""
    booking_id: UUID
    order_id: str
    amount: Decimal
    currency: str
    key_id: str


class PaymentVerifyRequest(BaseSchema):
    """Razorpay checkout callback fields"""
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)


class RefundRequest(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


class JobAccepted(BaseSchema):
    """Response for operations handed to the task queue"""
    job_id: str
    task: str
    status: str = "queued"


class JobStatusResponse(BaseSchema):
    job_id: str
    status: str
    result: Optional[dict] = None


class SweepItemResult(BaseSchema):
    booking_id: UUID
    outcome: Literal["expired", "skipped", "failed"]
    user_id: Optional[UUID] = None
    ticket_ids: List[UUID] = []
    released: bool = False
    error: Optional[str] = None


class SweepReport(BaseSchema):
    """Outcome of one expiration batch"""
    items: List[SweepItemResult] = []

    @property
    def expired(self) -> int:
        return sum(1 for item in self.items if item.outcome == "expired")

    @property
    def skipped(self) -> int:
        return sum(1 for item in self.items if item.outcome == "skipped")

    @property
    def failed(self) -> int:
        return sum(1 for item in self.items if item.outcome == "failed")

    @property
    def pending_release(self) -> List[SweepItemResult]:
        """Expired bookings whose inline ticket release did not complete"""
        return [item for item in self.items if item.outcome == "expired" and not item.released]

    def summary(self) -> dict:
        return {"expired": self.expired, "skipped": self.skipped, "failed": self.failed}
