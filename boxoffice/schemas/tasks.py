"""
Versioned task payloads

Every queued task carries one of these payloads, tagged by ``task``. Payloads
are validated when a worker dequeues them; a payload that fails validation is
dead-lettered without retry.
"""

from typing import Annotated, Any, List, Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from boxoffice.config import settings
from boxoffice.core.exceptions import TaskPayloadError
from boxoffice.models.booking import PaymentMethod


class CheckoutProof(BaseModel):
    """Signature returned to the client by checkout"""
    kind: Literal["checkout"] = "checkout"
    order_id: str
    signature: str


class WebhookProof(BaseModel):
    """Raw webhook body with its HMAC header"""
    kind: Literal["webhook"] = "webhook"
    body: str
    signature: str


PaymentProof = Annotated[Union[CheckoutProof, WebhookProof], Field(discriminator="kind")]


class TaskPayloadBase(BaseModel):
    version: Literal[1] = 1


class CancelBookingPayload(TaskPayloadBase):
    task: Literal["cancel_booking"] = "cancel_booking"
    booking_id: UUID
    user_id: UUID


class VerifyPaymentPayload(TaskPayloadBase):
    task: Literal["verify_payment"] = "verify_payment"
    booking_id: UUID
    method: PaymentMethod = PaymentMethod.RAZORPAY
    external_payment_id: str = Field(..., min_length=1)
    proof: PaymentProof


class ProcessRefundPayload(TaskPayloadBase):
    task: Literal["process_refund"] = "process_refund"
    booking_id: UUID
    reason: Optional[str] = None
    initiated_by: str = "system"


class ReleaseTicketsPayload(TaskPayloadBase):
    task: Literal["release_tickets"] = "release_tickets"
    ticket_ids: List[UUID] = Field(..., min_length=1)
    user_id: Optional[UUID] = None


class ExpireBookingsPayload(TaskPayloadBase):
    task: Literal["expire_bookings"] = "expire_bookings"
    batch_size: int = Field(settings.SWEEP_BATCH_SIZE, ge=1)


class ReleaseExpiredReservationLocksPayload(TaskPayloadBase):
    task: Literal["release_expired_reservation_locks"] = "release_expired_reservation_locks"
    batch_size: int = Field(settings.RESERVATION_CLEANUP_BATCH_SIZE, ge=1)


TaskPayload = Annotated[
    Union[
        CancelBookingPayload,
        VerifyPaymentPayload,
        ProcessRefundPayload,
        ReleaseTicketsPayload,
        ExpireBookingsPayload,
        ReleaseExpiredReservationLocksPayload,
    ],
    Field(discriminator="task"),
]

task_payload_adapter = TypeAdapter(TaskPayload)


def parse_task_payload(task_name: str, data: Any):
    """
    Validate a dequeued payload against the schema registered for ``task_name``
    """
    if not isinstance(data, dict):
        raise TaskPayloadError(task_name, f"expected an object, got {type(data).__name__}")
    if data.get("task", task_name) != task_name:
        raise TaskPayloadError(task_name, f"payload is tagged {data.get('task')!r}")
    try:
        return task_payload_adapter.validate_python({**data, "task": task_name})
    except ValidationError as e:
        raise TaskPayloadError(task_name, str(e)) from e
