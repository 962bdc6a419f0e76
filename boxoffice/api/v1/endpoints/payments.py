"""
Payment endpoints

Verification and refunds go through the task queue; the client polls the
returned job id. The webhook endpoint always answers 200 so the gateway does
not retry deliveries we already logged.
"""

from uuid import UUID
import json
import logging

from fastapi import APIRouter, Depends, Header, Request, status

from boxoffice.api.deps import get_container, get_current_user_id, get_task_queue
from boxoffice.container import Container
from boxoffice.models.booking import PaymentMethod
from boxoffice.schemas.booking import JobAccepted, PaymentOrderResponse, PaymentVerifyRequest, RefundRequest
from boxoffice.schemas.tasks import CheckoutProof, ProcessRefundPayload, VerifyPaymentPayload, WebhookProof
from boxoffice.workers.queue import TaskQueue

logger = logging.getLogger(__name__)
router = APIRouter()

CAPTURE_EVENTS = ("payment.captured", "payment.authorized")


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str = Header("", alias="X-Razorpay-Signature"),
    container: Container = Depends(get_container)
):
    body = (await request.body()).decode("utf-8", errors="replace")
    try:
        await _handle_webhook(container, body, x_razorpay_signature)
    except Exception as e:
        # Acknowledged regardless; logged for reconciliation
        logger.error(f"Webhook processing failed: {e}", exc_info=True)
    return {"status": "ok"}


async def _handle_webhook(container: Container, body: str, signature: str) -> None:
    if not container.gateway.verify_webhook(body, signature):
        logger.warning("Rejected webhook with invalid signature")
        return

    event = json.loads(body)
    event_type = event.get("event")
    entity = event.get("payload", {}).get("payment", {}).get("entity", {})
    payment_id = entity.get("id")
    order_id = entity.get("order_id")

    if event_type == "payment.failed":
        logger.warning(
            f"Payment {payment_id} failed for order {order_id}: {entity.get('error_description')}"
        )
        return
    if event_type not in CAPTURE_EVENTS:
        logger.info(f"Ignoring webhook event {event_type}")
        return

    booking_id = await container.booking_service.find_by_gateway_order(order_id) if order_id else None
    if booking_id is None:
        logger.warning(f"Webhook for unknown order {order_id}, payment {payment_id}")
        return
    if container.task_queue is None:
        logger.error(f"No task queue; webhook payment {payment_id} for booking {booking_id} not processed")
        return

    await container.task_queue.enqueue(
        "verify_payment",
        VerifyPaymentPayload(
            booking_id=booking_id,
            method=PaymentMethod.RAZORPAY,
            external_payment_id=payment_id,
            proof=WebhookProof(body=body, signature=signature)
        ),
        job_id=f"verify:{booking_id}:{payment_id}"
    )


@router.post("/{booking_id}/order", response_model=PaymentOrderResponse)
async def create_payment_order(
    booking_id: UUID,
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container)
):
    """Create the gateway order the client completes checkout against"""
    return await container.booking_service.create_payment_order(booking_id, user_id)


@router.post("/{booking_id}/verify", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def verify_payment(
    booking_id: UUID,
    verify_data: PaymentVerifyRequest,
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container),
    task_queue: TaskQueue = Depends(get_task_queue)
):
    """Queue verification of a checkout callback"""
    await container.booking_service.get_booking(booking_id, user_id=user_id)
    job_id = await task_queue.enqueue(
        "verify_payment",
        VerifyPaymentPayload(
            booking_id=booking_id,
            method=PaymentMethod.RAZORPAY,
            external_payment_id=verify_data.razorpay_payment_id,
            proof=CheckoutProof(
                order_id=verify_data.razorpay_order_id,
                signature=verify_data.razorpay_signature
            )
        ),
        job_id=f"verify:{booking_id}:{verify_data.razorpay_payment_id}"
    )
    return JobAccepted(job_id=job_id, task="verify_payment")


@router.post("/{booking_id}/refund", response_model=JobAccepted, status_code=status.HTTP_202_ACCEPTED)
async def refund_booking(
    booking_id: UUID,
    refund_data: RefundRequest,
    user_id: UUID = Depends(get_current_user_id),
    container: Container = Depends(get_container),
    task_queue: TaskQueue = Depends(get_task_queue)
):
    """Queue a refund of a PAID booking"""
    await container.booking_service.get_booking(booking_id, user_id=user_id)
    job_id = await task_queue.enqueue(
        "process_refund",
        ProcessRefundPayload(
            booking_id=booking_id,
            reason=refund_data.reason,
            initiated_by=str(user_id)
        )
    )
    return JobAccepted(job_id=job_id, task="process_refund")
