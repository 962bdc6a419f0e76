"""
HTTP API tests
The application container is built from the test fixtures; lifespan is not run
"""

from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from boxoffice.main import app
from boxoffice.schemas.tasks import CheckoutProof, ProcessRefundPayload, VerifyPaymentPayload, WebhookProof


@pytest_asyncio.fixture
async def client(container):
    app.state.container = container
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def headers(user_id):
    return {"X-User-Id": str(user_id)}


@pytest_asyncio.fixture
async def created(client, section, headers):
    response = await client.post("/api/v1/bookings", json={
        "showtime_id": str(section.showtime_id),
        "section_id": str(section.id),
        "quantity": 2,
    }, headers=headers)
    assert response.status_code == 201
    return response.json()


@pytest.mark.asyncio
class TestBookingEndpoints:

    async def test_create_booking(self, created, section):
        assert created["status"] == "PENDING"
        assert created["section_id"] == str(section.id)
        assert len(created["ticket_ids"]) == 2
        assert created["total_amount"] == "500.00"

    async def test_missing_identity(self, client, section):
        response = await client.post("/api/v1/bookings", json={
            "showtime_id": str(section.showtime_id),
            "section_id": str(section.id),
            "quantity": 1,
        })

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_ERROR"

    async def test_quantity_validated(self, client, section, headers):
        response = await client.post("/api/v1/bookings", json={
            "showtime_id": str(section.showtime_id),
            "section_id": str(section.id),
            "quantity": 11,
        }, headers=headers)

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    async def test_insufficient_inventory(self, client, make_section, headers):
        small = await make_section(seats=1)

        response = await client.post("/api/v1/bookings", json={
            "showtime_id": str(small.showtime_id),
            "section_id": str(small.id),
            "quantity": 2,
        }, headers=headers)

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INSUFFICIENT_INVENTORY"
        assert body["error"]["details"]["available"] == 1

    async def test_get_and_list(self, client, created, headers):
        response = await client.get(f"/api/v1/bookings/{created['id']}", headers=headers)
        assert response.status_code == 200
        assert response.json()["id"] == created["id"]

        response = await client.get("/api/v1/bookings", headers=headers)
        assert [b["id"] for b in response.json()] == [created["id"]]

    async def test_other_user_forbidden(self, client, created):
        response = await client.get(
            f"/api/v1/bookings/{created['id']}", headers={"X-User-Id": str(uuid4())}
        )

        assert response.status_code == 403

    async def test_unknown_booking(self, client, headers):
        response = await client.get(f"/api/v1/bookings/{uuid4()}", headers=headers)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_cancel_twice(self, client, created, headers):
        first = await client.post(f"/api/v1/bookings/{created['id']}/cancel", headers=headers)
        second = await client.post(f"/api/v1/bookings/{created['id']}/cancel", headers=headers)

        assert first.status_code == 200
        assert first.json()["status"] == "CANCELED"
        assert second.status_code == 409
        assert second.json()["error"]["code"] == "INVALID_STATE"
        assert "Retry-After" not in second.headers

    async def test_lock_busy_is_retryable(self, client, created, headers, lock_manager):
        await lock_manager.acquire_lock(f"booking:{created['id']}:operation")

        response = await client.post(f"/api/v1/bookings/{created['id']}/cancel", headers=headers)

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "LOCK_BUSY"
        assert response.headers["Retry-After"] == "1"


@pytest.mark.asyncio
class TestPaymentEndpoints:

    async def test_create_order(self, client, created, headers):
        response = await client.post(f"/api/v1/payments/{created['id']}/order", headers=headers)

        assert response.status_code == 200
        body = response.json()
        assert body["order_id"].startswith("order_")
        assert body["key_id"] == "rzp_test_key"

    async def test_verify_is_queued(self, client, created, headers, task_queue):
        response = await client.post(f"/api/v1/payments/{created['id']}/verify", json={
            "razorpay_order_id": "order_1",
            "razorpay_payment_id": "pay_1",
            "razorpay_signature": "sig",
        }, headers=headers)

        assert response.status_code == 202
        assert response.json() == {"job_id": "job-123", "task": "verify_payment", "status": "queued"}
        args, kwargs = task_queue.enqueue.await_args
        assert args[0] == "verify_payment"
        assert isinstance(args[1], VerifyPaymentPayload)
        assert isinstance(args[1].proof, CheckoutProof)
        assert kwargs["job_id"] == f"verify:{created['id']}:pay_1"

    async def test_refund_is_queued(self, client, created, headers, task_queue, user_id):
        response = await client.post(
            f"/api/v1/payments/{created['id']}/refund", json={"reason": "Cannot attend"}, headers=headers
        )

        assert response.status_code == 202
        payload = task_queue.enqueue.await_args.args[1]
        assert isinstance(payload, ProcessRefundPayload)
        assert payload.reason == "Cannot attend"
        assert payload.initiated_by == str(user_id)

    async def test_queue_not_configured(self, client, created, headers, container):
        container.task_queue = None

        response = await client.post(
            f"/api/v1/payments/{created['id']}/refund", json={}, headers=headers
        )

        assert response.status_code == 503

    async def test_webhook_queues_capture(self, client, created, headers, task_queue, webhook_event):
        order = (await client.post(f"/api/v1/payments/{created['id']}/order", headers=headers)).json()
        body, signature = webhook_event("pay_hook", order["order_id"])

        response = await client.post(
            "/api/v1/payments/webhook",
            content=body,
            headers={"X-Razorpay-Signature": signature, "Content-Type": "application/json"}
        )

        assert response.status_code == 200
        args, kwargs = task_queue.enqueue.await_args
        assert args[0] == "verify_payment"
        assert isinstance(args[1].proof, WebhookProof)
        assert str(args[1].booking_id) == created["id"]
        assert kwargs["job_id"] == f"verify:{created['id']}:pay_hook"

    async def test_webhook_bad_signature_acknowledged_and_ignored(self, client, task_queue, webhook_event):
        body, _ = webhook_event("pay_hook", "order_unknown")

        response = await client.post(
            "/api/v1/payments/webhook", content=body, headers={"X-Razorpay-Signature": "forged"}
        )

        assert response.status_code == 200
        task_queue.enqueue.assert_not_awaited()

    async def test_webhook_failed_payment_not_queued(self, client, task_queue, webhook_event):
        body, signature = webhook_event("pay_hook", "order_1", event="payment.failed")

        response = await client.post(
            "/api/v1/payments/webhook", content=body, headers={"X-Razorpay-Signature": signature}
        )

        assert response.status_code == 200
        task_queue.enqueue.assert_not_awaited()


@pytest.mark.asyncio
class TestOperationalEndpoints:

    async def test_job_status(self, client, task_queue):
        task_queue.job_status.return_value = {"job_id": "job-1", "status": "complete", "result": {"status": "completed"}}

        response = await client.get("/api/v1/jobs/job-1")

        assert response.status_code == 200
        assert response.json()["result"] == {"status": "completed"}

    async def test_unknown_job(self, client, task_queue):
        task_queue.job_status.return_value = None

        response = await client.get("/api/v1/jobs/missing")

        assert response.status_code == 404

    async def test_health(self, client):
        assert (await client.get("/health/live")).json() == {"status": "alive"}

        response = await client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"] == {"database": "ok"}

    async def test_request_id_echoed(self, client):
        response = await client.get("/health/live", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
