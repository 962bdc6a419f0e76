"""
Test configuration and fixtures
Async SQLAlchemy against a file-backed SQLite database; Redis and arq are mocked
"""

import hashlib
import hmac
import json
import os
import tempfile
from datetime import timedelta
from decimal import Decimal
from typing import List
from unittest.mock import AsyncMock
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import update

# Set test environment before anything reads settings
_test_dir = tempfile.mkdtemp(prefix="boxoffice-tests-")
os.environ["APP_ENV"] = "testing"
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_test_dir}/boxoffice.db"
os.environ["LOCK_BACKEND"] = "database"
os.environ["LOG_LEVEL"] = "WARNING"

# Import all models BEFORE creating fixtures (critical for create_all to work)
from boxoffice.core.database import Base, DatabaseManager, create_engine_from_settings, create_session_factory
from boxoffice.core.cache import CacheManager
from boxoffice.core.locks import DatabaseLockBackend, LockManager
from boxoffice.models import Booking, PriceTier, SeatSection, Ticket, TicketStatus
from boxoffice.models.base import utcnow
from boxoffice.schemas.tasks import WebhookProof
from boxoffice.container import build_container
from boxoffice.services.payment_gateway import RazorpayGateway
from boxoffice.workers.queue import TaskQueue

TEST_KEY_ID = "rzp_test_key"
TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"


class FakeRazorpay:
    """In-memory stand-in for the Razorpay REST API"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.fail_status = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_status:
            return httpx.Response(
                self.fail_status,
                json={"error": {"code": "GATEWAY_ERROR", "description": "Gateway failure"}}
            )

        path = request.url.path
        if path.endswith("/orders"):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "id": f"order_{uuid4().hex[:14]}",
                "amount": body["amount"],
                "currency": body["currency"],
                "receipt": body["receipt"],
                "status": "created",
            })
        if path.endswith("/refund"):
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "id": f"rfnd_{uuid4().hex[:14]}",
                "payment_id": path.split("/")[-2],
                "amount": body["amount"],
                "status": "processed",
            })
        return httpx.Response(404, json={"error": {"code": "NOT_FOUND", "description": "Unknown path"}})

    def calls_to(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Fresh schema per test"""
    engine = create_engine_from_settings()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine
    await engine.dispose()


@pytest.fixture
def db_manager(test_engine) -> DatabaseManager:
    return DatabaseManager(create_session_factory(test_engine))


@pytest.fixture
def lock_manager(db_manager) -> LockManager:
    return LockManager(
        DatabaseLockBackend(db_manager),
        default_ttl=5.0,
        retry_count=3,
        retry_delay=0.01,
        retry_jitter=0.01,
    )


@pytest.fixture
def fake_razorpay() -> FakeRazorpay:
    return FakeRazorpay()


@pytest_asyncio.fixture
async def gateway(fake_razorpay):
    gateway = RazorpayGateway(
        key_id=TEST_KEY_ID,
        key_secret=TEST_KEY_SECRET,
        webhook_secret=TEST_WEBHOOK_SECRET,
        base_url="https://api.razorpay.test/v1",
        transport=httpx.MockTransport(fake_razorpay.handler),
    )
    yield gateway
    await gateway.close()


@pytest.fixture
def task_queue():
    queue = AsyncMock(spec=TaskQueue)
    queue.enqueue.return_value = "job-123"
    return queue


@pytest.fixture
def container(db_manager, lock_manager, gateway, task_queue):
    return build_container(
        db_manager=db_manager,
        lock_manager=lock_manager,
        gateway=gateway,
        task_queue=task_queue,
    )


@pytest.fixture
def booking_service(container):
    return container.booking_service


@pytest.fixture
def reservation_service(container):
    return container.reservation_service


async def create_section(
    db_manager: DatabaseManager,
    seats: int = 10,
    price: Decimal = Decimal("250.00"),
    is_active: bool = True,
    canceled: int = 0,
) -> SeatSection:
    """Section with ``seats`` sellable tickets, the last ``canceled`` of them CANCELED"""
    async with db_manager.atomic_transaction() as session:
        tier = PriceTier(name="Gold", price=price, currency="INR")
        session.add(tier)
        await session.flush()

        section = SeatSection(
            showtime_id=uuid4(),
            price_tier_id=tier.id,
            name="Block A",
            available_seats=seats,
            is_active=is_active,
        )
        session.add(section)
        await session.flush()

        for i in range(seats):
            session.add(Ticket(
                section_id=section.id,
                code=f"A-{section.id.hex[:12]}-{i:04d}",
                status=TicketStatus.CANCELED if i >= seats - canceled else TicketStatus.AVAILABLE,
                price=price,
                currency="INR",
            ))
    return section


@pytest.fixture
def make_section(db_manager):
    async def _make(**kwargs) -> SeatSection:
        return await create_section(db_manager, **kwargs)
    return _make


@pytest_asyncio.fixture
async def section(db_manager) -> SeatSection:
    return await create_section(db_manager, seats=10)


@pytest.fixture
def user_id():
    return uuid4()


@pytest.fixture
def mock_redis():
    """Redis client double for cache and lock backend tests"""
    redis = AsyncMock()
    redis.get.return_value = None
    redis.setex.return_value = True
    redis.delete.return_value = 1
    return redis


@pytest.fixture
def cache(mock_redis) -> CacheManager:
    return CacheManager(mock_redis)


@pytest.fixture
def sign_checkout():
    """Checkout callback signature as Razorpay computes it"""
    def _sign(order_id: str, payment_id: str) -> str:
        return hmac.new(
            TEST_KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256
        ).hexdigest()
    return _sign


@pytest.fixture
def webhook_event():
    """Signed webhook body for a payment event"""
    def _build(payment_id: str, order_id: str, event: str = "payment.captured"):
        body = json.dumps({
            "event": event,
            "payload": {"payment": {"entity": {"id": payment_id, "order_id": order_id, "status": "captured"}}},
        })
        signature = hmac.new(TEST_WEBHOOK_SECRET.encode(), body.encode(), hashlib.sha256).hexdigest()
        return body, signature
    return _build


@pytest.fixture
def webhook_proof(webhook_event):
    def _proof(payment_id: str, order_id: str, event: str = "payment.captured") -> WebhookProof:
        body, signature = webhook_event(payment_id, order_id, event)
        return WebhookProof(body=body, signature=signature)
    return _proof


@pytest.fixture
def expire_booking(db_manager):
    """Move a booking's deadline into the past"""
    async def _expire(booking_id):
        async with db_manager.atomic_transaction() as session:
            await session.execute(
                update(Booking)
                .where(Booking.id == booking_id)
                .values(expires_at=utcnow() - timedelta(seconds=1))
            )
    return _expire
