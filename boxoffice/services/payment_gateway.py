"""
Payment gateway contract and its Razorpay implementation
"""

from abc import ABC, abstractmethod
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union
import hashlib
import hmac
import logging

import httpx

from boxoffice.config import settings
from boxoffice.core.exceptions import ExternalServiceError, GatewayRejectedError, PaymentRejectedError

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Rupees to paise"""
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentGateway(ABC):
    """Operations the booking lifecycle needs from a payment provider"""

    @abstractmethod
    async def create_order(self, amount: Decimal, currency: str, reference: str) -> str:
        """Create a checkout order; returns the gateway order id"""

    @abstractmethod
    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Check a checkout callback signature"""

    @abstractmethod
    def verify_webhook(self, body: Union[str, bytes], signature: str) -> bool:
        """Check a webhook body against its signature header"""

    @abstractmethod
    async def refund(self, payment_id: str, amount: Decimal) -> str:
        """Refund a captured payment; returns the refund id"""


class RazorpayGateway(PaymentGateway):
    """
    Razorpay REST API over httpx

    Amounts are sent in paise. Signatures are HMAC-SHA256 hex digests:
    ``order_id|payment_id`` keyed by the API secret for checkout callbacks,
    and the raw request body keyed by the webhook secret for webhooks.
    """

    SERVICE_NAME = "razorpay"

    def __init__(
        self,
        key_id: str = settings.RAZORPAY_KEY_ID,
        key_secret: str = settings.RAZORPAY_KEY_SECRET,
        webhook_secret: str = settings.RAZORPAY_WEBHOOK_SECRET,
        base_url: str = settings.RAZORPAY_API_URL,
        timeout: float = settings.PAYMENT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.client = httpx.AsyncClient(
            base_url=base_url,
            auth=(key_id, key_secret),
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self.client.aclose()

    async def _post(self, path: str, payload: dict, rejection: str = "payment") -> dict:
        """
        POST to Razorpay

        A 4xx raises PaymentRejectedError for payment calls, or a
        non-retryable GatewayRejectedError for refunds.
        """
        try:
            response = await self.client.post(path, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Razorpay request to {path} failed: {e}")
            raise ExternalServiceError(self.SERVICE_NAME, f"Payment gateway unreachable: {e}") from e

        if response.status_code >= 500:
            logger.error(f"Razorpay {path} returned {response.status_code}")
            raise ExternalServiceError(
                self.SERVICE_NAME,
                f"Payment gateway error {response.status_code}"
            )
        if response.status_code >= 400:
            error = response.json().get("error", {}) if response.content else {}
            logger.warning(f"Razorpay rejected {path}: {error}")
            message = error.get("description") or f"Payment gateway rejected request ({response.status_code})"
            details = {"gateway_code": error.get("code")}
            if rejection == "refund":
                raise GatewayRejectedError(self.SERVICE_NAME, message, details=details)
            raise PaymentRejectedError(message, details=details)
        return response.json()

    async def create_order(self, amount: Decimal, currency: str, reference: str) -> str:
        data = await self._post("/orders", {
            "amount": to_minor_units(amount),
            "currency": currency,
            # Razorpay caps receipts at 40 characters
            "receipt": reference[:40],
            "notes": {"booking_id": reference},
        })
        logger.info(f"Created Razorpay order {data['id']} for {reference}")
        return data["id"]

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret or not signature:
            return False
        expected = hmac.new(
            self.key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def verify_webhook(self, body: Union[str, bytes], signature: str) -> bool:
        if not self.webhook_secret or not signature:
            return False
        if isinstance(body, str):
            body = body.encode()
        expected = hmac.new(self.webhook_secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(expected, signature)

    async def refund(self, payment_id: str, amount: Decimal) -> str:
        data = await self._post(f"/payments/{payment_id}/refund", {
            "amount": to_minor_units(amount),
        }, rejection="refund")
        logger.info(f"Razorpay refund {data['id']} issued for payment {payment_id}")
        return data["id"]
