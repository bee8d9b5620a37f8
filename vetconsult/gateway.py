import logging
from typing import Optional

import httpx

from .config import settings
from .exceptions import PaymentGatewayError

logger = logging.getLogger("booking_service")


class RazorpayClient:
    """
    Minimal client for the Razorpay Orders API.
    Every call is bounded by a timeout; a timeout is a failure, never a success.
    """

    def __init__(
            self,
            key_id: str,
            key_secret: str,
            base_url: str,
            timeout: float,
            transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def create_order(self, amount: int, currency: str, receipt: str, notes: dict) -> dict:
        body = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        }
        try:
            async with httpx.AsyncClient(
                    base_url=self.base_url,
                    auth=(self.key_id, self._key_secret),
                    timeout=self.timeout,
                    transport=self._transport,
            ) as client:
                response = await client.post("/orders", json=body)
        except httpx.TimeoutException as e:
            raise PaymentGatewayError(f"Payment gateway timed out creating order: {e}") from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Payment gateway request failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Payment gateway rejected order for receipt {receipt}: HTTP {response.status_code}")
            raise PaymentGatewayError(f"Payment gateway returned HTTP {response.status_code}")

        try:
            order = response.json()
        except ValueError as e:
            raise PaymentGatewayError("Payment gateway returned a non-JSON response") from e
        if not order.get("id"):
            raise PaymentGatewayError("Payment gateway response has no order id")
        return order


def get_payment_gateway() -> RazorpayClient:
    return RazorpayClient(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET.get_secret_value(),
        base_url=settings.RAZORPAY_API_URL,
        timeout=settings.OUTBOUND_TIMEOUT_SECONDS,
    )
