"""
Payment gateway integration.

The hosted checkout reports through three callbacks (success, failure,
dismiss). CallbackCheckout turns them into a single awaitable outcome:
Success(PaymentConfirmation), Failure(PAYMENT_FAILED) or Cancelled.

The server half (order creation against the gateway REST API and payment
signature checks) lives here too so both sides agree on the scheme.
"""

import asyncio
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx
from pydantic import BaseModel

from outcomes import Cancelled, Failure, FailureReason, Outcome, Success
from schemas import GuestInfo, PaymentConfirmation

logger = logging.getLogger(__name__)


class SavedCard(BaseModel):
    customer_id: str
    token: str


class CheckoutOptions(BaseModel):
    key_id: str
    order_id: str
    amount: int
    currency: str = "INR"
    name: str = "T-Shirt Store"
    description: str = "Order Payment"
    prefill: Optional[GuestInfo] = None
    saved_card: Optional[SavedCard] = None


class HostedCheckout(ABC):
    """Opens the gateway's checkout UI and waits for the buyer."""

    @abstractmethod
    async def open(self, options: CheckoutOptions) -> Outcome:
        ...


Launcher = Callable[[CheckoutOptions, Callable, Callable, Callable], Any]


class CallbackCheckout(HostedCheckout):
    """Adapter for callback-style checkout widgets.

    `launcher(options, on_success, on_failure, on_dismiss)` starts the widget.
    Only the first callback counts; widgets commonly fire dismiss after a
    failure.
    """

    def __init__(self, launcher: Launcher):
        self.launcher = launcher

    async def open(self, options: CheckoutOptions) -> Outcome:
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def settle(outcome):
            if not future.done():
                future.set_result(outcome)

        def on_success(payload: Dict[str, Any]):
            try:
                settle(Success(PaymentConfirmation.model_validate(payload)))
            except ValueError as exc:
                settle(Failure(FailureReason.PAYMENT_FAILED, "Malformed payment confirmation", detail=str(exc)))

        def on_failure(error: Optional[Dict[str, Any]] = None):
            error = error or {}
            description = error.get("description") or error.get("error") or "Unknown error"
            settle(Failure(FailureReason.PAYMENT_FAILED, description, detail=error))

        def on_dismiss(*_):
            settle(Cancelled())

        result = self.launcher(options, on_success, on_failure, on_dismiss)
        if asyncio.iscoroutine(result):
            await result
        return await future


# Server side
def payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(confirmation: PaymentConfirmation, secret: str) -> bool:
    if not secret:
        return False
    expected = payment_signature(confirmation.razorpay_order_id, confirmation.razorpay_payment_id, secret)
    return hmac.compare_digest(expected, confirmation.razorpay_signature)


class GatewayError(Exception):
    pass


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, api_url: str = "https://api.razorpay.com/v1", timeout: float = 15.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def create_order(self, amount: int, currency: str, receipt: str, notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create a gateway order; `amount` is in the smallest currency unit."""
        payload = {"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}}
        try:
            response = httpx.post(
                f"{self.api_url}/orders",
                json=payload,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise GatewayError(f"Gateway unreachable: {exc}") from exc
        if response.is_error:
            logger.error("Gateway order creation failed: %s %s", response.status_code, response.text)
            raise GatewayError("Failed to create payment order")
        return response.json()
