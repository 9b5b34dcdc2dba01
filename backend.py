"""
Async client for the store API endpoints the checkout core depends on.

Every call either returns a parsed response model or raises BackendError
(the server answered with an error) / TransportError (no usable answer).
Payment strategies convert both into outcome values.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from config import get_settings
from schemas import (
    BypassStatusResponse,
    CalculateAmountRequest,
    CalculateAmountResponse,
    CodOrderRequest,
    CouponValidateRequest,
    CouponValidateResponse,
    GatewayOrderRequest,
    GatewayOrderResponse,
    OrderCreateRequest,
    OrderProduct,
    OrderResponse,
    PaymentConfirmation,
    SendOtpRequest,
    SendOtpResponse,
    VerifyOtpRequest,
    VerifyOtpResponse,
    VerifyPaymentResponse,
)

logger = logging.getLogger(__name__)


class Session(BaseModel):
    user_id: str
    token: str


class BackendError(Exception):
    def __init__(self, status_code: int, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.message = message


class TransportError(Exception):
    pass


def is_authenticated(session: Optional[Session]) -> bool:
    return session is not None and bool(session.user_id) and bool(session.token)


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        detail = data.get("detail") or data.get("error") or data.get("message")
        if isinstance(detail, str):
            return detail
        if detail is not None:
            return str(detail)
    return f"HTTP {response.status_code}"


class StoreBackend:
    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.api_url,
            timeout=timeout if timeout is not None else settings.http_timeout,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        session: Optional[Session] = None,
    ) -> Dict[str, Any]:
        headers = {}
        if is_authenticated(session):
            headers["Authorization"] = f"Bearer {session.token}"
        try:
            response = await self._client.request(method, path, json=payload, headers=headers)
        except httpx.TimeoutException as exc:
            raise TransportError(f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if response.is_error:
            message = _error_message(response)
            logger.info("%s %s -> %s: %s", method, path, response.status_code, message)
            raise BackendError(response.status_code, message)
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise BackendError(response.status_code, "Malformed response from server") from exc

    async def _call(self, model, method: str, path: str, payload=None, session=None):
        data = await self._request(method, path, payload, session)
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise BackendError(200, f"Unexpected response from {path}") from exc

    # COD verification
    async def send_otp(self, phone: str) -> SendOtpResponse:
        return await self._call(SendOtpResponse, "POST", "/cod/send-otp", SendOtpRequest(phone=phone).to_wire())

    async def verify_otp(self, phone: str, otp: str) -> VerifyOtpResponse:
        payload = VerifyOtpRequest(phone=phone, otp=otp).to_wire()
        return await self._call(VerifyOtpResponse, "POST", "/cod/verify-otp", payload)

    async def bypass_status(self) -> BypassStatusResponse:
        return await self._call(BypassStatusResponse, "GET", "/cod/bypass-status")

    # Orders
    async def create_cod_order(self, request: CodOrderRequest, session: Optional[Session] = None) -> OrderResponse:
        path = "/cod/order/create" if is_authenticated(session) else "/cod/order/guest/create"
        return await self._call(OrderResponse, "POST", path, request.to_wire(), session)

    async def create_order(self, request: OrderCreateRequest, session: Optional[Session] = None) -> OrderResponse:
        if is_authenticated(session):
            path = f"/order/create/{session.user_id}"
        else:
            path = "/guest/order/create"
        return await self._call(OrderResponse, "POST", path, request.to_wire(), session)

    # Gateway
    async def create_gateway_order(
        self, request: GatewayOrderRequest, session: Optional[Session] = None
    ) -> GatewayOrderResponse:
        return await self._call(GatewayOrderResponse, "POST", "/razorpay/order/create", request.to_wire(), session)

    async def verify_payment(
        self, confirmation: PaymentConfirmation, session: Optional[Session] = None
    ) -> VerifyPaymentResponse:
        if is_authenticated(session):
            path = f"/razorpay/payment/verify/{session.user_id}"
        else:
            path = "/razorpay/payment/guest/verify"
        return await self._call(VerifyPaymentResponse, "POST", path, confirmation.model_dump(), session)

    # Amounts
    async def calculate_amount(self, request: CalculateAmountRequest, session: Session) -> CalculateAmountResponse:
        return await self._call(
            CalculateAmountResponse, "POST", "/razorpay/calculate-amount", request.to_wire(), session
        )

    async def validate_coupon(
        self,
        code: str,
        cart_items: List[OrderProduct],
        shipping_cost: Decimal,
        session: Optional[Session] = None,
    ) -> CouponValidateResponse:
        payload = CouponValidateRequest(code=code, cart_items=cart_items, shipping_cost=shipping_cost).to_wire()
        return await self._call(CouponValidateResponse, "POST", "/coupon/validate", payload, session)

    # Cart
    async def clear_cart(self, session: Session) -> None:
        await self._request("DELETE", "/cart/clear", session=session)
