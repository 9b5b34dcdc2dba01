"""
Payment strategies.

One strategy per payment method. Each run resolves to Success(OrderResult),
Failure(reason) or Cancelled; backend and transport errors are converted at
this boundary. Nothing here retries order creation on its own: the payment
id (gateway) or verification token (COD) anchors a manual retry.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Dict, List, Optional

from backend import BackendError, Session, StoreBackend, TransportError, is_authenticated
from gateway import CheckoutOptions, HostedCheckout, SavedCard
from outcomes import Cancelled, Failure, FailureReason, Outcome, Success
from schemas import (
    CartLine,
    CodOrderRequest,
    CouponSnapshot,
    DiscountContext,
    GatewayOrderRequest,
    OrderCreateRequest,
    OrderProduct,
    OrderResult,
    OrderShipping,
    PaymentMethod,
    PriceQuote,
    ShippingAddress,
    ShippingOption,
)
from verification import VerificationGate

logger = logging.getLogger(__name__)

ProcessingListener = Callable[[bool], None]


def _ignore(_: bool) -> None:
    pass


@dataclass
class OrderDraft:
    cart_lines: List[CartLine]
    shipping_option: ShippingOption
    discounts: DiscountContext
    quote: PriceQuote
    payment_method: PaymentMethod
    address: ShippingAddress
    session: Optional[Session] = None
    buy_now: bool = False
    saved_card: Optional[SavedCard] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def is_guest(self) -> bool:
        return not is_authenticated(self.session)

    def order_products(self) -> List[OrderProduct]:
        return [line.to_order_product() for line in self.cart_lines]

    def order_shipping(self, phone: Optional[str] = None) -> OrderShipping:
        return OrderShipping(
            name=self.address.full_name,
            phone=phone or self.address.phone,
            pincode=self.address.pin_code,
            city=self.address.city,
            state=self.address.state,
            country=self.address.country,
            shipping_cost=self.shipping_option.rate,
            courier=self.shipping_option.name,
        )

    def coupon_snapshot(self) -> Optional[CouponSnapshot]:
        coupon = self.discounts.coupon
        if coupon is None:
            return None
        return CouponSnapshot(code=coupon.code, discount_type="fixed", discount_value=coupon.discount_amount)

    @property
    def reward_points(self) -> int:
        if self.discounts.reward_points is None:
            return 0
        return self.discounts.reward_points.points_redeemed


class PaymentStrategy(ABC):
    method: PaymentMethod

    def __init__(self, backend: StoreBackend):
        self.backend = backend

    @abstractmethod
    async def run(self, draft: OrderDraft, on_processing: ProcessingListener = _ignore) -> Outcome:
        ...


class CashOnDeliveryStrategy(PaymentStrategy):
    method = PaymentMethod.COD

    def __init__(self, backend: StoreBackend, gate: VerificationGate):
        super().__init__(backend)
        self.gate = gate

    async def run(self, draft: OrderDraft, on_processing: ProcessingListener = _ignore) -> Outcome:
        proof = self.gate.proof
        if proof is None:
            return Failure(FailureReason.VERIFICATION_REQUIRED)

        # The verified phone wins over whatever the address form holds now.
        request = CodOrderRequest(
            products=draft.order_products(),
            amount=draft.quote.final_amount,
            coupon=draft.coupon_snapshot(),
            reward_points_redeemed=draft.reward_points,
            address=draft.address.one_line(),
            shipping=draft.order_shipping(phone=proof.phone),
            verification_token=proof.token,
            phone=proof.phone,
            guest_info=draft.address.guest_info() if draft.is_guest else None,
        )

        on_processing(True)
        try:
            response = await self.backend.create_cod_order(request, draft.session)
        except BackendError as exc:
            on_processing(False)
            logger.warning("COD order creation failed: %s", exc.message)
            return Failure(FailureReason.ORDER_CREATION_FAILED, exc.message)
        except TransportError as exc:
            on_processing(False)
            return Failure(FailureReason.NETWORK_ERROR, str(exc))

        self.gate.consume()
        return Success(OrderResult.from_response(response))


class OnlineGatewayStrategy(PaymentStrategy):
    method = PaymentMethod.ONLINE

    def __init__(self, backend: StoreBackend, checkout: HostedCheckout):
        super().__init__(backend)
        self.checkout = checkout

    def precheck(self, draft: OrderDraft) -> Optional[Failure]:
        return None

    def checkout_options(self, draft: OrderDraft, response) -> CheckoutOptions:
        return CheckoutOptions(
            key_id=response.key_id,
            order_id=response.order.id,
            amount=response.order.amount,
            currency=response.order.currency,
            prefill=draft.address.guest_info(),
        )

    async def run(self, draft: OrderDraft, on_processing: ProcessingListener = _ignore) -> Outcome:
        failure = self.precheck(draft)
        if failure is not None:
            return failure

        # Phase 1: authorization. The server resolves amount and currency.
        request = GatewayOrderRequest(
            cart_items=draft.order_products(),
            coupon_code=draft.discounts.coupon.code if draft.discounts.coupon else None,
            reward_points=draft.reward_points,
            payment_method=self.method,
            customer_info=draft.address.guest_info(),
            frontend_amount=draft.quote.final_amount,
            shipping_cost=draft.shipping_option.rate,
        )
        try:
            gateway_order = await self.backend.create_gateway_order(request, draft.session)
        except BackendError as exc:
            return Failure(FailureReason.PAYMENT_FAILED, exc.message)
        except TransportError as exc:
            return Failure(FailureReason.NETWORK_ERROR, str(exc))

        outcome = await self.checkout.open(self.checkout_options(draft, gateway_order))
        if isinstance(outcome, Cancelled):
            logger.info("Hosted checkout dismissed for gateway order %s", gateway_order.order.id)
            return outcome
        if isinstance(outcome, Failure):
            return outcome

        # Phase 2: settlement. Money has moved from here on.
        confirmation = outcome.value
        payment_id = confirmation.razorpay_payment_id
        on_processing(True)

        try:
            verified = await self.backend.verify_payment(confirmation, draft.session)
            verified_ok = verified.ok
            reason = "" if verified_ok else "Payment signature rejected"
        except (BackendError, TransportError) as exc:
            verified_ok = False
            reason = str(exc)
        if not verified_ok:
            on_processing(False)
            logger.error("Payment %s could not be verified: %s", payment_id, reason)
            return Failure(FailureReason.PAYMENT_VERIFICATION_FAILED, reason, payment_id=payment_id)

        if gateway_order.breakdown is not None:
            authorized_amount = gateway_order.breakdown.final_amount
        else:
            authorized_amount = Decimal(gateway_order.order.amount) / 100

        order_request = OrderCreateRequest(
            products=draft.order_products(),
            transaction_id=payment_id,
            amount=authorized_amount,
            payment_method=self.method,
            coupon=draft.coupon_snapshot(),
            reward_points_redeemed=draft.reward_points,
            address=draft.address.one_line(),
            shipping=draft.order_shipping(),
            guest_info=draft.address.guest_info() if draft.is_guest else None,
        )
        try:
            response = await self.backend.create_order(order_request, draft.session)
        except (BackendError, TransportError) as exc:
            on_processing(False)
            logger.error("Order capture failed after payment %s: %s", payment_id, exc)
            return Failure(FailureReason.ORDER_CAPTURE_FAILED, str(exc), payment_id=payment_id)

        return Success(OrderResult.from_response(response, payment_id=payment_id))


class SavedCardStrategy(OnlineGatewayStrategy):
    method = PaymentMethod.SAVED_CARD

    def precheck(self, draft: OrderDraft) -> Optional[Failure]:
        if draft.is_guest or draft.saved_card is None:
            return Failure(FailureReason.SAVED_CARD_UNAVAILABLE)
        return None

    def checkout_options(self, draft: OrderDraft, response) -> CheckoutOptions:
        options = super().checkout_options(draft, response)
        return options.model_copy(update={"saved_card": draft.saved_card})


class PaymentOrchestrator:
    def __init__(self, strategies: Dict[PaymentMethod, PaymentStrategy]):
        self.strategies = strategies

    @classmethod
    def default(
        cls, backend: StoreBackend, gate: VerificationGate, checkout: Optional[HostedCheckout] = None
    ) -> "PaymentOrchestrator":
        strategies: List[PaymentStrategy] = [CashOnDeliveryStrategy(backend, gate)]
        if checkout is not None:
            strategies += [OnlineGatewayStrategy(backend, checkout), SavedCardStrategy(backend, checkout)]
        return cls({strategy.method: strategy for strategy in strategies})

    async def pay(self, draft: OrderDraft, on_processing: ProcessingListener = _ignore) -> Outcome:
        strategy = self.strategies.get(draft.payment_method)
        if strategy is None:
            return Failure(FailureReason.PAYMENT_FAILED, f"Unsupported payment method: {draft.payment_method}")
        logger.info(
            "Placing %s order for %s checkout", draft.payment_method.value, "guest" if draft.is_guest else "member"
        )
        return await strategy.run(draft, on_processing)
