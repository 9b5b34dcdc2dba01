"""
Checkout coordination.

The controller owns the checkout form state, keeps the price quote current,
and turns one submit into exactly one terminal signal:

* NavigateToConfirmation(payload)
* SurfaceError(reason, message, payment_id, recoverable)
* ReturnToPayment()  -- the buyer closed the gateway window; not an error
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Union

from backend import BackendError, Session, StoreBackend, TransportError, is_authenticated
from finalizer import CartStore, ConfirmationPayload, LocalCart, OrderFinalizer, RemoteCart
from gateway import HostedCheckout, SavedCard
from outcomes import Cancelled, Failure, FailureReason, Outcome, Success
from payments import OrderDraft, PaymentOrchestrator
from pricing import DEFAULT_REWARD_POINT_VALUE, compute_final_amount, reward_discount_for
from schemas import (
    CalculateAmountRequest,
    CartLine,
    CouponDiscount,
    DiscountContext,
    PaymentMethod,
    PriceQuote,
    QuantityTier,
    ShippingAddress,
    ShippingOption,
)
from verification import VerificationGate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NavigateToConfirmation:
    payload: ConfirmationPayload


@dataclass(frozen=True)
class SurfaceError:
    reason: FailureReason
    message: str
    payment_id: Optional[str] = None
    recoverable: bool = True


@dataclass(frozen=True)
class ReturnToPayment:
    pass


Signal = Union[NavigateToConfirmation, SurfaceError, ReturnToPayment]


class CheckoutController:
    def __init__(
        self,
        backend: StoreBackend,
        cart_lines: Sequence[CartLine],
        hosted_checkout: Optional[HostedCheckout] = None,
        session: Optional[Session] = None,
        buy_now: bool = False,
        cart: Optional[CartStore] = None,
        gate: Optional[VerificationGate] = None,
        orchestrator: Optional[PaymentOrchestrator] = None,
        quantity_tiers: Optional[List[QuantityTier]] = None,
        on_signal: Optional[Callable[[Signal], None]] = None,
        on_processing: Optional[Callable[[bool], None]] = None,
        defer_navigation: bool = False,
    ):
        self.backend = backend
        self.cart_lines = list(cart_lines)
        self.session = session if is_authenticated(session) else None
        self.buy_now = buy_now
        self.gate = gate or VerificationGate(backend)
        self.orchestrator = orchestrator or PaymentOrchestrator.default(backend, self.gate, hosted_checkout)
        if cart is None:
            cart = RemoteCart(backend, self.session) if self.session else LocalCart(self.cart_lines)
        self.finalizer = OrderFinalizer(cart)
        self.on_signal = on_signal
        self.on_processing = on_processing
        self.defer_navigation = defer_navigation

        self.shipping_option: Optional[ShippingOption] = None
        self.address = ShippingAddress()
        self.payment_method = PaymentMethod.ONLINE
        self.discounts = DiscountContext(quantity_tiers=quantity_tiers)
        self.saved_card: Optional[SavedCard] = None
        # set when the inputs a coupon was resolved against have changed
        self.coupon_stale = False

        self.quote: Optional[PriceQuote] = None
        self.server_total: Optional[Decimal] = None
        self.processing = False
        self.submitting = False
        self.last_signal: Optional[Signal] = None

    @property
    def is_guest(self) -> bool:
        return self.session is None

    # Inputs
    def select_shipping(self, option: ShippingOption) -> None:
        self.shipping_option = option
        if self.discounts.coupon is not None:
            self.coupon_stale = True
        self._recompute()

    def set_address(self, address: ShippingAddress) -> None:
        self.address = address

    def set_payment_method(self, method: PaymentMethod) -> None:
        self.payment_method = PaymentMethod(method)
        self._recompute()

    def apply_coupon(self, coupon: Optional[CouponDiscount]) -> None:
        self.discounts = self.discounts.with_coupon(coupon)
        self.coupon_stale = False
        self._recompute()

    async def _resolve_coupon(self, code: str) -> Outcome:
        if self.shipping_option is None:
            return Failure(FailureReason.SHIPPING_NOT_SELECTED)
        products = [line.to_order_product() for line in self.cart_lines]
        try:
            response = await self.backend.validate_coupon(
                code.strip().upper(), products, self.shipping_option.rate, self.session
            )
        except BackendError as exc:
            return Failure(FailureReason.INVALID_COUPON, exc.message)
        except TransportError as exc:
            return Failure(FailureReason.NETWORK_ERROR, str(exc))
        return Success(response.to_discount())

    async def apply_coupon_code(self, code: str) -> Outcome:
        outcome = await self._resolve_coupon(code)
        if isinstance(outcome, Success):
            self.apply_coupon(outcome.value)
        return outcome

    async def revalidate_coupon(self) -> Outcome:
        """Resolve the applied coupon again against the current cart and shipping.

        A coupon the store no longer accepts is removed.
        """
        coupon = self.discounts.coupon
        if coupon is None:
            return Success(None)
        outcome = await self._resolve_coupon(coupon.code)
        if isinstance(outcome, Success):
            if outcome.value != coupon:
                logger.info("Coupon %s now worth %s", coupon.code, outcome.value.discount_amount)
            self.apply_coupon(outcome.value)
        elif outcome.reason is FailureReason.INVALID_COUPON:
            logger.info("Coupon %s no longer applies: %s", coupon.code, outcome.message)
            self.apply_coupon(None)
        return outcome

    def redeem_points(self, points: int, point_value: Decimal = DEFAULT_REWARD_POINT_VALUE) -> None:
        reward = reward_discount_for(points, point_value) if points > 0 else None
        self.discounts = self.discounts.with_reward_points(reward)
        self._recompute()

    # Pricing
    def _recompute(self) -> None:
        self.server_total = None
        if self.shipping_option is None:
            self.quote = None
            return
        self.quote = compute_final_amount(self.cart_lines, self.shipping_option, self.discounts, self.payment_method)

    async def refresh_quote(self) -> Optional[PriceQuote]:
        """Recompute locally and, when signed in, ask the server for its total."""
        if self.coupon_stale:
            await self.revalidate_coupon()
        self._recompute()
        if self.quote is None or self.session is None:
            return self.quote

        request = CalculateAmountRequest(
            cart_items=[line.to_order_product() for line in self.cart_lines],
            coupon_code=self.discounts.coupon.code if self.discounts.coupon else None,
            reward_points=self.discounts.reward_points.points_redeemed if self.discounts.reward_points else 0,
            shipping_cost=self.shipping_option.rate,
            payment_method=self.payment_method,
        )
        try:
            response = await self.backend.calculate_amount(request, self.session)
        except (BackendError, TransportError) as exc:
            logger.info("Server amount unavailable, showing local estimate: %s", exc)
            return self.quote
        if response.success:
            self.server_total = response.total
            if response.total != self.quote.final_amount:
                logger.warning(
                    "Local estimate %s differs from server total %s", self.quote.final_amount, response.total
                )
        return self.quote

    @property
    def displayed_amount(self) -> Optional[Decimal]:
        if self.server_total is not None and self.session is not None:
            return self.server_total
        return self.quote.final_amount if self.quote else None

    # Verification (COD)
    async def prepare_cod(self) -> Outcome:
        return await self.gate.check_bypass_status(self.address.phone)

    async def send_otp(self, phone: Optional[str] = None) -> Outcome:
        return await self.gate.send_otp(phone if phone is not None else self.address.phone)

    async def verify_otp(self, code: str, phone: Optional[str] = None) -> Outcome:
        return await self.gate.verify_otp(phone if phone is not None else self.address.phone, code)

    def resend_otp(self) -> None:
        self.gate.reset()

    # Submission
    def _set_processing(self, value: bool) -> None:
        if value == self.processing:
            return
        self.processing = value
        if self.on_processing is not None:
            self.on_processing(value)

    def _emit(self, signal: Signal) -> Signal:
        self.last_signal = signal
        if self.on_signal is not None:
            self.on_signal(signal)
        return signal

    def _input_error(self) -> Optional[SurfaceError]:
        reason = None
        if self.shipping_option is None or self.quote is None:
            reason = FailureReason.SHIPPING_NOT_SELECTED
        elif not self.address.is_complete():
            reason = FailureReason.INVALID_ADDRESS
        elif self.payment_method is PaymentMethod.COD and not self.shipping_option.cod:
            reason = FailureReason.COD_UNAVAILABLE
        elif self.payment_method is PaymentMethod.COD and not self.gate.is_verified:
            reason = FailureReason.VERIFICATION_REQUIRED
        if reason is None:
            return None
        return SurfaceError(reason, Failure(reason).user_message())

    def _draft(self) -> OrderDraft:
        return OrderDraft(
            cart_lines=list(self.cart_lines),
            shipping_option=self.shipping_option,
            discounts=self.discounts,
            quote=self.quote,
            payment_method=self.payment_method,
            address=self.address,
            session=self.session,
            buy_now=self.buy_now,
            saved_card=self.saved_card,
        )

    async def submit(self) -> Optional[Signal]:
        """Run the whole pipeline once.

        Returns the terminal signal, or None when navigation is deferred to
        processing_complete() or a submission is already running.
        """
        if self.submitting:
            logger.info("Ignoring duplicate submit while an order is in flight")
            return None

        error = self._input_error()
        if error is not None:
            return self._emit(error)

        self.submitting = True
        try:
            if self.discounts.coupon is not None:
                checked = await self.revalidate_coupon()
                if isinstance(checked, Failure):
                    return self._emit(SurfaceError(checked.reason, checked.user_message()))
            draft = self._draft()
            outcome = await self.orchestrator.pay(draft, self._set_processing)
            await self.finalizer.finalize(outcome, draft)
        finally:
            self.submitting = False

        if isinstance(outcome, Success):
            if self.defer_navigation:
                return None
            return self.processing_complete()
        if isinstance(outcome, Cancelled):
            return self._emit(ReturnToPayment())
        self._set_processing(False)
        return self._emit(
            SurfaceError(
                reason=outcome.reason,
                message=outcome.user_message(),
                payment_id=outcome.payment_id,
                recoverable=not outcome.severe,
            )
        )

    def processing_complete(self) -> Signal:
        self._set_processing(False)
        return self._emit(NavigateToConfirmation(self.finalizer.complete_processing()))
