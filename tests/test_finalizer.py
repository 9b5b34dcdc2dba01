# tests/test_finalizer.py
import asyncio
from decimal import Decimal

from builders import buyer_address, standard_shipping, tee
from finalizer import CartStore, LocalCart, OrderFinalizer
from outcomes import Cancelled, Failure, FailureReason, Success
from payments import OrderDraft
from pricing import compute_final_amount
from schemas import AccountOutcome, DiscountContext, OrderResult, PaymentMethod


class BrokenCart(CartStore):
    def __init__(self):
        self.attempts = 0

    async def clear(self):
        self.attempts += 1
        raise RuntimeError("cart service unavailable")


class SlowCart(CartStore):
    def __init__(self):
        self.started = asyncio.Event()
        self.finished = False

    async def clear(self):
        self.started.set()
        await asyncio.sleep(5)
        self.finished = True


def draft(buy_now=False):
    lines = [tee("500", 2)]
    shipping = standard_shipping("60")
    return OrderDraft(
        cart_lines=lines,
        shipping_option=shipping,
        discounts=DiscountContext(),
        quote=compute_final_amount(lines, shipping, DiscountContext(), PaymentMethod.COD),
        payment_method=PaymentMethod.COD,
        address=buyer_address(),
        buy_now=buy_now,
    )


def created(outcome=AccountOutcome.NO_CHANGE):
    return Success(OrderResult(order_id="ord_1", amount_charged=Decimal("1007"), account_outcome=outcome))


def finalize_and_settle(finalizer, outcome, order_draft):
    async def flow():
        payload = await finalizer.finalize(outcome, order_draft)
        await finalizer.settle()
        return payload

    return asyncio.run(flow())


def test_success_clears_cart_and_records_payload():
    cart = LocalCart([tee()])
    finalizer = OrderFinalizer(cart)

    payload = finalize_and_settle(finalizer, created(AccountOutcome.ACCOUNT_LINKED), draft())

    assert cart.clear_calls == 1
    assert cart.lines == []
    assert payload.order_id == "ord_1"
    assert payload.existing_account_linked and not payload.auto_account_created
    assert payload.is_guest
    # Falls back to the local breakdown when the server sent none.
    assert payload.breakdown.final_amount == Decimal("1007")
    assert finalizer.complete_processing() is payload


def test_buy_now_leaves_the_cart_alone():
    cart = LocalCart([tee()])
    finalizer = OrderFinalizer(cart)

    finalize_and_settle(finalizer, created(), draft(buy_now=True))

    assert cart.clear_calls == 0
    assert len(cart.lines) == 1


def test_cart_failure_does_not_fail_the_order():
    cart = BrokenCart()
    finalizer = OrderFinalizer(cart)

    payload = finalize_and_settle(finalizer, created(), draft())

    assert cart.attempts == 1
    assert payload.order_id == "ord_1"


def test_slow_cart_does_not_hold_up_confirmation():
    cart = SlowCart()
    finalizer = OrderFinalizer(cart, clear_grace=0.01)

    async def flow():
        payload = await finalizer.finalize(created(), draft())
        # The clear is still running when the payload is ready.
        assert cart.started.is_set() is False
        assert finalizer.clearing == 1
        await finalizer.settle()
        return payload

    payload = asyncio.run(flow())

    assert payload.order_id == "ord_1"
    assert not cart.finished
    assert finalizer.clearing == 0


def test_non_success_outcomes_are_ignored():
    cart = LocalCart([tee()])
    finalizer = OrderFinalizer(cart)

    for outcome in (Cancelled(), Failure(FailureReason.ORDER_CAPTURE_FAILED, payment_id="pay_1")):
        for buy_now in (False, True):
            assert finalize_and_settle(finalizer, outcome, draft(buy_now=buy_now)) is None

    assert cart.clear_calls == 0
    assert finalizer.pending is None


def test_processing_complete_without_order_gives_incomplete_payload():
    finalizer = OrderFinalizer(LocalCart())

    payload = finalizer.complete_processing()

    assert payload.incomplete
    assert payload.order_id is None
    assert "contact support" in payload.message
