"""
Server-side order handling.

The store API prices every order itself (same pricing module as the
checkout core), persists it, and applies the guest identity side effect:
an order placed without a session either links to the account that already
owns the e-mail address or creates one. Orders are keyed by transaction id
(gateway payment id, or the COD verification token id), so resubmitting the
same order returns the stored one instead of creating a second.
"""

import logging
import secrets
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional, Tuple

from bson.errors import InvalidId
from bson.objectid import ObjectId
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from config import Settings
from database import create_document, to_dict
from pricing import (
    cart_totals,
    compute_final_amount,
    coupon_discount_for,
    quantity_discount,
    reward_discount_for,
    select_quantity_tier,
)
from schemas import (
    AccountOutcome,
    Coupon,
    CouponDiscount,
    CouponSnapshot,
    DiscountContext,
    GuestInfo,
    Order,
    OrderProduct,
    OrderShipping,
    PaymentMethod,
    PriceQuote,
    QuantityTier,
    ShippingOption,
    User,
)

logger = logging.getLogger(__name__)

CANCELLED = "Cancelled"


class OrderError(Exception):
    def __init__(self, status_code: int, detail: str):
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail


def to_paise(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def load_quantity_tiers(db: Database) -> Optional[List[QuantityTier]]:
    """Operator-configured tiers from the settings collection, if any."""
    doc = db["settings"].find_one({"name": "quantity_tiers"})
    if not doc or not doc.get("tiers"):
        return None
    return [QuantityTier.model_validate(tier) for tier in doc["tiers"]]


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes.
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def coupon_is_live(coupon: Coupon, now: Optional[datetime] = None) -> bool:
    now = _naive_utc(now or datetime.now(timezone.utc))
    if not coupon.active:
        return False
    if coupon.valid_from is not None and now < _naive_utc(coupon.valid_from):
        return False
    if coupon.valid_until is not None and now > _naive_utc(coupon.valid_until):
        return False
    return coupon.usage_limit is None or coupon.usage_count < coupon.usage_limit


def resolve_coupon(
    db: Database,
    code: str,
    products: List[OrderProduct],
    shipping_cost: Decimal,
    tiers: Optional[List[QuantityTier]] = None,
    user: Optional[Dict[str, Any]] = None,
) -> CouponDiscount:
    doc = db["coupon"].find_one({"code": code.strip().upper()})
    if not doc:
        raise OrderError(400, "Invalid or expired coupon code")
    coupon = Coupon.model_validate(doc)
    if not coupon_is_live(coupon):
        raise OrderError(400, "Coupon has expired or reached usage limit")

    lines = [p.to_cart_line() for p in products]
    subtotal, total_quantity = cart_totals(lines)
    if subtotal < coupon.minimum_amount:
        raise OrderError(400, f"Minimum order amount for this coupon is {coupon.minimum_amount}")

    if user is not None:
        user_id = str(user["_id"])
        if coupon.first_time_only:
            placed = db["order"].count_documents({"user_id": user_id, "status": {"$ne": CANCELLED}})
            if placed > 0:
                raise OrderError(400, "This coupon is only valid for first-time customers")
        if coupon.user_limit:
            used = db["order"].count_documents(
                {"user_id": user_id, "coupon.code": coupon.code, "status": {"$ne": CANCELLED}}
            )
            if used >= coupon.user_limit:
                raise OrderError(400, "You have already used this coupon maximum times")

    # Percentage coupons apply to what is left after the quantity tier.
    base = subtotal + shipping_cost
    base -= quantity_discount(base, select_quantity_tier(total_quantity, tiers))
    amount = coupon_discount_for(coupon.discount_type, coupon.discount_value, base, coupon.max_discount)
    return CouponDiscount(code=coupon.code, discount_amount=amount, description=coupon.description)


def price_order(
    db: Database,
    settings: Settings,
    products: List[OrderProduct],
    shipping_cost: Decimal,
    coupon_code: Optional[str] = None,
    reward_points: int = 0,
    payment_method: Optional[PaymentMethod] = None,
    user: Optional[Dict[str, Any]] = None,
) -> PriceQuote:
    if not products:
        raise OrderError(400, "Cart is empty")

    tiers = load_quantity_tiers(db)
    coupon = resolve_coupon(db, coupon_code, products, shipping_cost, tiers, user) if coupon_code else None

    reward = None
    if reward_points > 0:
        if user is None:
            raise OrderError(400, "Sign in to redeem reward points")
        if reward_points > settings.max_reward_points_per_order:
            raise OrderError(400, f"Maximum {settings.max_reward_points_per_order} points can be redeemed per order")
        if reward_points > int(user.get("reward_points", 0)):
            raise OrderError(400, "Insufficient reward points")
        reward = reward_discount_for(reward_points, settings.reward_point_value)

    discounts = DiscountContext(quantity_tiers=tiers, coupon=coupon, reward_points=reward)
    shipping = ShippingOption(id="checkout", name="Checkout shipping", rate=shipping_cost)
    return compute_final_amount([p.to_cart_line() for p in products], shipping, discounts, payment_method)


def _link_guest_account(db: Database, settings: Settings, guest: GuestInfo) -> Tuple[Optional[str], AccountOutcome]:
    email = guest.email.strip().lower()
    existing = db["user"].find_one({"email": email})
    if existing:
        return str(existing["_id"]), AccountOutcome.ACCOUNT_LINKED
    if not settings.auto_create_guest_accounts:
        return None, AccountOutcome.NO_CHANGE

    user = User(name=guest.name, email=email, phone=guest.phone, auto_created=True)
    user_id = create_document("user", user.model_dump(), database=db)
    logger.info("Created account %s from guest checkout", user_id)
    return user_id, AccountOutcome.ACCOUNT_CREATED


def order_response(doc: Dict[str, Any], include_access: bool = True) -> Dict[str, Any]:
    """Wire shape of a stored order.

    Tracking credentials go out only with the response that created the
    order; a replayed create gets the order without them.
    """
    outcome = AccountOutcome(doc.get("account_outcome", AccountOutcome.NO_CHANGE.value))
    response = {
        "success": True,
        "order": to_dict({k: v for k, v in doc.items() if k != "order_access"}),
        "autoAccountCreated": outcome is AccountOutcome.ACCOUNT_CREATED,
        "existingAccountLinked": outcome is AccountOutcome.ACCOUNT_LINKED,
    }
    access = doc.get("order_access")
    if access and include_access:
        response["trackingInfo"] = {"orderId": str(doc["_id"]), "token": access["token"], "pin": access["pin"]}
    return response


def _replay(db: Database, transaction_id: str) -> Optional[Dict[str, Any]]:
    existing = db["order"].find_one({"transaction_id": transaction_id})
    if not existing:
        return None
    logger.info("Order for transaction %s already exists; returning it", transaction_id)
    return order_response(existing, include_access=False)


def create_order(
    db: Database,
    settings: Settings,
    *,
    products: List[OrderProduct],
    amount: Decimal,
    payment_method: PaymentMethod,
    transaction_id: str,
    address: str,
    shipping: OrderShipping,
    coupon: Optional[CouponSnapshot] = None,
    reward_points: int = 0,
    user_id: Optional[str] = None,
    guest_info: Optional[GuestInfo] = None,
    verification_jti: Optional[str] = None,
    authorized_amount: Optional[int] = None,
) -> Dict[str, Any]:
    """Price and store one order.

    `authorized_amount` is the paise amount the gateway captured; when given,
    the server price must match it exactly or nothing is stored.
    """
    replay = _replay(db, transaction_id)
    if replay is not None:
        return replay

    if user_id is None and guest_info is None:
        raise OrderError(400, "Guest information (name, email, phone) is required")

    user = db["user"].find_one({"_id": parse_object_id(user_id)}) if user_id else None
    if user_id and user is None:
        raise OrderError(404, "User not found")

    quote = price_order(
        db,
        settings,
        products,
        shipping.shipping_cost,
        coupon.code if coupon else None,
        reward_points,
        payment_method,
        user,
    )
    if authorized_amount is not None and to_paise(quote.final_amount) != authorized_amount:
        logger.error(
            "Order for %s prices at %s paise but payment authorized %s",
            transaction_id,
            to_paise(quote.final_amount),
            authorized_amount,
        )
        raise OrderError(400, "Order amount does not match the authorized payment")
    if quote.final_amount != Decimal(amount):
        logger.warning(
            "Client amount %s differs from server amount %s for %s", amount, quote.final_amount, transaction_id
        )

    outcome = AccountOutcome.NO_CHANGE
    if user_id is None:
        user_id, outcome = _link_guest_account(db, settings, guest_info)

    breakdown = quote.breakdown
    order = Order(
        user_id=user_id,
        guest_info=guest_info,
        products=products,
        transaction_id=transaction_id,
        amount=quote.final_amount,
        payment_method=payment_method,
        payment_status="Pending" if payment_method is PaymentMethod.COD else "Paid",
        coupon=(
            CouponSnapshot(code=breakdown.coupon_code, discount_type="fixed", discount_value=breakdown.coupon_discount)
            if breakdown.coupon_code
            else None
        ),
        reward_points_redeemed=breakdown.reward_points_redeemed,
        address=address,
        shipping=shipping,
        breakdown=breakdown,
        verification_jti=verification_jti,
    )
    doc = order.model_dump(mode="json", exclude_none=True, exclude={"created_at"})
    doc["account_outcome"] = outcome.value
    if guest_info is not None:
        doc["order_access"] = {"token": secrets.token_hex(32), "pin": f"{1000 + secrets.randbelow(9000)}"}

    try:
        order_id = create_document("order", doc, database=db)
    except DuplicateKeyError:
        # A concurrent request stored this transaction first.
        logger.info("Order for transaction %s was stored concurrently", transaction_id)
        return _replay(db, transaction_id)

    if user is not None and breakdown.reward_points_redeemed > 0:
        db["user"].update_one({"_id": user["_id"]}, {"$inc": {"reward_points": -breakdown.reward_points_redeemed}})
    if breakdown.coupon_code:
        db["coupon"].update_one({"code": breakdown.coupon_code}, {"$inc": {"usage_count": 1}})

    stored = db["order"].find_one({"_id": parse_object_id(order_id)})
    logger.info("Created %s order %s for %s", payment_method.value, order_id, "member" if user else "guest")
    return order_response(stored)


def credit_order_points(db: Database, settings: Settings, order_id: str) -> int:
    """Credit loyalty points for a completed order to its account, once.

    Returns the number of points credited (0 for guest orders without an
    account, or when the order was already credited).
    """
    oid = parse_object_id(order_id)
    order = db["order"].find_one({"_id": oid})
    if not order:
        raise OrderError(404, "Order not found")
    if not order.get("user_id"):
        return 0

    claimed = db["order"].update_one(
        {"_id": oid, "reward_points_credited": {"$ne": True}}, {"$set": {"reward_points_credited": True}}
    )
    if claimed.modified_count == 0:
        return 0

    earned = Decimal(str(order["amount"])) * settings.reward_earning_rate
    points = int(earned.to_integral_value(rounding=ROUND_DOWN))
    if points > 0:
        db["user"].update_one({"_id": parse_object_id(order["user_id"])}, {"$inc": {"reward_points": points}})
    logger.info("Credited %s reward points for order %s", points, order_id)
    return points


def parse_object_id(value: str):
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as exc:
        raise OrderError(400, "Invalid ID") from exc
