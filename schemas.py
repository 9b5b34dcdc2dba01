"""
Schemas for the checkout pipeline.

Wire models mirror the JSON the store API speaks (camelCase keys, with the
few snake_case exceptions the payment gateway dictates). Collection models
at the bottom describe what is stored in MongoDB; the collection name is the
lowercase class name.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, model_validator
from pydantic.alias_generators import to_camel
from typing_extensions import Annotated

# Whole currency units are kept as Decimal in memory and sent as JSON numbers.
Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]

ZERO = Decimal("0")

# Dummy code submitted for the buyer when the operator has switched COD OTP off.
BYPASS_OTP = "000000"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"
    SAVED_CARD = "saved_card"

    @property
    def is_online(self) -> bool:
        return self in (PaymentMethod.ONLINE, PaymentMethod.SAVED_CARD)


class AccountOutcome(str, Enum):
    NO_CHANGE = "no_change"
    ACCOUNT_CREATED = "account_created"
    ACCOUNT_LINKED = "account_linked"


# Cart models
class DesignPlacement(WireModel):
    design_id: str = "custom-design"
    design_image: Optional[str] = None
    position: str = "center"
    price: Money = Decimal("150")


class Customization(WireModel):
    front_design: Optional[DesignPlacement] = None
    back_design: Optional[DesignPlacement] = None


class CartLine(WireModel):
    product: Optional[str] = Field(None, description="Catalog product id; empty for custom designs")
    name: str
    unit_price: Money = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    is_custom: bool = False
    customization: Optional[Customization] = None

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_order_product(self) -> "OrderProduct":
        return OrderProduct(
            product=None if self.is_custom else self.product,
            name=self.name,
            price=self.unit_price,
            count=self.quantity,
            size=self.size,
            color=self.color,
            is_custom=self.is_custom,
            customization=self.customization,
        )


class ShippingOption(WireModel):
    id: str
    name: str
    rate: Money = Field(ZERO, ge=0)
    estimated_delivery: Optional[str] = None
    cod: bool = True


# Discount models
class QuantityTier(WireModel):
    threshold_quantity: int = Field(..., ge=1)
    percentage: Decimal = Field(..., ge=0, le=100)


class CouponDiscount(WireModel):
    code: str
    discount_amount: Money = Field(..., ge=0)
    description: str = ""


class RewardPointsDiscount(WireModel):
    points_redeemed: int = Field(0, ge=0)
    discount_amount: Money = Field(ZERO, ge=0)
    point_value: Decimal = Field(Decimal("0.5"), ge=0, description="Currency value of one point")


class DiscountContext(WireModel):
    """Independently sourced discounts for one checkout.

    The context is replaced, never edited in place, whenever one of its
    inputs changes.
    """

    quantity_tiers: Optional[List[QuantityTier]] = None
    coupon: Optional[CouponDiscount] = None
    reward_points: Optional[RewardPointsDiscount] = None

    def with_coupon(self, coupon: Optional[CouponDiscount]) -> "DiscountContext":
        return self.model_copy(update={"coupon": coupon})

    def with_reward_points(self, reward_points: Optional[RewardPointsDiscount]) -> "DiscountContext":
        return self.model_copy(update={"reward_points": reward_points})


class DiscountBreakdown(WireModel):
    subtotal: Money
    shipping: Money
    total_quantity: int
    quantity_percentage: Decimal = ZERO
    quantity_discount: Money = ZERO
    coupon_code: Optional[str] = None
    coupon_discount: Money = ZERO
    online_payment_discount: Money = ZERO
    reward_points_requested: int = 0
    reward_points_redeemed: int = 0
    reward_discount_requested: Money = ZERO
    reward_discount: Money = ZERO
    final_amount: Money

    @property
    def total_savings(self) -> Decimal:
        return self.quantity_discount + self.coupon_discount + self.online_payment_discount + self.reward_discount


class PriceQuote(WireModel):
    final_amount: Money
    breakdown: DiscountBreakdown


# Buyer models
class GuestInfo(WireModel):
    name: str
    email: str
    phone: str


class ShippingAddress(WireModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    pin_code: str = ""
    country: str = "India"

    def is_complete(self) -> bool:
        required = (self.full_name, self.email, self.phone, self.address, self.city, self.state, self.pin_code)
        return all(value.strip() for value in required)

    def one_line(self) -> str:
        return f"{self.address}, {self.city}, {self.state} - {self.pin_code}, {self.country}"

    def guest_info(self) -> GuestInfo:
        return GuestInfo(name=self.full_name, email=self.email, phone=self.phone)


# Order wire models
class OrderProduct(WireModel):
    product: Optional[str] = None
    name: str
    price: Money = Field(..., ge=0)
    count: int = Field(..., ge=1)
    size: Optional[str] = None
    color: Optional[str] = None
    is_custom: bool = False
    customization: Optional[Customization] = None

    def to_cart_line(self) -> CartLine:
        return CartLine(
            product=self.product,
            name=self.name,
            unit_price=self.price,
            quantity=self.count,
            size=self.size,
            color=self.color,
            is_custom=self.is_custom,
            customization=self.customization,
        )


class OrderShipping(WireModel):
    name: str
    phone: str
    pincode: str
    city: str
    state: str
    country: str = "India"
    shipping_cost: Money = ZERO
    courier: str = ""


class CouponSnapshot(WireModel):
    code: str
    discount_type: str = "fixed"
    discount_value: Money = ZERO


class CodOrderRequest(WireModel):
    products: List[OrderProduct]
    amount: Money
    coupon: Optional[CouponSnapshot] = None
    reward_points_redeemed: int = 0
    address: str
    shipping: OrderShipping
    verification_token: str
    phone: str
    guest_info: Optional[GuestInfo] = None


class GatewayOrderRequest(WireModel):
    cart_items: List[OrderProduct]
    coupon_code: Optional[str] = None
    reward_points: int = 0
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    customer_info: GuestInfo
    frontend_amount: Money
    shipping_cost: Money = ZERO


class GatewayOrder(WireModel):
    id: str
    amount: int = Field(..., description="Smallest currency unit (paise)")
    currency: str = "INR"


class GatewayOrderResponse(WireModel):
    order: GatewayOrder
    key_id: str = Field("", alias="key_id")
    breakdown: Optional[DiscountBreakdown] = None


class PaymentConfirmation(BaseModel):
    razorpay_payment_id: str
    razorpay_order_id: str
    razorpay_signature: str


class VerifyPaymentResponse(WireModel):
    success: bool = False
    verified: bool = False
    payment: Optional[Dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.verified or self.success


class OrderCreateRequest(WireModel):
    products: List[OrderProduct]
    transaction_id: str = Field(..., alias="transaction_id")
    amount: Money
    payment_method: PaymentMethod = PaymentMethod.ONLINE
    coupon: Optional[CouponSnapshot] = None
    reward_points_redeemed: int = 0
    address: str
    shipping: OrderShipping
    guest_info: Optional[GuestInfo] = None


class TrackingInfo(WireModel):
    order_id: str
    token: str
    pin: str


class OrderResponse(WireModel):
    success: bool = True
    order: Dict[str, Any]
    auto_account_created: bool = False
    existing_account_linked: bool = False
    tracking_info: Optional[TrackingInfo] = None

    @model_validator(mode="after")
    def _single_account_effect(self):
        if self.auto_account_created and self.existing_account_linked:
            raise ValueError("an order cannot both create and link an account")
        return self

    @property
    def account_outcome(self) -> AccountOutcome:
        if self.auto_account_created:
            return AccountOutcome.ACCOUNT_CREATED
        if self.existing_account_linked:
            return AccountOutcome.ACCOUNT_LINKED
        return AccountOutcome.NO_CHANGE


class OrderResult(BaseModel):
    """What the pipeline knows once an order exists server side."""

    order_id: str
    amount_charged: Decimal
    account_outcome: AccountOutcome = AccountOutcome.NO_CHANGE
    order: Dict[str, Any] = Field(default_factory=dict)
    breakdown: Optional[DiscountBreakdown] = None
    payment_id: Optional[str] = None
    tracking_info: Optional[TrackingInfo] = None

    @property
    def auto_account_created(self) -> bool:
        return self.account_outcome is AccountOutcome.ACCOUNT_CREATED

    @property
    def existing_account_linked(self) -> bool:
        return self.account_outcome is AccountOutcome.ACCOUNT_LINKED

    @classmethod
    def from_response(cls, response: OrderResponse, payment_id: Optional[str] = None) -> "OrderResult":
        order = response.order
        breakdown = order.get("breakdown")
        return cls(
            order_id=str(order.get("id") or order.get("_id") or ""),
            amount_charged=Decimal(str(order.get("amount", 0))),
            account_outcome=response.account_outcome,
            order=order,
            breakdown=DiscountBreakdown.model_validate(breakdown) if breakdown else None,
            payment_id=payment_id,
            tracking_info=response.tracking_info,
        )


# Verification wire models
class SendOtpRequest(WireModel):
    phone: str


class SendOtpResponse(WireModel):
    success: bool
    development_otp: Optional[str] = None


class VerifyOtpRequest(WireModel):
    phone: str
    otp: str


class VerifyOtpResponse(WireModel):
    success: bool
    verified: bool
    verification_token: str
    expires_in: int


class BypassStatusResponse(WireModel):
    success: bool = True
    bypass_enabled: bool = False


# Amount and coupon wire models
class CalculateAmountRequest(WireModel):
    cart_items: List[OrderProduct]
    coupon_code: Optional[str] = None
    reward_points: int = 0
    shipping_cost: Money = ZERO
    payment_method: Optional[PaymentMethod] = None


class CalculateAmountResponse(WireModel):
    success: bool = True
    total: Money
    subtotal: Money
    quantity_discount: Money = ZERO
    shipping_cost: Money = ZERO
    breakdown: Optional[DiscountBreakdown] = None


class CouponValidateRequest(WireModel):
    code: str
    cart_items: List[OrderProduct] = Field(default_factory=list)
    shipping_cost: Money = ZERO


class CouponValidateResponse(WireModel):
    code: str
    discount: Money
    description: str = ""

    def to_discount(self) -> CouponDiscount:
        return CouponDiscount(code=self.code, discount_amount=self.discount, description=self.description)


# Collections
class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: str = Field(..., description="Email address")
    phone: Optional[str] = None
    role: str = Field("user", description="user or admin")
    is_active: bool = Field(True)
    reward_points: int = Field(0, ge=0)
    auto_created: bool = Field(False, description="Created from a guest checkout")


class Coupon(BaseModel):
    code: str = Field(..., description="Upper-case coupon code")
    discount_type: str = Field("fixed", description="fixed or percentage")
    discount_value: Decimal = Field(..., ge=0)
    description: str = ""
    minimum_amount: Decimal = Field(ZERO, ge=0)
    max_discount: Optional[Decimal] = Field(None, ge=0, description="Cap for percentage coupons")
    active: bool = True
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=0, description="Total redemptions allowed")
    usage_count: int = Field(0, ge=0)
    first_time_only: bool = False
    user_limit: Optional[int] = Field(None, ge=1, description="Redemptions allowed per account")


class Order(BaseModel):
    user_id: Optional[str] = None
    guest_info: Optional[GuestInfo] = None
    products: List[OrderProduct]
    transaction_id: str = Field(..., description="Gateway payment id or cod_ reference")
    amount: Money
    payment_method: PaymentMethod
    payment_status: str = Field("Pending", description="Pending|Paid")
    status: str = Field("Received")
    coupon: Optional[CouponSnapshot] = None
    reward_points_redeemed: int = 0
    address: str
    shipping: OrderShipping
    breakdown: Optional[DiscountBreakdown] = None
    verification_jti: Optional[str] = None
    reward_points_credited: bool = False
    created_at: Optional[datetime] = None
