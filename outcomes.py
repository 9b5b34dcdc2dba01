"""
Outcome values returned by every gate and payment strategy.

Nothing in the pipeline raises past its own boundary; callers match on
Success / Failure / Cancelled instead.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

T = TypeVar("T")


class FailureReason(str, Enum):
    # input
    SHIPPING_NOT_SELECTED = "shipping_not_selected"
    INVALID_ADDRESS = "invalid_address"
    MISSING_PHONE = "missing_phone"
    VERIFICATION_REQUIRED = "verification_required"
    SAVED_CARD_UNAVAILABLE = "saved_card_unavailable"
    COD_UNAVAILABLE = "cod_unavailable"
    INVALID_COUPON = "invalid_coupon"
    # verification
    INVALID_OTP = "invalid_otp"
    OTP_SEND_FAILED = "otp_send_failed"
    # gateway
    PAYMENT_FAILED = "payment_failed"
    # after money has moved
    PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
    ORDER_CAPTURE_FAILED = "order_capture_failed"
    # order creation without prior payment
    ORDER_CREATION_FAILED = "order_creation_failed"
    NETWORK_ERROR = "network_error"


SEVERE_REASONS = frozenset({FailureReason.PAYMENT_VERIFICATION_FAILED, FailureReason.ORDER_CAPTURE_FAILED})

_DEFAULT_MESSAGES = {
    FailureReason.SHIPPING_NOT_SELECTED: "Please select a shipping method.",
    FailureReason.INVALID_ADDRESS: "Please complete your shipping address.",
    FailureReason.MISSING_PHONE: "Please enter a phone number.",
    FailureReason.VERIFICATION_REQUIRED: "Please verify your phone number to place a Cash on Delivery order.",
    FailureReason.SAVED_CARD_UNAVAILABLE: "Saved cards are only available when you are signed in.",
    FailureReason.COD_UNAVAILABLE: "Cash on Delivery is not available for this shipping option.",
    FailureReason.INVALID_COUPON: "This coupon could not be applied.",
    FailureReason.INVALID_OTP: "Invalid OTP. Please try again.",
    FailureReason.OTP_SEND_FAILED: "Could not send the OTP. Please try again.",
    FailureReason.PAYMENT_FAILED: "Payment failed.",
    FailureReason.ORDER_CREATION_FAILED: "Failed to create your order. Please try again.",
    FailureReason.NETWORK_ERROR: "Network problem. Please try again.",
}


@dataclass(frozen=True)
class Success(Generic[T]):
    value: T


@dataclass(frozen=True)
class Failure:
    reason: FailureReason
    message: str = ""
    payment_id: Optional[str] = None
    detail: Any = None

    @property
    def severe(self) -> bool:
        return self.reason in SEVERE_REASONS

    def user_message(self) -> str:
        if self.severe:
            return (
                "Your payment was received but we could not complete your order. "
                f"Please contact support with payment ID {self.payment_id}."
            )
        base = _DEFAULT_MESSAGES.get(self.reason, "Something went wrong.")
        if self.message and self.message != base:
            return f"{base} {self.message}"
        return base


@dataclass(frozen=True)
class Cancelled:
    message: str = "Payment cancelled by user"


Outcome = Union[Success, Failure, Cancelled]
