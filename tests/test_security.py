# tests/test_security.py
from datetime import datetime, timedelta, timezone

import pytest

from config import Settings
from gateway import payment_signature, verify_payment_signature
from schemas import PaymentConfirmation
from security import (
    InvalidToken,
    decode_session_token,
    decode_verification_token,
    generate_otp,
    issue_session_token,
    issue_verification_token,
)

SETTINGS = Settings(secret="unit-secret-0123456789abcdef0123456789", verification_token_ttl_seconds=60)


def test_generated_otps_are_six_digits():
    for _ in range(50):
        otp = generate_otp()
        assert len(otp) == 6 and otp.isdigit()


def test_verification_token_is_bound_to_phone():
    token, ttl = issue_verification_token("9876543210", SETTINGS)

    assert ttl == 60
    claims = decode_verification_token(token, SETTINGS, phone="9876543210")
    assert claims["sub"] == "9876543210"
    assert claims["jti"]
    with pytest.raises(InvalidToken):
        decode_verification_token(token, SETTINGS, phone="9000000000")


def test_verification_token_expires():
    token, _ = issue_verification_token("9876543210", SETTINGS, now=datetime.now(timezone.utc) - timedelta(minutes=5))
    with pytest.raises(InvalidToken, match="expired"):
        decode_verification_token(token, SETTINGS)


def test_tokens_are_not_interchangeable():
    session = issue_session_token("user-1", SETTINGS)
    verification, _ = issue_verification_token("9876543210", SETTINGS)

    assert decode_session_token(session, SETTINGS) == "user-1"
    with pytest.raises(InvalidToken):
        decode_verification_token(session, SETTINGS)
    with pytest.raises(InvalidToken):
        decode_session_token(verification, SETTINGS)
    with pytest.raises(InvalidToken):
        decode_session_token(session, Settings(secret="another-secret-0123456789abcdef012345"))


def test_payment_signature_check():
    good = PaymentConfirmation(
        razorpay_payment_id="pay_1",
        razorpay_order_id="order_1",
        razorpay_signature=payment_signature("order_1", "pay_1", "key"),
    )
    assert verify_payment_signature(good, "key")
    assert not verify_payment_signature(good, "other")
    assert not verify_payment_signature(good, "")
    swapped = good.model_copy(update={"razorpay_order_id": "order_2"})
    assert not verify_payment_signature(swapped, "key")
