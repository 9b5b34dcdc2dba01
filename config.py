"""
Runtime settings for the checkout core and the store API.

Values come from the environment (a local .env file is honoured).
"""

import os
from decimal import Decimal
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()


def _flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    secret: str = Field("change-me", description="HS256 key for session and verification tokens")
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    currency: str = "INR"

    cod_bypass_enabled: bool = False
    cod_dev_otp: bool = False
    otp_ttl_seconds: int = 300
    otp_max_attempts: int = 3
    verification_token_ttl_seconds: int = 900

    reward_point_value: Decimal = Decimal("0.5")
    max_reward_points_per_order: int = 50
    reward_earning_rate: Decimal = Decimal("0.01")
    auto_create_guest_accounts: bool = True

    api_url: str = "http://localhost:8000"
    http_timeout: float = 15.0
    port: int = 8000


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL"),
        database_name=os.getenv("DATABASE_NAME"),
        secret=os.getenv("SECRET", "change-me"),
        razorpay_key_id=os.getenv("RAZORPAY_KEY_ID", ""),
        razorpay_key_secret=os.getenv("RAZORPAY_KEY_SECRET", ""),
        razorpay_api_url=os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
        currency=os.getenv("CURRENCY", "INR"),
        cod_bypass_enabled=_flag("COD_BYPASS_ENABLED"),
        cod_dev_otp=_flag("COD_DEV_OTP"),
        otp_ttl_seconds=int(os.getenv("OTP_TTL_SECONDS", 300)),
        otp_max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", 3)),
        verification_token_ttl_seconds=int(os.getenv("VERIFICATION_TOKEN_TTL_SECONDS", 900)),
        reward_point_value=Decimal(os.getenv("REWARD_POINT_VALUE", "0.5")),
        max_reward_points_per_order=int(os.getenv("MAX_REWARD_POINTS_PER_ORDER", 50)),
        reward_earning_rate=Decimal(os.getenv("REWARD_EARNING_RATE", "0.01")),
        auto_create_guest_accounts=_flag("AUTO_CREATE_GUEST_ACCOUNTS", True),
        api_url=os.getenv("API_URL", "http://localhost:8000"),
        http_timeout=float(os.getenv("CHECKOUT_HTTP_TIMEOUT", 15)),
        port=int(os.getenv("PORT", 8000)),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
