"""
Token helpers for the store API: COD one-time passwords, phone verification
tokens and session tokens. All tokens are HS256 JWTs signed with SECRET.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt

from config import Settings

VERIFICATION_PURPOSE = "cod_phone_verification"
SESSION_PURPOSE = "session"


class InvalidToken(Exception):
    pass


def generate_otp() -> str:
    return str(100000 + secrets.randbelow(900000))


def _now(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def issue_verification_token(phone: str, settings: Settings, now: Optional[datetime] = None) -> Tuple[str, int]:
    """Return (token, expires_in_seconds) proving `phone` was verified."""
    issued = _now(now)
    ttl = settings.verification_token_ttl_seconds
    claims = {
        "sub": phone,
        "purpose": VERIFICATION_PURPOSE,
        "jti": uuid.uuid4().hex,
        "iat": issued,
        "exp": issued + timedelta(seconds=ttl),
    }
    return jwt.encode(claims, settings.secret, algorithm="HS256"), ttl


def decode_verification_token(token: str, settings: Settings, phone: Optional[str] = None) -> Dict[str, Any]:
    try:
        claims = jwt.decode(token, settings.secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise InvalidToken("Phone verification has expired. Please verify again.") from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidToken("Invalid phone verification") from exc

    if claims.get("purpose") != VERIFICATION_PURPOSE:
        raise InvalidToken("Invalid phone verification")
    if phone is not None and claims.get("sub") != phone:
        raise InvalidToken("Verified phone does not match")
    return claims


def issue_session_token(user_id: str, settings: Settings, ttl_hours: int = 24 * 7) -> str:
    issued = datetime.now(timezone.utc)
    claims = {"_id": user_id, "purpose": SESSION_PURPOSE, "iat": issued, "exp": issued + timedelta(hours=ttl_hours)}
    return jwt.encode(claims, settings.secret, algorithm="HS256")


def decode_session_token(token: str, settings: Settings) -> str:
    try:
        claims = jwt.decode(token, settings.secret, algorithms=["HS256"])
    except jwt.InvalidTokenError as exc:
        raise InvalidToken("Invalid authentication token") from exc
    if claims.get("purpose") != SESSION_PURPOSE or not claims.get("_id"):
        raise InvalidToken("Invalid authentication token")
    return str(claims["_id"])
