"""
Phone verification for Cash on Delivery orders.

The gate is an explicit state machine:

    Idle -> OtpRequested -> OtpSent -> OtpVerified
    Idle -> BypassVerified                      (operator bypass)
    any  -> Failed(resume=Idle | OtpSent)      (recoverable)

A successful verification yields a server-signed token bound to the phone
number. The token is handed to order creation exactly once via consume().
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from backend import BackendError, StoreBackend, TransportError
from outcomes import Failure, FailureReason, Outcome, Success
from schemas import BYPASS_OTP

logger = logging.getLogger(__name__)

OTP_PATTERN = re.compile(r"^\d{6}$")


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class OtpRequested:
    phone: str


@dataclass(frozen=True)
class OtpSent:
    phone: str
    development_otp: Optional[str] = None


@dataclass(frozen=True)
class OtpVerified:
    phone: str
    token: str
    expires_at: float


@dataclass(frozen=True)
class BypassVerified:
    phone: str
    token: str
    expires_at: float


@dataclass(frozen=True)
class Failed:
    reason: FailureReason
    message: str
    resume: Union[Idle, OtpSent]


GateState = Union[Idle, OtpRequested, OtpSent, OtpVerified, BypassVerified, Failed]


@dataclass(frozen=True)
class VerificationProof:
    token: str
    phone: str
    bypassed: bool = False


class VerificationGate:
    def __init__(self, backend: StoreBackend, clock: Callable[[], float] = time.monotonic):
        self.backend = backend
        self.clock = clock
        self.state: GateState = Idle()

    @property
    def effective_state(self) -> GateState:
        if isinstance(self.state, Failed):
            return self.state.resume
        return self.state

    @property
    def proof(self) -> Optional[VerificationProof]:
        state = self.state
        if isinstance(state, (OtpVerified, BypassVerified)) and self.clock() < state.expires_at:
            return VerificationProof(token=state.token, phone=state.phone, bypassed=isinstance(state, BypassVerified))
        return None

    @property
    def is_verified(self) -> bool:
        return self.proof is not None

    def reset(self) -> None:
        self.state = Idle()

    def consume(self) -> Optional[VerificationProof]:
        proof = self.proof
        self.state = Idle()
        return proof

    def _fail(self, reason: FailureReason, message: str, resume) -> Failure:
        self.state = Failed(reason=reason, message=message, resume=resume)
        return Failure(reason, message)

    def _verified(self, phone: str, response, bypassed: bool) -> VerificationProof:
        expires_at = self.clock() + max(response.expires_in, 0)
        if bypassed:
            self.state = BypassVerified(phone=phone, token=response.verification_token, expires_at=expires_at)
        else:
            self.state = OtpVerified(phone=phone, token=response.verification_token, expires_at=expires_at)
        return self.proof

    async def check_bypass_status(self, phone: str = "") -> Outcome:
        """Verify straight away when the operator has OTP switched off.

        Resolves to Success(proof) in bypass mode, Success(None) otherwise.
        """
        try:
            status = await self.backend.bypass_status()
        except (BackendError, TransportError) as exc:
            logger.warning("Could not read COD bypass status: %s", exc)
            return Failure(FailureReason.NETWORK_ERROR, str(exc))

        if not status.bypass_enabled:
            return Success(None)

        phone = (phone or "").strip()
        if not phone:
            return Failure(FailureReason.MISSING_PHONE)

        try:
            response = await self.backend.verify_otp(phone, BYPASS_OTP)
        except BackendError as exc:
            return self._fail(FailureReason.INVALID_OTP, exc.message, Idle())
        except TransportError as exc:
            return self._fail(FailureReason.NETWORK_ERROR, str(exc), Idle())

        if not response.verified or not response.verification_token:
            return self._fail(FailureReason.INVALID_OTP, "Bypass verification was not accepted", Idle())
        logger.info("COD verification bypassed by operator policy")
        return Success(self._verified(phone, response, bypassed=True))

    async def send_otp(self, phone: str) -> Outcome:
        phone = (phone or "").strip()
        if not phone:
            return Failure(FailureReason.MISSING_PHONE)

        self.state = OtpRequested(phone=phone)
        try:
            response = await self.backend.send_otp(phone)
        except BackendError as exc:
            return self._fail(FailureReason.OTP_SEND_FAILED, exc.message, Idle())
        except TransportError as exc:
            return self._fail(FailureReason.NETWORK_ERROR, str(exc), Idle())

        if not response.success:
            return self._fail(FailureReason.OTP_SEND_FAILED, "", Idle())
        self.state = OtpSent(phone=phone, development_otp=response.development_otp)
        return Success(self.state)

    async def verify_otp(self, phone: str, code: str) -> Outcome:
        phone = (phone or "").strip()
        code = (code or "").strip()
        if not phone:
            return Failure(FailureReason.MISSING_PHONE)
        if not OTP_PATTERN.match(code):
            return Failure(FailureReason.INVALID_OTP, "Enter the 6-digit code")

        resume = OtpSent(phone=phone)
        try:
            response = await self.backend.verify_otp(phone, code)
        except BackendError as exc:
            return self._fail(FailureReason.INVALID_OTP, exc.message, resume)
        except TransportError as exc:
            return self._fail(FailureReason.NETWORK_ERROR, str(exc), resume)

        if not response.verified or not response.verification_token:
            return self._fail(FailureReason.INVALID_OTP, "", resume)
        return Success(self._verified(phone, response, bypassed=False))
