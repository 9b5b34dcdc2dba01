"""
Post-order work: cart clearing and the confirmation payload.

The cart is cleared in the background; confirmation never waits for it.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from backend import Session, StoreBackend
from outcomes import Outcome, Success
from payments import OrderDraft
from schemas import CartLine, DiscountBreakdown, OrderResult, PaymentMethod, TrackingInfo

logger = logging.getLogger(__name__)

CART_CLEAR_GRACE_SECONDS = 2.0


class CartStore(ABC):
    @abstractmethod
    async def clear(self) -> None:
        ...


class LocalCart(CartStore):
    """Guest cart kept in memory for the session."""

    def __init__(self, lines: Optional[List[CartLine]] = None):
        self.lines = list(lines or [])
        self.clear_calls = 0

    async def clear(self) -> None:
        self.clear_calls += 1
        self.lines = []


class RemoteCart(CartStore):
    def __init__(self, backend: StoreBackend, session: Session):
        self.backend = backend
        self.session = session

    async def clear(self) -> None:
        await self.backend.clear_cart(self.session)


@dataclass(frozen=True)
class ConfirmationPayload:
    order_id: Optional[str]
    order: Dict[str, Any] = field(default_factory=dict)
    breakdown: Optional[DiscountBreakdown] = None
    auto_account_created: bool = False
    existing_account_linked: bool = False
    is_guest: bool = True
    payment_method: Optional[PaymentMethod] = None
    payment_id: Optional[str] = None
    tracking_info: Optional[TrackingInfo] = None
    created_at: Optional[datetime] = None
    incomplete: bool = False
    message: str = ""


class OrderFinalizer:
    def __init__(self, cart: CartStore, clear_grace: float = CART_CLEAR_GRACE_SECONDS):
        self.cart = cart
        self.clear_grace = clear_grace
        self.pending: Optional[ConfirmationPayload] = None
        self._clear_tasks: Set[asyncio.Future] = set()

    @property
    def clearing(self) -> int:
        """Background cart clears still running."""
        return len(self._clear_tasks)

    async def finalize(self, outcome: Outcome, draft: OrderDraft) -> Optional[ConfirmationPayload]:
        """Record the confirmation for a successful order; no-op otherwise."""
        if not isinstance(outcome, Success):
            return None

        result: OrderResult = outcome.value
        if not draft.buy_now:
            self._clear_cart()

        self.pending = self.build_payload(result, draft)
        return self.pending

    def build_payload(self, result: OrderResult, draft: OrderDraft) -> ConfirmationPayload:
        return ConfirmationPayload(
            order_id=result.order_id,
            order=result.order,
            breakdown=result.breakdown or draft.quote.breakdown,
            auto_account_created=result.auto_account_created,
            existing_account_linked=result.existing_account_linked,
            is_guest=draft.is_guest,
            payment_method=draft.payment_method,
            payment_id=result.payment_id,
            tracking_info=result.tracking_info,
            created_at=datetime.now(timezone.utc),
        )

    def complete_processing(self) -> ConfirmationPayload:
        """Called when the processing indicator finishes; always yields a payload."""
        payload = self.pending
        self.pending = None
        if payload is not None:
            return payload
        logger.warning("Processing finished without a recorded order; sending buyer to a partial confirmation")
        return ConfirmationPayload(
            order_id=None,
            incomplete=True,
            created_at=datetime.now(timezone.utc),
            message="Your order may have been placed, but we could not load its details. "
            "Please check your email or contact support.",
        )

    def _clear_cart(self) -> None:
        task = asyncio.ensure_future(self.cart.clear())
        self._clear_tasks.add(task)
        task.add_done_callback(self._clear_done)

    def _clear_done(self, task: asyncio.Future) -> None:
        self._clear_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Cart could not be cleared after order: %s", exc)

    async def settle(self, timeout: Optional[float] = None) -> None:
        """Wait up to `timeout` (default: the clear grace) for background cart clears.

        Clears still running afterwards are cancelled. Call before the event
        loop goes away.
        """
        if not self._clear_tasks:
            return
        pending = set(self._clear_tasks)
        _, still_running = await asyncio.wait(pending, timeout=self.clear_grace if timeout is None else timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.wait(still_running)
