"""Order verification and retry controller.

The venue gives no transactional guarantees: an order can match partially,
lapse on suspension, or drop out of the current-orders view while it
settles. Nothing here trusts a status flag from a placement response. The
matched size is always re-read from the venue, and a remainder is only
re-placed after its cancellation has been confirmed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

from goalhedge.engine.gateway import SIZE_EPSILON, OrderState, OrderView, VenueGateway
from goalhedge.engine.settlement import Fill, weighted_average
from goalhedge.engine.venue import OrderRequest, VenueUnavailableError
from goalhedge.utils.constants import PERMANENT_CANCEL_ERRORS

logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    FILLED = "filled"
    PARTIAL = "partial"
    UNFILLED = "unfilled"
    REJECTED = "rejected"
    UNCONFIRMED = "unconfirmed"  # matched size could not be verified; do not act on it


@dataclass
class VerificationResult:
    outcome: Outcome
    requested_size: float
    matched_size: float = 0.0
    matched_price: float | None = None
    remaining_size: float = 0.0
    fills: list[Fill] = field(default_factory=list)
    bet_ids: list[str] = field(default_factory=list)
    error_code: str | None = None


@dataclass
class CancelResult:
    closed: bool
    attempts: int
    reason: str
    last_view: OrderView | None = None
    error_code: str | None = None

    @property
    def size_matched(self) -> float:
        return self.last_view.size_matched if self.last_view else 0.0


@dataclass
class _Leg:
    fill: Fill | None
    remaining: float
    confirmed: bool


OnPlaced = Callable[[str, OrderRequest, list[Fill]], Awaitable[None]]
Reprice = Callable[[OrderRequest], Awaitable[float | None]]


class OrderController:
    def __init__(
        self,
        gateway: VenueGateway,
        *,
        cancel_timeout: float = 10.0,
        cancel_max_attempts: int = 5,
        sleep=asyncio.sleep,
        clock=time.monotonic,
    ):
        self.gateway = gateway
        self.cancel_timeout = cancel_timeout
        self.cancel_max_attempts = cancel_max_attempts
        self._sleep = sleep
        self._clock = clock

    async def place_and_verify(
        self,
        request: OrderRequest,
        max_wait: float,
        poll_interval: float,
        *,
        max_retries: int = 1,
        reprice: Reprice | None = None,
        on_placed: OnPlaced | None = None,
    ) -> VerificationResult:
        """Place an order and wait until its matched size is known.

        On timeout the remainder is cancelled and confirmed; if reprice()
        returns a different price the unmatched amount is re-placed there,
        at most max_retries times. on_placed runs after every accepted
        placement, with the fills settled so far, so the caller can persist
        the bet id before waiting.
        """
        fills: list[Fill] = []
        bet_ids: list[str] = []
        remaining = request.size
        leg_request = request
        attempt = 0

        while True:
            placed = await self.gateway.place_order(leg_request)
            if not placed.ok:
                if not bet_ids:
                    return VerificationResult(
                        outcome=Outcome.REJECTED,
                        requested_size=request.size,
                        remaining_size=request.size,
                        error_code=placed.error_code,
                    )
                logger.warning(f"Re-placement of {remaining} rejected: {placed.error_code}")
                break

            bet_ids.append(placed.bet_id)
            if on_placed:
                await on_placed(placed.bet_id, leg_request, list(fills))

            leg = await self._resolve_leg(placed.bet_id, leg_request, max_wait, poll_interval)
            if leg.fill:
                fills.append(leg.fill)
            if not leg.confirmed:
                return self._result(request.size, fills, bet_ids, leg.remaining, unconfirmed=True)

            remaining = round(leg.remaining, 2)
            if remaining <= SIZE_EPSILON or attempt >= max_retries or reprice is None:
                break
            new_price = await reprice(leg_request)
            if new_price is None or abs(new_price - leg_request.price) < 1e-9:
                break

            attempt += 1
            logger.info(f"Re-placing unmatched {remaining} at {new_price} (was {leg_request.price})")
            ref = f"{request.customer_ref}-r{attempt}" if request.customer_ref else None
            leg_request = request.with_changes(size=remaining, price=new_price, customer_ref=ref)

        return self._result(request.size, fills, bet_ids, remaining)

    async def verify_existing(
        self,
        bet_id: str,
        request: OrderRequest,
        max_wait: float,
        poll_interval: float,
    ) -> VerificationResult:
        """Finish verifying an order placed on an earlier tick; never re-places."""
        leg = await self._resolve_leg(bet_id, request, max_wait, poll_interval)
        fills = [leg.fill] if leg.fill else []
        return self._result(request.size, fills, [bet_id], leg.remaining, unconfirmed=not leg.confirmed)

    async def cancel_and_confirm(
        self,
        bet_id: str,
        market_id: str,
        timeout: float | None = None,
        poll_interval: float = 0.5,
    ) -> CancelResult:
        """Cancel until the venue shows the order as no longer executable.

        A single cancel call is not trusted: cancellation itself can fail
        during a suspension. Absence from both order views is not treated
        as closed.
        """
        deadline = self._clock() + (self.cancel_timeout if timeout is None else timeout)
        attempts = 0
        last_view: OrderView | None = None
        error_code = None

        while attempts < self.cancel_max_attempts:
            attempts += 1
            report = None
            try:
                report = await self.gateway.cancel_order(bet_id, market_id)
                error_code = report.error_code
            except VenueUnavailableError as e:
                logger.warning(f"Cancel of {bet_id} failed (attempt {attempts}): {e}")

            try:
                view = await self.gateway.get_order(bet_id)
            except VenueUnavailableError as e:
                logger.warning(f"Could not re-check {bet_id} after cancel: {e}")
                view = None

            if view is not None and view.state != OrderState.NOT_FOUND:
                last_view = view
                if view.is_closed:
                    return CancelResult(True, attempts, "closed", last_view, error_code)
                if report is not None and report.error_code in PERMANENT_CANCEL_ERRORS:
                    return CancelResult(False, attempts, "permanent_error", last_view, error_code)

            if self._clock() >= deadline:
                break
            # Back off a little more on each failed attempt
            await self._sleep(poll_interval * attempts)

        logger.error(f"Cancel of {bet_id} not confirmed after {attempts} attempts")
        return CancelResult(False, attempts, "not_confirmed", last_view, error_code)

    async def _poll(self, bet_id: str, expected: float, max_wait: float, poll_interval: float) -> OrderView:
        deadline = self._clock() + max_wait
        while True:
            view = await self.gateway.get_order(bet_id, expected_size=expected)
            if view.is_closed or self._clock() >= deadline:
                return view
            await self._sleep(poll_interval)

    async def _resolve_leg(self, bet_id: str, request: OrderRequest, max_wait: float, poll_interval: float) -> _Leg:
        view = await self._poll(bet_id, request.size, max_wait, poll_interval)

        if view.state == OrderState.OPEN:
            cancel = await self.cancel_and_confirm(bet_id, request.market_id, poll_interval=poll_interval)
            if not cancel.closed:
                return _Leg(self._fill(bet_id, view, request), view.size_remaining, confirmed=False)
            view = cancel.last_view

        if view.state == OrderState.NOT_FOUND:
            return _Leg(None, request.size, confirmed=False)

        matched = view.size_matched
        remaining = 0.0 if view.state == OrderState.FULLY_MATCHED else max(request.size - matched, 0.0)
        return _Leg(self._fill(bet_id, view, request), remaining, confirmed=True)

    @staticmethod
    def _fill(bet_id: str, view: OrderView, request: OrderRequest) -> Fill | None:
        if view.size_matched <= 0:
            return None
        return Fill(bet_id=bet_id, size=view.size_matched, price=view.average_price_matched or request.price)

    @staticmethod
    def _result(requested, fills, bet_ids, remaining, unconfirmed=False) -> VerificationResult:
        matched, price = weighted_average(fills)
        if unconfirmed:
            outcome = Outcome.UNCONFIRMED
        elif remaining <= SIZE_EPSILON and matched > 0:
            outcome = Outcome.FILLED
        elif matched > 0:
            outcome = Outcome.PARTIAL
        else:
            outcome = Outcome.UNFILLED
        return VerificationResult(
            outcome=outcome,
            requested_size=requested,
            matched_size=matched,
            matched_price=price,
            remaining_size=round(max(remaining, 0.0), 2),
            fills=fills,
            bet_ids=bet_ids,
        )
