"""Venue gateway: retry, re-authentication and order state classification.

Every venue call gets exactly one retry: immediately after a transient
failure, or after re-authenticating when the session has expired. A
second failure raises VenueUnavailableError and the caller abandons the
tick.
"""

import logging
from dataclasses import dataclass
from enum import Enum

from goalhedge.engine.venue import (
    MARKET_CLOSED,
    ORDER_EXECUTABLE,
    CancelReport,
    ClearedOrder,
    CurrentOrder,
    MarketBook,
    MarketVenue,
    OrderRequest,
    PlaceResult,
    SessionExpiredError,
    TransientVenueError,
    VenueUnavailableError,
)

logger = logging.getLogger(__name__)

SIZE_EPSILON = 0.005  # stakes are quoted to 2dp


class OrderState(str, Enum):
    OPEN = "open"
    FULLY_MATCHED = "fully_matched"
    CLOSED_PARTIAL = "closed_partial"  # no longer executable; matched anything from 0 up
    NOT_FOUND = "not_found"


@dataclass
class OrderView:
    bet_id: str
    state: OrderState
    size_matched: float = 0.0
    size_remaining: float = 0.0
    average_price_matched: float | None = None
    cleared: bool = False

    @property
    def is_closed(self) -> bool:
        return self.state in (OrderState.FULLY_MATCHED, OrderState.CLOSED_PARTIAL)


@dataclass
class Quote:
    """Best prices for one selection, taken from a single book snapshot."""

    market_status: str
    inplay: bool
    best_back: float | None
    best_lay: float | None
    last_traded: float | None
    total_matched: float | None

    @property
    def is_closed(self) -> bool:
        return self.market_status == MARKET_CLOSED

    @property
    def signal_price(self) -> float | None:
        return self.best_back or self.last_traded

    @classmethod
    def from_book(cls, book: MarketBook, selection_id: int) -> "Quote":
        runner = book.runner(selection_id)
        best_back = best_lay = last_traded = None
        if runner:
            if runner.available_to_back:
                best_back = max(p.price for p in runner.available_to_back)
            if runner.available_to_lay:
                best_lay = min(p.price for p in runner.available_to_lay)
            last_traded = runner.last_price_traded
        return cls(
            market_status=book.status,
            inplay=book.inplay,
            best_back=best_back,
            best_lay=best_lay,
            last_traded=last_traded,
            total_matched=book.total_matched,
        )


def classify_current(order: CurrentOrder) -> OrderView:
    unmatched_closed = order.size_cancelled + order.size_lapsed
    if order.status == ORDER_EXECUTABLE and order.size_remaining > SIZE_EPSILON:
        state = OrderState.OPEN
    elif order.size_matched > 0 and order.size_remaining <= SIZE_EPSILON and unmatched_closed <= SIZE_EPSILON:
        state = OrderState.FULLY_MATCHED
    else:
        state = OrderState.CLOSED_PARTIAL
    return OrderView(
        bet_id=order.bet_id,
        state=state,
        size_matched=order.size_matched,
        size_remaining=order.size_remaining if state == OrderState.OPEN else 0.0,
        average_price_matched=order.average_price_matched,
    )


def classify_cleared(order: ClearedOrder, expected_size: float | None = None) -> OrderView:
    matched = order.size_settled or 0.0
    if matched > 0 and (expected_size is None or matched >= expected_size - SIZE_EPSILON):
        state = OrderState.FULLY_MATCHED
    else:
        state = OrderState.CLOSED_PARTIAL
    return OrderView(
        bet_id=order.bet_id,
        state=state,
        size_matched=matched,
        size_remaining=0.0,
        average_price_matched=order.price_matched,
        cleared=True,
    )


class VenueGateway:
    def __init__(self, venue: MarketVenue):
        self.venue = venue

    async def _call(self, label: str, fn, *args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except SessionExpiredError:
            logger.warning(f"{label}: session expired, re-authenticating")
            try:
                await self.venue.reauthenticate()
            except Exception as e:
                raise VenueUnavailableError(f"{label}: re-authentication failed: {e}") from e
        except TransientVenueError as e:
            logger.warning(f"{label}: transient failure ({e}), retrying once")

        try:
            return await fn(*args, **kwargs)
        except (TransientVenueError, SessionExpiredError) as e:
            raise VenueUnavailableError(f"{label}: failed after retry: {e}") from e

    async def get_book(self, market_id: str) -> MarketBook | None:
        return await self._call("list_market_book", self.venue.list_market_book, market_id)

    async def get_quote(self, market_id: str, selection_id: int) -> Quote | None:
        book = await self.get_book(market_id)
        if book is None:
            return None
        return Quote.from_book(book, selection_id)

    async def place_order(self, request: OrderRequest) -> PlaceResult:
        result = await self._call(
            "place_order",
            self.venue.place_order,
            request.market_id,
            request.selection_id,
            request.side,
            request.size,
            request.price,
            request.persistence,
            customer_ref=request.customer_ref,
        )
        if result.ok:
            logger.info(
                f"Placed {request.side.value} {request.size}@{request.price} "
                f"on {request.market_id} -> bet {result.bet_id} (ref={request.customer_ref})"
            )
        else:
            logger.warning(
                f"Placement rejected: {request.side.value} {request.size}@{request.price} "
                f"on {request.market_id}: {result.error_code}"
            )
        return result

    async def cancel_order(self, bet_id: str, market_id: str) -> CancelReport:
        return await self._call("cancel_order", self.venue.cancel_order, bet_id, market_id)

    async def get_order(self, bet_id: str, expected_size: float | None = None) -> OrderView:
        """Fetch the true state of one order.

        An order missing from the current-orders view is looked up in the
        cleared view before it is reported NOT_FOUND; a fully matched bet
        drops out of current orders once the market settles.
        """
        current = await self._call("list_orders", self.venue.list_orders, [bet_id])
        for order in current:
            if order.bet_id == bet_id:
                return classify_current(order)

        cleared = await self._call("list_cleared_orders", self.venue.list_cleared_orders, [bet_id])
        for order in cleared:
            if order.bet_id == bet_id:
                logger.info(f"Bet {bet_id} found in cleared orders (settled={order.size_settled})")
                return classify_cleared(order, expected_size)

        logger.warning(f"Bet {bet_id} not found in current or cleared orders")
        return OrderView(bet_id=bet_id, state=OrderState.NOT_FOUND)
