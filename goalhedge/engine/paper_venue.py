"""In-memory paper venue.

Matches orders against whatever liquidity the book currently shows, rests
the remainder, lapses LAPSE orders on suspension and moves everything
into the cleared view when the market closes. Used for dry runs and as
the venue in tests, where failures can be injected per method.
"""

import copy
import itertools
import logging
from dataclasses import dataclass, field

from goalhedge.engine.price_ladder import is_valid_price
from goalhedge.engine.venue import (
    MARKET_CLOSED,
    MARKET_OPEN,
    MARKET_SUSPENDED,
    ORDER_EXECUTABLE,
    ORDER_EXECUTION_COMPLETE,
    CancelReport,
    ClearedOrder,
    CurrentOrder,
    MarketBook,
    Persistence,
    PlaceResult,
    PriceSize,
    Runner,
    Side,
)

logger = logging.getLogger(__name__)


@dataclass
class _PaperOrder:
    bet_id: str
    market_id: str
    selection_id: int
    side: Side
    price: float
    size: float
    persistence: Persistence
    fills: list[tuple[float, float]] = field(default_factory=list)  # (size, price)
    size_cancelled: float = 0.0
    size_lapsed: float = 0.0

    @property
    def size_matched(self) -> float:
        return round(sum(s for s, _ in self.fills), 2)

    @property
    def size_remaining(self) -> float:
        return round(max(self.size - self.size_matched - self.size_cancelled - self.size_lapsed, 0.0), 2)

    @property
    def average_price(self) -> float | None:
        matched = sum(s for s, _ in self.fills)
        if matched <= 0:
            return None
        return round(sum(s * p for s, p in self.fills) / matched, 4)


class PaperVenue:
    def __init__(self):
        self._books: dict[str, MarketBook] = {}
        self._orders: dict[str, _PaperOrder] = {}
        self._cleared: dict[str, ClearedOrder] = {}
        self._refs: dict[str, str] = {}
        self._failures: dict[str, list[Exception]] = {}
        self._bet_seq = itertools.count(1)
        self.calls: list[str] = []
        self.reauth_count = 0

    # -- test / simulation controls -------------------------------------

    def set_book(
        self,
        market_id: str,
        selection_id: int,
        back: list[tuple[float, float]] | None = None,
        lay: list[tuple[float, float]] | None = None,
        status: str = MARKET_OPEN,
        inplay: bool = True,
        total_matched: float = 50_000.0,
        last_traded: float | None = None,
    ):
        """Replace the book for a single-runner market and re-match resting orders."""
        runner = Runner(
            selection_id=selection_id,
            total_matched=total_matched,
            available_to_back=[PriceSize(p, s) for p, s in sorted(back or [], reverse=True)],
            available_to_lay=[PriceSize(p, s) for p, s in sorted(lay or [])],
            last_price_traded=last_traded,
        )
        self._books[market_id] = MarketBook(
            market_id=market_id,
            status=status,
            inplay=inplay,
            total_matched=total_matched,
            runners=[runner],
        )
        if status == MARKET_SUSPENDED:
            self._lapse_orders(market_id)
        elif status == MARKET_CLOSED:
            self.close_market(market_id)
        else:
            for order in list(self._orders.values()):
                if order.market_id == market_id and order.size_remaining > 0:
                    self._match(order)

    def fail_next(self, method: str, exc: Exception, times: int = 1):
        self._failures.setdefault(method, []).extend([exc] * times)

    def suspend_market(self, market_id: str):
        book = self._books[market_id]
        book.status = MARKET_SUSPENDED
        self._lapse_orders(market_id)

    def close_market(self, market_id: str):
        book = self._books.get(market_id)
        if book:
            book.status = MARKET_CLOSED
        for bet_id in [b for b, o in self._orders.items() if o.market_id == market_id]:
            self.clear_order(bet_id)

    def clear_order(self, bet_id: str):
        """Move an order from the current view to the cleared view."""
        order = self._orders.pop(bet_id)
        self._cleared[bet_id] = ClearedOrder(
            bet_id=bet_id,
            size_settled=order.size_matched,
            price_matched=order.average_price,
        )

    def drop_order(self, bet_id: str):
        """Remove an order from every view, leaving no trace of it."""
        self._orders.pop(bet_id, None)
        self._cleared.pop(bet_id, None)

    def lapse_order(self, bet_id: str):
        order = self._orders[bet_id]
        order.size_lapsed += order.size_remaining

    def order(self, bet_id: str) -> _PaperOrder | None:
        return self._orders.get(bet_id)

    def orders(self) -> list[_PaperOrder]:
        return list(self._orders.values())

    # -- MarketVenue ----------------------------------------------------

    def _maybe_fail(self, method: str):
        self.calls.append(method)
        queue = self._failures.get(method)
        if queue:
            raise queue.pop(0)

    async def list_market_book(self, market_id: str) -> MarketBook | None:
        self._maybe_fail("list_market_book")
        book = self._books.get(market_id)
        return copy.deepcopy(book) if book else None

    async def place_order(
        self,
        market_id: str,
        selection_id: int,
        side: Side,
        size: float,
        price: float,
        persistence: Persistence,
        customer_ref: str | None = None,
    ) -> PlaceResult:
        self._maybe_fail("place_order")
        if customer_ref and customer_ref in self._refs:
            return PlaceResult(status="SUCCESS", bet_id=self._refs[customer_ref])

        book = self._books.get(market_id)
        if book is None:
            return PlaceResult(status="FAILURE", error_code="MARKET_NOT_FOUND")
        if book.status != MARKET_OPEN:
            return PlaceResult(status="FAILURE", error_code="MARKET_NOT_OPEN_FOR_BETTING")
        if size is None or size < 0.01:
            return PlaceResult(status="FAILURE", error_code="INVALID_BET_SIZE")
        if not is_valid_price(price):
            return PlaceResult(status="FAILURE", error_code="INVALID_ODDS")

        bet_id = f"paper-{next(self._bet_seq)}"
        order = _PaperOrder(
            bet_id=bet_id,
            market_id=market_id,
            selection_id=selection_id,
            side=Side(side),
            price=price,
            size=round(size, 2),
            persistence=Persistence(persistence),
        )
        self._orders[bet_id] = order
        if customer_ref:
            self._refs[customer_ref] = bet_id
        self._match(order)
        logger.debug(f"Paper order {bet_id}: {order.side.value} {order.size}@{price} matched={order.size_matched}")
        return PlaceResult(status="SUCCESS", bet_id=bet_id)

    async def cancel_order(self, bet_id: str, market_id: str) -> CancelReport:
        self._maybe_fail("cancel_order")
        order = self._orders.get(bet_id)
        if order is None:
            return CancelReport(status="FAILURE", error_code="INVALID_BET_ID")
        remaining = order.size_remaining
        if remaining <= 0:
            return CancelReport(status="FAILURE", error_code="BET_TAKEN_OR_LAPSED")
        order.size_cancelled += remaining
        return CancelReport(status="SUCCESS", size_cancelled=remaining)

    async def list_orders(self, bet_ids: list[str]) -> list[CurrentOrder]:
        self._maybe_fail("list_orders")
        result = []
        for bet_id in bet_ids:
            order = self._orders.get(bet_id)
            if order is None:
                continue
            result.append(CurrentOrder(
                bet_id=bet_id,
                status=ORDER_EXECUTABLE if order.size_remaining > 0 else ORDER_EXECUTION_COMPLETE,
                size_matched=order.size_matched,
                size_remaining=order.size_remaining,
                average_price_matched=order.average_price,
                side=order.side,
                price=order.price,
                size=order.size,
                size_cancelled=order.size_cancelled,
                size_lapsed=order.size_lapsed,
            ))
        return result

    async def list_cleared_orders(self, bet_ids: list[str]) -> list[ClearedOrder]:
        self._maybe_fail("list_cleared_orders")
        return [self._cleared[b] for b in bet_ids if b in self._cleared]

    async def reauthenticate(self) -> None:
        self.reauth_count += 1

    # -- matching -------------------------------------------------------

    def _match(self, order: _PaperOrder):
        book = self._books.get(order.market_id)
        if book is None or book.status != MARKET_OPEN:
            return
        runner = book.runner(order.selection_id)
        if runner is None:
            return

        # A BACK takes offers at or above its price, a LAY at or below
        if order.side == Side.BACK:
            levels = runner.available_to_back
            acceptable = lambda level: level.price >= order.price - 1e-9  # noqa: E731
        else:
            levels = runner.available_to_lay
            acceptable = lambda level: level.price <= order.price + 1e-9  # noqa: E731

        for level in levels:
            remaining = order.size_remaining
            if remaining <= 0:
                break
            if not acceptable(level) or level.size <= 0:
                continue
            take = round(min(remaining, level.size), 2)
            order.fills.append((take, level.price))
            level.size = round(level.size - take, 2)
        levels[:] = [lvl for lvl in levels if lvl.size > 0]

    def _lapse_orders(self, market_id: str):
        for order in self._orders.values():
            if order.market_id == market_id and order.persistence == Persistence.LAPSE:
                order.size_lapsed += order.size_remaining
