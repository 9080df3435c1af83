"""Market venue interface.

The engine never talks to an exchange transport directly. Anything that
implements MarketVenue can be plugged in through settings.venue_factory;
the in-memory PaperVenue is the default.
"""

import importlib
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Protocol

logger = logging.getLogger(__name__)


class Side(str, Enum):
    BACK = "BACK"
    LAY = "LAY"


class Persistence(str, Enum):
    LAPSE = "LAPSE"      # cancelled when the market turns in-play or suspends
    PERSIST = "PERSIST"  # keeps resting through suspensions


MARKET_OPEN = "OPEN"
MARKET_SUSPENDED = "SUSPENDED"
MARKET_CLOSED = "CLOSED"

ORDER_EXECUTABLE = "EXECUTABLE"
ORDER_EXECUTION_COMPLETE = "EXECUTION_COMPLETE"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class VenueError(Exception):
    """Base class for venue failures."""


class TransientVenueError(VenueError):
    """Network or timeout failure; worth one retry."""


class SessionExpiredError(VenueError):
    """The venue rejected the session token."""


class VenueUnavailableError(VenueError):
    """A call failed after its retry. The current tick should be abandoned."""


# ---------------------------------------------------------------------------
# Wire values
# ---------------------------------------------------------------------------

@dataclass
class PriceSize:
    price: float
    size: float


@dataclass
class Runner:
    selection_id: int
    total_matched: float = 0.0
    available_to_back: list[PriceSize] = field(default_factory=list)
    available_to_lay: list[PriceSize] = field(default_factory=list)
    last_price_traded: float | None = None


@dataclass
class MarketBook:
    market_id: str
    status: str = MARKET_OPEN
    inplay: bool = False
    total_matched: float = 0.0
    runners: list[Runner] = field(default_factory=list)

    def runner(self, selection_id: int) -> Runner | None:
        for r in self.runners:
            if r.selection_id == selection_id:
                return r
        return None


@dataclass
class OrderRequest:
    market_id: str
    selection_id: int
    side: Side
    size: float
    price: float
    persistence: Persistence = Persistence.LAPSE
    customer_ref: str | None = None

    def with_changes(self, **changes) -> "OrderRequest":
        return replace(self, **changes)


@dataclass
class PlaceResult:
    status: str  # "SUCCESS" or "FAILURE"
    bet_id: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "SUCCESS" and self.bet_id is not None


@dataclass
class CancelReport:
    status: str
    size_cancelled: float = 0.0
    error_code: str | None = None


@dataclass
class CurrentOrder:
    bet_id: str
    status: str
    size_matched: float
    size_remaining: float
    average_price_matched: float | None = None
    side: Side | None = None
    price: float | None = None
    size: float | None = None
    size_cancelled: float = 0.0
    size_lapsed: float = 0.0


@dataclass
class ClearedOrder:
    bet_id: str
    size_settled: float
    price_matched: float | None = None
    bet_outcome: str | None = None


class MarketVenue(Protocol):
    async def list_market_book(self, market_id: str) -> MarketBook | None: ...

    async def place_order(
        self,
        market_id: str,
        selection_id: int,
        side: Side,
        size: float,
        price: float,
        persistence: Persistence,
        customer_ref: str | None = None,
    ) -> PlaceResult: ...

    async def cancel_order(self, bet_id: str, market_id: str) -> CancelReport: ...

    async def list_orders(self, bet_ids: list[str]) -> list[CurrentOrder]: ...

    async def list_cleared_orders(self, bet_ids: list[str]) -> list[ClearedOrder]: ...

    async def reauthenticate(self) -> None: ...


def load_venue(path: str) -> MarketVenue:
    """Instantiate a venue from a "package.module:callable" path."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"venue_factory must look like 'module:callable', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    venue = factory()
    logger.info(f"Loaded venue {type(venue).__name__} from {path}")
    return venue
