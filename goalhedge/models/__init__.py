"""Database models."""

from goalhedge.models.trade import Trade
from goalhedge.models.trade_event import TradeEvent
from goalhedge.models.fixture import Fixture
from goalhedge.models.strategy_setting import StrategySetting

__all__ = [
    "Trade",
    "TradeEvent",
    "Fixture",
    "StrategySetting",
]
