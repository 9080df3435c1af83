"""Per-strategy policy configuration.

Resolved once from the settings table on top of the defaults below and
then treated as immutable; a changed setting only takes effect at an
explicit reload.
"""

import logging
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlmodel import Session, select

from goalhedge.models.strategy_setting import StrategySetting

logger = logging.getLogger(__name__)


class StrategyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy_key: str = Field(default="goalreact", min_length=1, max_length=64)
    enabled: bool = True

    # Sizing
    default_stake: float = Field(default=200.0, gt=0)
    commission_rate: float = Field(default=0.0175, ge=0, lt=1)
    min_market_liquidity: float = Field(default=1000.0, ge=0)

    # Trigger detection
    trigger_pct: float = Field(default=30.0, gt=0)
    trigger_cutoff_minutes: float = Field(default=45.0, ge=0)
    baseline_stability_pct: float = Field(default=5.0, ge=0)
    baseline_stable_readings: int = Field(default=4, ge=1)
    baseline_min_drift_pct: float = Field(default=1.0, ge=0)

    # Entry
    settle_seconds: float = Field(default=90.0, ge=0)
    min_entry_price: float = Field(default=2.0, gt=1)
    max_entry_price: float = Field(default=5.5, gt=1)
    below_min_recheck_seconds: float = Field(default=30.0, ge=0)
    entry_verify_seconds: float = Field(default=30.0, ge=0)
    entry_max_retries: int = Field(default=1, ge=0)

    # Hedging and recovery
    profit_target_pct: float = Field(default=10.0, gt=0)
    confirm_seconds: float = Field(default=90.0, ge=0)
    recovery_drift_pct: float = Field(default=20.0, ge=0)
    recovery_max_retries: int = Field(default=3, ge=0)

    # Verification plumbing
    verify_poll_seconds: float = Field(default=0.5, gt=0)
    cancel_confirm_seconds: float = Field(default=10.0, ge=0)
    cancel_max_attempts: int = Field(default=5, ge=1)

    # Scheduling
    poll_interval_seconds: float = Field(default=15.0, gt=0)
    max_concurrent_ticks: int = Field(default=8, ge=1)
    kickoff_lead_minutes: float = Field(default=2.0, ge=0)
    trailing_kickoff_window_minutes: float = Field(default=90.0, ge=0)
    fast_poll_lookahead_minutes: float = Field(default=10.0, ge=0)
    max_match_minutes: float = Field(default=120.0, gt=0)
    fixture_sync_minutes: float = Field(default=5.0, gt=0)

    # Shadow analytics
    shadow_max_minutes: float = Field(default=100.0, gt=0)

    @model_validator(mode="after")
    def _validate_relationships(self):
        if self.min_entry_price >= self.max_entry_price:
            raise ValueError("min_entry_price must be less than max_entry_price")
        if self.trigger_cutoff_minutes > self.max_match_minutes:
            raise ValueError("trigger_cutoff_minutes must be <= max_match_minutes")
        return self


def resolve_strategy_config(strategy_key: str, rows: Iterable[StrategySetting]) -> StrategyConfig:
    """Overlay stored setting rows on the defaults and validate the result."""
    overrides: dict[str, str] = {}
    for row in rows:
        if row.name not in StrategyConfig.model_fields or row.name == "strategy_key":
            logger.warning(f"[{strategy_key}] Ignoring unknown setting {row.name!r}")
            continue
        overrides[row.name] = row.value
    return StrategyConfig(strategy_key=strategy_key, **overrides)


def load_strategy_config(session: Session, strategy_key: str) -> StrategyConfig:
    rows = session.exec(
        select(StrategySetting).where(StrategySetting.strategy_key == strategy_key)
    ).all()
    config = resolve_strategy_config(strategy_key, rows)
    logger.info(f"[{strategy_key}] Loaded config ({len(rows)} overrides)")
    return config


def default_setting_rows(strategy_key: str) -> list[StrategySetting]:
    """Settings rows holding every default, for seeding a fresh database."""
    config = StrategyConfig(strategy_key=strategy_key)
    return [
        StrategySetting(strategy_key=strategy_key, name=name, value=str(value))
        for name, value in config.model_dump(exclude={"strategy_key"}).items()
    ]
