"""Per-trade phase state as a tagged union.

Each phase is its own frozen model carrying only what that phase needs;
the ``phase`` literal is the discriminator used when the JSON snapshot is
read back from trade.phase_state. Transitions build the next variant
rather than mutating the current one.
"""

from datetime import datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from goalhedge.engine.settlement import Fill
from goalhedge.engine.shadow import ShadowTrack
from goalhedge.utils.constants import (
    STATUS_CANCELLED,
    STATUS_COMPLETED,
    STATUS_ENTERING,
    STATUS_LIVE,
    STATUS_SCHEDULED,
    STATUS_SETTLING,
    STATUS_SKIPPED,
    STATUS_WATCHING,
)


class _Phase(BaseModel):
    model_config = ConfigDict(frozen=True)


class Watching(_Phase):
    phase: Literal["watching"] = "watching"
    baseline_price: float | None = None
    last_price: float | None = None
    recent_prices: tuple[float, ...] = ()


class TriggerWait(_Phase):
    phase: Literal["trigger_wait"] = "trigger_wait"
    baseline_price: float
    trigger_price: float
    triggered_at: datetime
    below_min_since: datetime | None = None
    snapshots_logged: tuple[int, ...] = ()


class Entering(_Phase):
    phase: Literal["entering"] = "entering"
    baseline_price: float
    trigger_price: float
    triggered_at: datetime
    stake: float
    entry_price: float
    current_bet_id: str | None = None
    current_size: float = 0.0
    current_price: float | None = None
    bet_ids: tuple[str, ...] = ()
    fills: tuple[Fill, ...] = ()  # verified fills from bets already closed


class _Position(_Phase):
    entry_price: float  # size-weighted matched back price
    back_matched: float
    entered_at: datetime
    hedge_fills: tuple[Fill, ...] = ()
    hedge_seq: int = 0


class Live(_Position):
    phase: Literal["live"] = "live"
    last_stable_price: float
    protective_bet_id: str | None = None
    protective_size: float | None = None
    target_lay_price: float | None = None
    emergency: bool = False
    hedge_failed: bool = False
    emergency_attempts: int = 0
    # Set before the protective lay is cancelled for a second trigger
    second_trigger_price: float | None = None
    second_triggered_at: datetime | None = None


class ConfirmWait(_Position):
    phase: Literal["confirm_wait"] = "confirm_wait"
    pre_trigger_price: float
    trigger_price: float
    triggered_at: datetime
    original_target_price: float | None = None


class RecoveryPending(_Position):
    phase: Literal["recovery_pending"] = "recovery_pending"
    pre_trigger_price: float
    recovery_price: float
    recovery_bet_id: str | None = None
    recovery_size: float | None = None
    retries: int = 0
    rejections: int = 0


class Settling(_Position):
    phase: Literal["settling"] = "settling"
    outcome: str
    market_closed: bool = False
    hedge_verified: bool = True
    unresolved_exposure: bool = False


class PostTradeMonitor(_Phase):
    phase: Literal["post_trade_monitor"] = "post_trade_monitor"
    outcome: str
    shadow: ShadowTrack


class Completed(_Phase):
    phase: Literal["completed"] = "completed"
    outcome: str


class Skipped(_Phase):
    phase: Literal["skipped"] = "skipped"
    reason: str
    shadow: ShadowTrack | None = None


class Cancelled(_Phase):
    phase: Literal["cancelled"] = "cancelled"
    reason: str


PhaseState = Annotated[
    Union[
        Watching,
        TriggerWait,
        Entering,
        Live,
        ConfirmWait,
        RecoveryPending,
        Settling,
        PostTradeMonitor,
        Completed,
        Skipped,
        Cancelled,
    ],
    Field(discriminator="phase"),
]

_adapter: TypeAdapter = TypeAdapter(PhaseState)

POSITION_PHASES = (Live, ConfirmWait, RecoveryPending, Settling)


def load_phase_state(data: dict[str, Any] | None) -> PhaseState:
    if not data:
        return Watching()
    return _adapter.validate_python(data)


def dump_phase_state(state: PhaseState) -> dict[str, Any]:
    return state.model_dump(mode="json")


def status_for(state: PhaseState) -> str:
    if isinstance(state, Watching):
        return STATUS_SCHEDULED if state.baseline_price is None else STATUS_WATCHING
    if isinstance(state, TriggerWait):
        return STATUS_WATCHING
    if isinstance(state, Entering):
        return STATUS_ENTERING
    if isinstance(state, (Live, ConfirmWait, RecoveryPending)):
        return STATUS_LIVE
    if isinstance(state, Settling):
        return STATUS_SETTLING
    if isinstance(state, (PostTradeMonitor, Completed)):
        return STATUS_COMPLETED
    if isinstance(state, Skipped):
        return STATUS_SKIPPED
    return STATUS_CANCELLED


def monitor_active(state: PhaseState) -> bool:
    """True while a terminal trade still needs ticks for shadow analytics."""
    if isinstance(state, PostTradeMonitor):
        return state.shadow.active
    if isinstance(state, Skipped):
        return state.shadow is not None and state.shadow.active
    return False
