"""Shared constants: trade statuses, event types, venue error codes."""

# Coarse trade lifecycle
STATUS_SCHEDULED = "scheduled"
STATUS_WATCHING = "watching"
STATUS_ENTERING = "entering"
STATUS_LIVE = "live"
STATUS_SETTLING = "settling"
STATUS_COMPLETED = "completed"
STATUS_SKIPPED = "skipped"
STATUS_CANCELLED = "cancelled"

ACTIVE_STATUSES = (STATUS_WATCHING, STATUS_ENTERING, STATUS_LIVE, STATUS_SETTLING)

PNL_REALISED = "realised"
PNL_UNKNOWN = "unknown"

# Skip reasons
SKIP_AFTER_CUTOFF = "trigger after cutoff"
SKIP_PRICE_ABOVE_MAX = "price above max entry"
SKIP_PRICE_BELOW_MIN = "price below min entry"
SKIP_ILLIQUID = "market liquidity too low"
SKIP_NOT_MATCHED = "entry not matched"

# Settlement outcomes
OUTCOME_WIN = "win"
OUTCOME_STOP_LOSS = "stop_loss"
OUTCOME_MARKET_CLOSED = "market_closed"

# Event log
EVENT_TRADE_CREATED = "TRADE_CREATED"
EVENT_WATCHING_STARTED = "WATCHING_STARTED"
EVENT_BASELINE_UPDATED = "BASELINE_UPDATED"
EVENT_TRIGGER_DETECTED = "TRIGGER_DETECTED"
EVENT_TRIGGER_AFTER_CUTOFF = "TRIGGER_AFTER_CUTOFF"
EVENT_FALSE_ALARM = "FALSE_ALARM"
EVENT_TRIGGER_PRICE_SNAPSHOT = "TRIGGER_PRICE_SNAPSHOT"
EVENT_PRICE_OUT_OF_RANGE = "PRICE_OUT_OF_RANGE"
EVENT_PRICE_BELOW_MIN_WAITING = "PRICE_BELOW_MIN_WAITING"
EVENT_MARKET_LIQUIDITY_TOO_LOW = "MARKET_LIQUIDITY_TOO_LOW"
EVENT_TRADE_SKIPPED = "TRADE_SKIPPED"
EVENT_ENTRY_PLACED = "ENTRY_PLACED"
EVENT_ENTRY_FAILED = "ENTRY_FAILED"
EVENT_ENTRY_UNCONFIRMED = "ENTRY_UNCONFIRMED"
EVENT_ENTRY_NOT_MATCHED = "ENTRY_NOT_MATCHED"
EVENT_POSITION_ENTERED = "POSITION_ENTERED"
EVENT_HEDGE_PLACED = "HEDGE_PLACED"
EVENT_HEDGE_FAILED = "HEDGE_FAILED"
EVENT_HEDGE_UNVERIFIED = "HEDGE_UNVERIFIED"
EVENT_PROFIT_TARGET_HIT = "PROFIT_TARGET_HIT"
EVENT_PROTECTIVE_CLOSED = "PROTECTIVE_CLOSED"
EVENT_EMERGENCY_HEDGE_PLACED = "EMERGENCY_HEDGE_PLACED"
EVENT_EMERGENCY_HEDGE_FAILED = "EMERGENCY_HEDGE_FAILED"
EVENT_SECOND_TRIGGER_DETECTED = "SECOND_TRIGGER_DETECTED"
EVENT_PROTECTIVE_CANCEL_UNCONFIRMED = "PROTECTIVE_CANCEL_UNCONFIRMED"
EVENT_TRIGGER_REVERTED = "TRIGGER_REVERTED"
EVENT_RECOVERY_PLACED = "RECOVERY_PLACED"
EVENT_RECOVERY_FAILED = "RECOVERY_FAILED"
EVENT_RECOVERY_MATCHED = "RECOVERY_MATCHED"
EVENT_RECOVERY_EXHAUSTED = "RECOVERY_EXHAUSTED"
EVENT_TRADE_SETTLED = "TRADE_SETTLED"
EVENT_MARKET_CLOSED = "MARKET_CLOSED"
EVENT_GAME_ENDED = "GAME_ENDED"
EVENT_TICK_FAILED = "TICK_FAILED"
EVENT_SHADOW_MONITORING_COMPLETED = "SHADOW_MONITORING_COMPLETED"
EVENT_POST_TRADE_MONITOR_COMPLETED = "POST_TRADE_MONITOR_COMPLETED"

# Cancel errors that will not succeed on retry
PERMANENT_CANCEL_ERRORS = ("BET_ACTION_ERROR", "INVALID_BET_ID", "NO_MARKET_ID")

# Seconds after a trigger at which the price is snapshotted for analysis
TRIGGER_SNAPSHOT_OFFSETS = (30, 60, 90, 120)
