"""Per-trade execution state machine.

One call to TradeStateMachine.tick() advances one trade by one step:

WATCHING -> TRIGGER_WAIT -> ENTERING -> LIVE -> (CONFIRM_WAIT -> RECOVERY_PENDING)
-> SETTLING -> POST_TRADE_MONITOR -> COMPLETED, with SKIPPED and CANCELLED as
exits that never risked capital.

Handlers receive the current phase variant and return the next one. Every
field change and event is collected on the TickContext and written in one
commit at the end of the tick. Before any wait that follows an order
placement the context is flushed early, so a restart resumes from the bet
id instead of placing a second order.
"""

import inspect
import logging
from datetime import datetime
from typing import Any, Callable

from pydantic_core import to_jsonable_python

from goalhedge.engine.gateway import SIZE_EPSILON, OrderState, OrderView, Quote, VenueGateway
from goalhedge.engine.order_controller import OrderController, Outcome
from goalhedge.engine.phase_state import (
    Cancelled,
    Completed,
    ConfirmWait,
    Entering,
    Live,
    PhaseState,
    PostTradeMonitor,
    RecoveryPending,
    Settling,
    Skipped,
    TriggerWait,
    Watching,
    load_phase_state,
)
from goalhedge.engine.price_ladder import is_within_ticks, middle_price, snap_price, ticks_below
from goalhedge.engine.settlement import (
    Fill,
    lay_stake_for,
    remaining_exposure,
    settle,
    weighted_average,
)
from goalhedge.engine.shadow import FINISH_MARKET_CLOSED, ShadowMonitor, pct_move
from goalhedge.engine.trade_store import TradeStore, trade_label
from goalhedge.engine.venue import OrderRequest, Persistence, Side
from goalhedge.models.trade import Trade
from goalhedge.schemas.strategy_config import StrategyConfig
from goalhedge.services.telegram_bot import notify as telegram_notify
from goalhedge.utils.clock import minutes_since
from goalhedge.utils.constants import (
    EVENT_BASELINE_UPDATED,
    EVENT_EMERGENCY_HEDGE_FAILED,
    EVENT_EMERGENCY_HEDGE_PLACED,
    EVENT_ENTRY_FAILED,
    EVENT_ENTRY_NOT_MATCHED,
    EVENT_ENTRY_PLACED,
    EVENT_ENTRY_UNCONFIRMED,
    EVENT_FALSE_ALARM,
    EVENT_HEDGE_FAILED,
    EVENT_HEDGE_PLACED,
    EVENT_HEDGE_UNVERIFIED,
    EVENT_MARKET_CLOSED,
    EVENT_MARKET_LIQUIDITY_TOO_LOW,
    EVENT_POSITION_ENTERED,
    EVENT_POST_TRADE_MONITOR_COMPLETED,
    EVENT_PRICE_BELOW_MIN_WAITING,
    EVENT_PRICE_OUT_OF_RANGE,
    EVENT_PROFIT_TARGET_HIT,
    EVENT_PROTECTIVE_CANCEL_UNCONFIRMED,
    EVENT_PROTECTIVE_CLOSED,
    EVENT_RECOVERY_EXHAUSTED,
    EVENT_RECOVERY_FAILED,
    EVENT_RECOVERY_MATCHED,
    EVENT_RECOVERY_PLACED,
    EVENT_SECOND_TRIGGER_DETECTED,
    EVENT_SHADOW_MONITORING_COMPLETED,
    EVENT_TRADE_SETTLED,
    EVENT_TRADE_SKIPPED,
    EVENT_TRIGGER_AFTER_CUTOFF,
    EVENT_TRIGGER_DETECTED,
    EVENT_TRIGGER_PRICE_SNAPSHOT,
    EVENT_TRIGGER_REVERTED,
    EVENT_WATCHING_STARTED,
    OUTCOME_MARKET_CLOSED,
    OUTCOME_STOP_LOSS,
    OUTCOME_WIN,
    PNL_REALISED,
    PNL_UNKNOWN,
    SKIP_AFTER_CUTOFF,
    SKIP_ILLIQUID,
    SKIP_NOT_MATCHED,
    SKIP_PRICE_ABOVE_MAX,
    SKIP_PRICE_BELOW_MIN,
    TRIGGER_SNAPSHOT_OFFSETS,
)

logger = logging.getLogger(__name__)


def customer_ref(trade_id: int, purpose: str, seq: int) -> str:
    """Deterministic reference so a repeated placement is deduplicated by the venue."""
    return f"{trade_id}-{purpose}-{seq}"


def entry_price_for(back: float, lay: float) -> float:
    """Best back price when the spread is a single tick, otherwise the mid."""
    if is_within_ticks(back, lay, 1):
        return snap_price(back)
    return middle_price(back, lay)


def retry_price_for(back: float, lay: float) -> float:
    if is_within_ticks(back, lay, 1):
        return snap_price(back)
    return ticks_below(lay, 1)


def is_stable(prices: tuple[float, ...], tolerance_pct: float) -> bool:
    """All readings within tolerance of their median."""
    ordered = sorted(prices)
    median = ordered[len(ordered) // 2]
    return all(abs(pct_move(p, median)) <= tolerance_pct for p in prices)


class TickContext:
    """Pending writes for one tick of one trade."""

    def __init__(self, store: TradeStore, trade: Trade, quote: Quote, now: datetime):
        self.store = store
        self.trade = trade
        self.quote = quote
        self.now = now
        self.label = trade_label(trade)
        self.minutes = minutes_since(trade.kickoff_at, now)
        self.fields: dict[str, Any] = {}
        self.events: list[tuple[str, dict, datetime]] = []

    def set(self, **fields):
        self.fields.update(fields)

    def emit(self, event_type: str, **payload):
        logger.info(f"[{self.label}] {event_type} {payload}")
        self.events.append((event_type, to_jsonable_python(payload), self.now))

    def flush(self, state: PhaseState) -> Trade:
        self.trade = self.store.commit(self.trade.id, state, self.fields, self.events)
        self.fields = {}
        self.events = []
        return self.trade

    @property
    def pending(self) -> bool:
        return bool(self.fields or self.events)


class TradeStateMachine:
    def __init__(
        self,
        config: StrategyConfig,
        gateway: VenueGateway,
        store: TradeStore,
        controller: OrderController | None = None,
        shadow: ShadowMonitor | None = None,
        notify: Callable[[str], Any] | None = None,
    ):
        self.config = config
        self.gateway = gateway
        self.store = store
        self.controller = controller or OrderController(
            gateway,
            cancel_timeout=config.cancel_confirm_seconds,
            cancel_max_attempts=config.cancel_max_attempts,
        )
        self.shadow = shadow or ShadowMonitor(
            trigger_pct=config.trigger_pct,
            profit_target_pct=config.profit_target_pct,
            max_minutes=config.shadow_max_minutes,
        )
        self.notify = notify or telegram_notify
        self._handlers = {
            Watching: self._on_watching,
            TriggerWait: self._on_trigger_wait,
            Entering: self._on_entering,
            Live: self._on_live,
            ConfirmWait: self._on_confirm_wait,
            RecoveryPending: self._on_recovery_pending,
            Settling: self._on_settling,
            PostTradeMonitor: self._on_post_trade_monitor,
            Skipped: self._on_skipped,
            Completed: self._on_terminal,
            Cancelled: self._on_terminal,
        }

    async def tick(self, trade: Trade, quote: Quote, now: datetime) -> PhaseState:
        """Advance one trade by one step and persist the result."""
        state = load_phase_state(trade.phase_state)
        ctx = TickContext(self.store, trade, quote, now)
        if quote.is_closed:
            new_state = await self._on_market_closed(ctx, state)
        else:
            new_state = await self._handlers[type(state)](ctx, state)

        if new_state != state or ctx.pending:
            ctx.flush(new_state)
        if new_state.phase != state.phase:
            logger.info(f"[{ctx.label}] {state.phase} -> {new_state.phase}")
        return new_state

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def alert(self, message: str):
        """Pass a message to the operator notifier, sync or async."""
        result = self.notify(message)
        if inspect.isawaitable(result):
            await result

    async def _escalate(self, ctx: TickContext, message: str):
        text = f"[{ctx.label}] {message}"
        logger.error(text)
        await self.alert(text)

    def _lay_request(self, trade: Trade, size: float, price: float, purpose: str, seq: int) -> OrderRequest:
        return OrderRequest(
            market_id=trade.venue_market_id,
            selection_id=trade.venue_selection_id,
            side=Side.LAY,
            size=size,
            price=price,
            persistence=Persistence.PERSIST,
            customer_ref=customer_ref(trade.id, purpose, seq),
        )

    @staticmethod
    def _fill(view: OrderView, fallback_price: float | None) -> Fill:
        return Fill(bet_id=view.bet_id, size=view.size_matched, price=view.average_price_matched or fallback_price)

    @staticmethod
    def _with_fill(fills: tuple[Fill, ...], view: OrderView, fallback_price: float | None) -> tuple[Fill, ...]:
        if view.size_matched <= 0:
            return fills
        return (*fills, TradeStateMachine._fill(view, fallback_price))

    @staticmethod
    def _settling(state, outcome: str, hedge_fills: tuple[Fill, ...] | None = None, **flags) -> Settling:
        return Settling(
            entry_price=state.entry_price,
            back_matched=state.back_matched,
            entered_at=state.entered_at,
            hedge_fills=state.hedge_fills if hedge_fills is None else hedge_fills,
            hedge_seq=state.hedge_seq,
            outcome=outcome,
            **flags,
        )

    def _skip(self, ctx: TickContext, reason: str, price: float, entry_price: float | None) -> Skipped:
        ctx.emit(EVENT_TRADE_SKIPPED, reason=reason, price=price)
        return Skipped(reason=reason, shadow=self.shadow.start(price, ctx.now, entry_price=entry_price))

    # ------------------------------------------------------------------
    # WATCHING
    # ------------------------------------------------------------------

    async def _on_watching(self, ctx: TickContext, state: Watching) -> PhaseState:
        cfg = self.config
        price = ctx.quote.signal_price
        if price is None:
            return state

        if state.baseline_price is None:
            liquidity = ctx.quote.total_matched
            if liquidity is not None and liquidity < cfg.min_market_liquidity:
                ctx.emit(EVENT_MARKET_LIQUIDITY_TOO_LOW, total_matched=liquidity, minimum=cfg.min_market_liquidity)
                return self._skip(ctx, SKIP_ILLIQUID, price, entry_price=None)
            ctx.emit(EVENT_WATCHING_STARTED, baseline_price=price, minute=ctx.minutes)
            return Watching(baseline_price=price, last_price=price, recent_prices=(price,))

        baseline = state.baseline_price
        move = pct_move(price, baseline)
        if move >= cfg.trigger_pct:
            if ctx.minutes is not None and ctx.minutes > cfg.trigger_cutoff_minutes:
                ctx.emit(
                    EVENT_TRIGGER_AFTER_CUTOFF,
                    baseline_price=baseline,
                    trigger_price=price,
                    minute=round(ctx.minutes, 1),
                    cutoff=cfg.trigger_cutoff_minutes,
                )
                return self._skip(ctx, SKIP_AFTER_CUTOFF, price, entry_price=price)
            ctx.emit(
                EVENT_TRIGGER_DETECTED,
                baseline_price=baseline,
                trigger_price=price,
                move_pct=round(move, 2),
                minute=round(ctx.minutes, 1) if ctx.minutes is not None else None,
            )
            return TriggerWait(baseline_price=baseline, trigger_price=price, triggered_at=ctx.now)

        recent = (*state.recent_prices, price)[-cfg.baseline_stable_readings:]
        if len(recent) >= cfg.baseline_stable_readings and is_stable(recent, cfg.baseline_stability_pct):
            if abs(pct_move(price, baseline)) > cfg.baseline_min_drift_pct:
                ctx.emit(EVENT_BASELINE_UPDATED, old_baseline=baseline, new_baseline=price)
                baseline = price
        return state.model_copy(update={
            "baseline_price": baseline,
            "last_price": price,
            "recent_prices": recent,
        })

    # ------------------------------------------------------------------
    # TRIGGER_WAIT
    # ------------------------------------------------------------------

    async def _on_trigger_wait(self, ctx: TickContext, state: TriggerWait) -> PhaseState:
        cfg = self.config
        price = ctx.quote.best_back
        if price is None:
            return state

        elapsed = (ctx.now - state.triggered_at).total_seconds()
        due = [s for s in TRIGGER_SNAPSHOT_OFFSETS if elapsed >= s and s not in state.snapshots_logged]
        for offset in due:
            ctx.emit(EVENT_TRIGGER_PRICE_SNAPSHOT, offset_seconds=offset, back=price, lay=ctx.quote.best_lay)
        if due:
            state = state.model_copy(update={"snapshots_logged": (*state.snapshots_logged, *due)})

        move = pct_move(price, state.baseline_price)
        if move < cfg.trigger_pct * 0.5:
            ctx.emit(EVENT_FALSE_ALARM, baseline_price=state.baseline_price, price=price, move_pct=round(move, 2))
            return Watching(baseline_price=price, last_price=price, recent_prices=(price,))

        if elapsed < cfg.settle_seconds:
            return state

        if price > cfg.max_entry_price:
            ctx.emit(EVENT_PRICE_OUT_OF_RANGE, price=price, min=cfg.min_entry_price, max=cfg.max_entry_price)
            return self._skip(ctx, SKIP_PRICE_ABOVE_MAX, price, entry_price=price)

        if price < cfg.min_entry_price:
            if state.below_min_since is None:
                ctx.emit(EVENT_PRICE_BELOW_MIN_WAITING, price=price, recheck_seconds=cfg.below_min_recheck_seconds)
                return state.model_copy(update={"below_min_since": ctx.now})
            if (ctx.now - state.below_min_since).total_seconds() < cfg.below_min_recheck_seconds:
                return state
            ctx.emit(EVENT_PRICE_OUT_OF_RANGE, price=price, min=cfg.min_entry_price, max=cfg.max_entry_price)
            return self._skip(ctx, SKIP_PRICE_BELOW_MIN, price, entry_price=price)

        if ctx.quote.best_lay is None:
            return state
        return await self._enter(ctx, state, entry_price_for(price, ctx.quote.best_lay))

    def _entry_reprice(self, trade: Trade):
        cfg = self.config

        async def reprice(leg: OrderRequest) -> float | None:
            quote = await self.gateway.get_quote(trade.venue_market_id, trade.venue_selection_id)
            if quote is None or quote.best_back is None or quote.best_lay is None:
                return None
            if not cfg.min_entry_price <= quote.best_back <= cfg.max_entry_price:
                return None
            return retry_price_for(quote.best_back, quote.best_lay)

        return reprice

    async def _enter(self, ctx: TickContext, state: TriggerWait, price: float) -> PhaseState:
        cfg = self.config
        trade = ctx.trade
        stake = trade.target_stake or cfg.default_stake
        request = OrderRequest(
            market_id=trade.venue_market_id,
            selection_id=trade.venue_selection_id,
            side=Side.BACK,
            size=stake,
            price=price,
            persistence=Persistence.LAPSE,
            customer_ref=customer_ref(trade.id, "entry", 0),
        )
        entering = Entering(
            baseline_price=state.baseline_price,
            trigger_price=state.trigger_price,
            triggered_at=state.triggered_at,
            stake=stake,
            entry_price=price,
        )

        async def on_placed(bet_id: str, leg: OrderRequest, settled: list[Fill]):
            nonlocal entering
            entering = entering.model_copy(update={
                "current_bet_id": bet_id,
                "current_size": leg.size,
                "current_price": leg.price,
                "bet_ids": (*entering.bet_ids, bet_id),
                "fills": tuple(settled),
            })
            ctx.set(back_price=leg.price, back_stake=stake, last_error=None)
            ctx.emit(EVENT_ENTRY_PLACED, bet_id=bet_id, size=leg.size, price=leg.price)
            ctx.flush(entering)

        result = await self.controller.place_and_verify(
            request,
            cfg.entry_verify_seconds,
            cfg.verify_poll_seconds,
            max_retries=cfg.entry_max_retries,
            reprice=self._entry_reprice(trade),
            on_placed=on_placed,
        )

        if result.outcome == Outcome.REJECTED:
            ctx.set(last_error=f"ENTRY_REJECTED: {result.error_code}")
            ctx.emit(EVENT_ENTRY_FAILED, error_code=result.error_code, price=price, stake=stake)
            return state

        if result.outcome == Outcome.UNCONFIRMED:
            # Only fills from bets other than the open one are final
            closed = tuple(f for f in result.fills if f.bet_id != entering.current_bet_id)
            matched, _ = weighted_average(result.fills)
            ctx.set(back_matched_size=matched, last_error="ENTRY_UNCONFIRMED")
            ctx.emit(EVENT_ENTRY_UNCONFIRMED, bet_id=entering.current_bet_id, matched_so_far=matched)
            return entering.model_copy(update={"fills": closed})

        return await self._enter_position(ctx, entering, tuple(result.fills))

    # ------------------------------------------------------------------
    # ENTERING (resume after restart or unconfirmed verification)
    # ------------------------------------------------------------------

    async def _on_entering(self, ctx: TickContext, state: Entering) -> PhaseState:
        cfg = self.config
        if state.current_bet_id is None:
            return await self._enter_position(ctx, state, state.fills)

        request = OrderRequest(
            market_id=ctx.trade.venue_market_id,
            selection_id=ctx.trade.venue_selection_id,
            side=Side.BACK,
            size=state.current_size,
            price=state.current_price or state.entry_price,
        )
        result = await self.controller.verify_existing(
            state.current_bet_id, request, cfg.entry_verify_seconds, cfg.verify_poll_seconds,
        )
        fills = (*state.fills, *result.fills)
        if result.outcome == Outcome.UNCONFIRMED:
            matched, _ = weighted_average(fills)
            ctx.set(back_matched_size=matched, last_error="ENTRY_UNCONFIRMED")
            return state
        return await self._enter_position(ctx, state.model_copy(update={"fills": fills}), fills)

    async def _enter_position(self, ctx: TickContext, entering: Entering, fills: tuple[Fill, ...]) -> PhaseState:
        matched, avg = weighted_average(fills)
        if matched <= 0:
            ctx.set(last_error=None)
            ctx.emit(EVENT_ENTRY_NOT_MATCHED, bets=list(entering.bet_ids), price=entering.entry_price)
            price = ctx.quote.best_back or entering.entry_price
            return self._skip(ctx, SKIP_NOT_MATCHED, price, entry_price=entering.entry_price)

        ctx.set(back_price=avg, back_stake=entering.stake, back_matched_size=matched, last_error=None)
        ctx.emit(
            EVENT_POSITION_ENTERED,
            matched_size=matched,
            price=avg,
            requested=entering.stake,
            bets=list(entering.bet_ids),
        )
        live = Live(
            entry_price=avg,
            back_matched=matched,
            entered_at=ctx.now,
            last_stable_price=ctx.quote.best_back or avg,
        )
        # The position exists now; record it before the hedge goes out
        ctx.flush(live)
        return await self._place_protective(ctx, live)

    # ------------------------------------------------------------------
    # LIVE
    # ------------------------------------------------------------------

    async def _place_protective(self, ctx: TickContext, live: Live, price: float | None = None) -> PhaseState:
        cfg = self.config
        target = price or snap_price(live.entry_price / (1 + cfg.profit_target_pct / 100))
        exposure = remaining_exposure(live.back_matched, live.entry_price, live.hedge_fills)
        if exposure <= SIZE_EPSILON:
            return await self._settle(ctx, self._settling(live, OUTCOME_WIN))

        stake = lay_stake_for(exposure, live.entry_price, target)
        seq = live.hedge_seq + 1
        result = await self.gateway.place_order(self._lay_request(ctx.trade, stake, target, "hedge", seq))
        if not result.ok:
            ctx.set(last_error=f"LAY_HEDGE_FAILED: {result.error_code}")
            ctx.emit(EVENT_HEDGE_FAILED, error_code=result.error_code, price=target, size=stake)
            await self._escalate(ctx, f"Protective lay rejected ({result.error_code}); {exposure} unhedged")
            return live.model_copy(update={
                "protective_bet_id": None,
                "protective_size": None,
                "target_lay_price": target,
                "hedge_seq": seq,
                "hedge_failed": True,
            })

        ctx.set(lay_price=target, lay_size=stake, last_error=None)
        ctx.emit(EVENT_HEDGE_PLACED, bet_id=result.bet_id, price=target, size=stake)
        return live.model_copy(update={
            "protective_bet_id": result.bet_id,
            "protective_size": stake,
            "target_lay_price": target,
            "hedge_seq": seq,
            "hedge_failed": False,
        })

    async def _on_live(self, ctx: TickContext, state: Live) -> PhaseState:
        cfg = self.config
        if state.protective_bet_id is None:
            return await self._emergency_hedge(ctx, state)

        view = await self.gateway.get_order(state.protective_bet_id, expected_size=state.protective_size)
        if view.state == OrderState.FULLY_MATCHED:
            fills = self._with_fill(state.hedge_fills, view, state.target_lay_price)
            ctx.emit(
                EVENT_PROFIT_TARGET_HIT,
                bet_id=view.bet_id,
                size=view.size_matched,
                price=view.average_price_matched,
            )
            return await self._settle(ctx, self._settling(state, OUTCOME_WIN, hedge_fills=fills))

        if view.state == OrderState.CLOSED_PARTIAL:
            fills = self._with_fill(state.hedge_fills, view, state.target_lay_price)
            ctx.set(lay_matched_size=round(sum(f.size for f in fills), 2))
            if state.second_trigger_price is not None:
                # Cancelled by an interrupted second-trigger tick
                return self._confirm_wait(state, fills)
            ctx.emit(EVENT_PROTECTIVE_CLOSED, bet_id=view.bet_id, matched=view.size_matched)
            state = state.model_copy(update={
                "protective_bet_id": None,
                "protective_size": None,
                "hedge_fills": fills,
            })
            return await self._emergency_hedge(ctx, state)

        if view.state == OrderState.NOT_FOUND:
            # Absent from both views: exposure is unknown, so nothing is assumed
            ctx.set(last_error="PROTECTIVE_ORDER_UNVERIFIED")
            ctx.emit(EVENT_HEDGE_UNVERIFIED, bet_id=view.bet_id)
            return state

        if view.size_matched > 0:
            ctx.set(lay_matched_size=round(sum(f.size for f in state.hedge_fills) + view.size_matched, 2))

        if state.second_trigger_price is not None:
            return await self._cancel_protective(ctx, state)

        price = ctx.quote.best_back
        if price is None:
            return state
        move = pct_move(price, state.last_stable_price)
        if move < cfg.trigger_pct:
            if price == state.last_stable_price:
                return state
            return state.model_copy(update={"last_stable_price": price})

        ctx.emit(
            EVENT_SECOND_TRIGGER_DETECTED,
            last_stable_price=state.last_stable_price,
            trigger_price=price,
            move_pct=round(move, 2),
        )
        state = state.model_copy(update={"second_trigger_price": price, "second_triggered_at": ctx.now})
        ctx.flush(state)
        return await self._cancel_protective(ctx, state)

    async def _cancel_protective(self, ctx: TickContext, state: Live) -> PhaseState:
        cfg = self.config
        cancel = await self.controller.cancel_and_confirm(
            state.protective_bet_id,
            ctx.trade.venue_market_id,
            poll_interval=cfg.verify_poll_seconds,
        )
        if not cancel.closed:
            ctx.set(last_error="PROTECTIVE_CANCEL_UNCONFIRMED")
            ctx.emit(
                EVENT_PROTECTIVE_CANCEL_UNCONFIRMED,
                bet_id=state.protective_bet_id,
                attempts=cancel.attempts,
                reason=cancel.reason,
                error_code=cancel.error_code,
            )
            await self._escalate(ctx, "Could not confirm cancel of protective lay after second trigger")
            return state

        closed_view = cancel.last_view
        fills = self._with_fill(state.hedge_fills, closed_view, state.target_lay_price)
        if closed_view.state == OrderState.FULLY_MATCHED:
            ctx.emit(
                EVENT_PROFIT_TARGET_HIT,
                bet_id=closed_view.bet_id,
                size=closed_view.size_matched,
                price=closed_view.average_price_matched,
            )
            return await self._settle(ctx, self._settling(state, OUTCOME_WIN, hedge_fills=fills))

        ctx.set(lay_matched_size=round(sum(f.size for f in fills), 2), last_error=None)
        return self._confirm_wait(state, fills)

    @staticmethod
    def _confirm_wait(state: Live, fills: tuple[Fill, ...]) -> ConfirmWait:
        return ConfirmWait(
            entry_price=state.entry_price,
            back_matched=state.back_matched,
            entered_at=state.entered_at,
            hedge_fills=fills,
            hedge_seq=state.hedge_seq,
            pre_trigger_price=state.last_stable_price,
            trigger_price=state.second_trigger_price,
            triggered_at=state.second_triggered_at,
            original_target_price=state.target_lay_price,
        )

    async def _emergency_hedge(self, ctx: TickContext, state: Live) -> PhaseState:
        exposure = remaining_exposure(state.back_matched, state.entry_price, state.hedge_fills)
        if exposure <= SIZE_EPSILON:
            return await self._settle(ctx, self._settling(state, OUTCOME_WIN))

        attempts = state.emergency_attempts + 1
        lay = ctx.quote.best_lay
        if lay is None:
            ctx.set(last_error="EMERGENCY_HEDGE_FAILED_NO_PRICE")
            ctx.emit(EVENT_EMERGENCY_HEDGE_FAILED, reason="no lay price", exposure=exposure, attempt=attempts)
            if attempts == 1:
                await self._escalate(ctx, f"UNHEDGED: no lay price for emergency hedge, exposure {exposure}")
            return state.model_copy(update={"hedge_failed": True, "emergency_attempts": attempts})

        stake = lay_stake_for(exposure, state.entry_price, lay)
        seq = state.hedge_seq + 1
        result = await self.gateway.place_order(self._lay_request(ctx.trade, stake, lay, "hedge", seq))
        if not result.ok:
            ctx.set(last_error=f"EMERGENCY_HEDGE_FAILED: {result.error_code}")
            ctx.emit(EVENT_EMERGENCY_HEDGE_FAILED, reason=result.error_code, exposure=exposure, attempt=attempts)
            if attempts == 1:
                await self._escalate(ctx, f"UNHEDGED: emergency hedge rejected ({result.error_code})")
            return state.model_copy(update={
                "hedge_failed": True,
                "emergency_attempts": attempts,
                "hedge_seq": seq,
            })

        ctx.set(lay_price=lay, lay_size=stake, last_error=None)
        ctx.emit(EVENT_EMERGENCY_HEDGE_PLACED, bet_id=result.bet_id, price=lay, size=stake, exposure=exposure)
        return state.model_copy(update={
            "protective_bet_id": result.bet_id,
            "protective_size": stake,
            "target_lay_price": lay,
            "hedge_seq": seq,
            "emergency": True,
            "hedge_failed": False,
            "emergency_attempts": attempts,
        })

    # ------------------------------------------------------------------
    # CONFIRM_WAIT / RECOVERY_PENDING
    # ------------------------------------------------------------------

    async def _on_confirm_wait(self, ctx: TickContext, state: ConfirmWait) -> PhaseState:
        cfg = self.config
        price = ctx.quote.best_back
        if price is None or (ctx.now - state.triggered_at).total_seconds() < cfg.confirm_seconds:
            return state

        move = pct_move(price, state.pre_trigger_price)
        if move < cfg.trigger_pct * 0.5:
            ctx.emit(EVENT_TRIGGER_REVERTED, pre_trigger_price=state.pre_trigger_price, price=price)
            live = Live(
                entry_price=state.entry_price,
                back_matched=state.back_matched,
                entered_at=state.entered_at,
                hedge_fills=state.hedge_fills,
                hedge_seq=state.hedge_seq,
                last_stable_price=price,
            )
            return await self._place_protective(ctx, live, price=state.original_target_price)

        if remaining_exposure(state.back_matched, state.entry_price, state.hedge_fills) <= SIZE_EPSILON:
            return await self._settle(ctx, self._settling(state, OUTCOME_WIN))

        recovery_price = snap_price(state.pre_trigger_price * (1 + cfg.recovery_drift_pct / 100))
        pending = RecoveryPending(
            entry_price=state.entry_price,
            back_matched=state.back_matched,
            entered_at=state.entered_at,
            hedge_fills=state.hedge_fills,
            hedge_seq=state.hedge_seq,
            pre_trigger_price=state.pre_trigger_price,
            recovery_price=recovery_price,
        )
        return await self._place_recovery(ctx, pending, recovery_price)

    async def _place_recovery(self, ctx: TickContext, state: RecoveryPending, price: float) -> RecoveryPending:
        exposure = remaining_exposure(state.back_matched, state.entry_price, state.hedge_fills)
        stake = lay_stake_for(exposure, state.entry_price, price)
        seq = state.hedge_seq + 1
        result = await self.gateway.place_order(self._lay_request(ctx.trade, stake, price, "recovery", seq))
        if not result.ok:
            rejections = state.rejections + 1
            ctx.set(last_error=f"RECOVERY_FAILED: {result.error_code}")
            ctx.emit(
                EVENT_RECOVERY_FAILED,
                error_code=result.error_code,
                price=price,
                size=stake,
                attempt=rejections,
            )
            if rejections == 1:
                await self._escalate(ctx, f"Recovery lay rejected ({result.error_code}); {exposure} unhedged")
            return state.model_copy(update={
                "recovery_bet_id": None,
                "recovery_size": None,
                "hedge_seq": seq,
                "rejections": rejections,
            })

        ctx.set(lay_price=price, lay_size=stake, last_error=None)
        ctx.emit(EVENT_RECOVERY_PLACED, bet_id=result.bet_id, price=price, size=stake, retry=state.retries)
        return state.model_copy(update={
            "recovery_bet_id": result.bet_id,
            "recovery_size": stake,
            "recovery_price": price,
            "hedge_seq": seq,
        })

    async def _on_recovery_pending(self, ctx: TickContext, state: RecoveryPending) -> PhaseState:
        cfg = self.config
        if state.recovery_bet_id is not None:
            view = await self.gateway.get_order(state.recovery_bet_id, expected_size=state.recovery_size)
            if view.state == OrderState.OPEN:
                return state
            if view.state == OrderState.NOT_FOUND:
                ctx.set(last_error="RECOVERY_ORDER_UNVERIFIED")
                ctx.emit(EVENT_HEDGE_UNVERIFIED, bet_id=view.bet_id)
                return state

            fills = self._with_fill(state.hedge_fills, view, state.recovery_price)
            if view.state == OrderState.FULLY_MATCHED:
                ctx.emit(
                    EVENT_RECOVERY_MATCHED,
                    bet_id=view.bet_id,
                    size=view.size_matched,
                    price=view.average_price_matched,
                )
                return await self._settle(ctx, self._settling(state, OUTCOME_STOP_LOSS, hedge_fills=fills))

            ctx.set(lay_matched_size=round(sum(f.size for f in fills), 2))
            state = state.model_copy(update={
                "recovery_bet_id": None,
                "recovery_size": None,
                "hedge_fills": fills,
                "retries": state.retries + 1,
            })
            if remaining_exposure(state.back_matched, state.entry_price, fills) <= SIZE_EPSILON:
                return await self._settle(ctx, self._settling(state, OUTCOME_STOP_LOSS))

        if state.retries > cfg.recovery_max_retries or state.rejections > cfg.recovery_max_retries:
            exposure = remaining_exposure(state.back_matched, state.entry_price, state.hedge_fills)
            lay_size, _ = weighted_average(state.hedge_fills)
            ctx.set(
                last_error="UNRESOLVED_EXPOSURE",
                realised_pnl=None,
                pnl_status=PNL_UNKNOWN,
                lay_matched_size=lay_size,
            )
            ctx.emit(
                EVENT_RECOVERY_EXHAUSTED,
                retries=state.retries,
                rejections=state.rejections,
                exposure=exposure,
            )
            await self._escalate(ctx, f"Recovery retries exhausted; {exposure} still unhedged")
            # Valued once the market closes
            return self._settling(state, OUTCOME_STOP_LOSS, unresolved_exposure=True)

        price = state.recovery_price if state.retries == 0 else ctx.quote.best_lay
        if price is None:
            ctx.set(last_error="RECOVERY_FAILED_NO_PRICE")
            return state
        return await self._place_recovery(ctx, state, price)

    # ------------------------------------------------------------------
    # SETTLING and after
    # ------------------------------------------------------------------

    async def _on_settling(self, ctx: TickContext, state: Settling) -> PhaseState:
        if state.unresolved_exposure and not state.market_closed:
            return state
        return await self._settle(ctx, state)

    async def _settle(self, ctx: TickContext, state: Settling) -> PhaseState:
        cfg = self.config
        ctx.flush(state)

        lay_size, lay_price = weighted_average(state.hedge_fills)
        pnl = None
        if not state.unresolved_exposure or state.market_closed:
            pnl = settle(
                state.back_matched,
                state.entry_price,
                lay_size,
                lay_price,
                cfg.commission_rate,
                hedge_verified=state.hedge_verified,
                market_closed=state.market_closed,
            )
        pnl_status = PNL_REALISED if pnl is not None else PNL_UNKNOWN

        fields: dict[str, Any] = {
            "realised_pnl": pnl,
            "pnl_status": pnl_status,
            "lay_matched_size": lay_size,
            "settled_at": ctx.now,
        }
        if lay_price is not None:
            fields["lay_price"] = lay_price
        if pnl is None and not ctx.trade.last_error:
            fields["last_error"] = "PNL_UNKNOWN"
        ctx.set(**fields)
        ctx.emit(
            EVENT_TRADE_SETTLED,
            outcome=state.outcome,
            realised_pnl=pnl,
            pnl_status=pnl_status,
            back_stake=state.back_matched,
            back_price=state.entry_price,
            lay_stake=lay_size,
            lay_price=lay_price,
            market_closed=state.market_closed,
            unresolved_exposure=state.unresolved_exposure,
        )

        if state.market_closed:
            return Completed(outcome=state.outcome)
        exit_price = ctx.quote.best_back or lay_price or state.entry_price
        return PostTradeMonitor(
            outcome=state.outcome,
            shadow=self.shadow.start(exit_price, ctx.now, entry_price=state.entry_price),
        )

    async def _on_post_trade_monitor(self, ctx: TickContext, state: PostTradeMonitor) -> PhaseState:
        track = self.shadow.observe(state.shadow, ctx.quote.best_back, ctx.now)
        if not track.active:
            ctx.emit(EVENT_POST_TRADE_MONITOR_COMPLETED, **self.shadow.summary(track))
            return Completed(outcome=state.outcome)
        return state.model_copy(update={"shadow": track})

    async def _on_skipped(self, ctx: TickContext, state: Skipped) -> PhaseState:
        if state.shadow is None or not state.shadow.active:
            return state
        track = self.shadow.observe(state.shadow, ctx.quote.best_back, ctx.now)
        if not track.active:
            ctx.emit(EVENT_SHADOW_MONITORING_COMPLETED, skip_reason=state.reason, **self.shadow.summary(track))
        return state.model_copy(update={"shadow": track})

    async def _on_terminal(self, ctx: TickContext, state: PhaseState) -> PhaseState:
        return state

    # ------------------------------------------------------------------
    # Market closure
    # ------------------------------------------------------------------

    async def _on_market_closed(self, ctx: TickContext, state: PhaseState) -> PhaseState:
        if isinstance(state, (Watching, TriggerWait)):
            ctx.emit(EVENT_MARKET_CLOSED, phase=state.phase)
            return Cancelled(reason="market closed before entry")

        if isinstance(state, Entering):
            return await self._close_entering(ctx, state)

        if isinstance(state, (Live, ConfirmWait, RecoveryPending)):
            fills, verified = await self._final_hedge_fills(state)
            ctx.emit(EVENT_MARKET_CLOSED, phase=state.phase, hedge_verified=verified)
            if not verified:
                ctx.set(last_error="HEDGE_UNVERIFIED_AT_CLOSE")
            return await self._settle(ctx, self._settling(
                state,
                OUTCOME_MARKET_CLOSED,
                hedge_fills=fills,
                market_closed=True,
                hedge_verified=verified,
            ))

        if isinstance(state, Settling):
            return await self._settle(ctx, state.model_copy(update={"market_closed": True}))

        if isinstance(state, PostTradeMonitor):
            track = self.shadow.finish(state.shadow, FINISH_MARKET_CLOSED)
            ctx.emit(EVENT_POST_TRADE_MONITOR_COMPLETED, **self.shadow.summary(track))
            return Completed(outcome=state.outcome)

        if isinstance(state, Skipped) and state.shadow is not None and state.shadow.active:
            track = self.shadow.finish(state.shadow, FINISH_MARKET_CLOSED)
            ctx.emit(EVENT_SHADOW_MONITORING_COMPLETED, skip_reason=state.reason, **self.shadow.summary(track))
            return state.model_copy(update={"shadow": track})

        return state

    async def _final_hedge_fills(self, state) -> tuple[tuple[Fill, ...], bool]:
        """Verified hedge fills at market close; False if any order is unaccounted for."""
        bet_id, size, price = None, None, None
        if isinstance(state, Live):
            bet_id, size, price = state.protective_bet_id, state.protective_size, state.target_lay_price
        elif isinstance(state, RecoveryPending):
            bet_id, size, price = state.recovery_bet_id, state.recovery_size, state.recovery_price
        if bet_id is None:
            return state.hedge_fills, True

        view = await self.gateway.get_order(bet_id, expected_size=size)
        if view.state == OrderState.NOT_FOUND:
            return state.hedge_fills, False
        return self._with_fill(state.hedge_fills, view, price), True

    async def _close_entering(self, ctx: TickContext, state: Entering) -> PhaseState:
        fills = state.fills
        verified = True
        if state.current_bet_id:
            view = await self.gateway.get_order(state.current_bet_id, expected_size=state.current_size)
            if view.state == OrderState.NOT_FOUND:
                verified = False
            else:
                fills = self._with_fill(fills, view, state.current_price or state.entry_price)

        matched, avg = weighted_average(fills)
        ctx.emit(EVENT_MARKET_CLOSED, phase=state.phase, matched=matched, verified=verified)
        if not verified:
            ctx.set(
                last_error="ENTRY_UNVERIFIED_AT_CLOSE",
                realised_pnl=None,
                pnl_status=PNL_UNKNOWN,
                settled_at=ctx.now,
            )
            return Completed(outcome=OUTCOME_MARKET_CLOSED)
        if matched <= 0:
            return Cancelled(reason="market closed before entry matched")

        ctx.set(back_matched_size=matched, back_price=avg, back_stake=state.stake)
        return await self._settle(ctx, Settling(
            entry_price=avg,
            back_matched=matched,
            entered_at=ctx.now,
            outcome=OUTCOME_MARKET_CLOSED,
            market_closed=True,
        ))
