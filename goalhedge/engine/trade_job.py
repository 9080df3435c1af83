"""Per-strategy trade cycle.

This is what the active-polling job calls on each interval. Every open
trade gets at most one tick per cycle: quote fetch -> state machine tick ->
persist. Ticks for different trades run concurrently up to
max_concurrent_ticks; a trade whose previous tick is still in flight is
skipped rather than queued.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime

from goalhedge.engine.gateway import VenueGateway
from goalhedge.engine.phase_state import Cancelled
from goalhedge.engine.state_machine import TradeStateMachine
from goalhedge.engine.trade_store import TradeStore, trade_label
from goalhedge.engine.venue import VenueUnavailableError
from goalhedge.models.trade import Trade
from goalhedge.schemas.strategy_config import StrategyConfig
from goalhedge.utils.clock import as_utc, minutes_since, utcnow
from goalhedge.utils.constants import (
    EVENT_GAME_ENDED,
    EVENT_TICK_FAILED,
    STATUS_SCHEDULED,
    STATUS_WATCHING,
)

logger = logging.getLogger(__name__)

TICKED = "ticked"
SKIPPED = "skipped"
FAILED = "failed"
EXPIRED = "expired"


@dataclass
class CycleSummary:
    strategy_key: str
    ticked: int = 0
    skipped: int = 0
    failed: int = 0
    expired: int = 0
    trade_ids: list[int] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "strategy_key": self.strategy_key,
            "ticked": self.ticked,
            "skipped": self.skipped,
            "failed": self.failed,
            "expired": self.expired,
            "trade_ids": self.trade_ids,
        }


class TradeRunner:
    def __init__(
        self,
        config: StrategyConfig,
        gateway: VenueGateway,
        store: TradeStore,
        machine: TradeStateMachine | None = None,
    ):
        self.gateway = gateway
        self.store = store
        self._trade_locks: dict[int, asyncio.Lock] = {}
        self._trade_locks_guard = asyncio.Lock()
        self._in_flight: dict[asyncio.Task, int] = {}
        self._stopping = False
        self.update_config(config, machine)

    def update_config(self, config: StrategyConfig, machine: TradeStateMachine | None = None):
        """Swap in a new policy; ticks already running finish on the old one."""
        self.config = config
        self.machine = machine or TradeStateMachine(config, self.gateway, self.store)
        self._semaphore = asyncio.Semaphore(config.max_concurrent_ticks)

    @property
    def in_flight(self) -> list[int]:
        return sorted(self._in_flight.values())

    @property
    def stopping(self) -> bool:
        return self._stopping

    async def run_cycle(self, now: datetime | None = None) -> CycleSummary:
        """Tick every open trade once. `now` pins the clock for tests."""
        key = self.config.strategy_key
        summary = CycleSummary(strategy_key=key)
        if self._stopping:
            logger.info(f"[{key}] Stopping; cycle not started")
            return summary

        check_time = now or utcnow()
        due = []
        for trade in self.store.list_open(key):
            kickoff = as_utc(trade.kickoff_at)
            if kickoff is None or check_time < kickoff:
                continue
            if not trade.venue_market_id or trade.venue_selection_id is None:
                logger.debug(f"[{trade_label(trade)}] No market yet")
                continue
            due.append(trade)

        tasks = []
        for trade in due:
            task = asyncio.create_task(self._guarded_tick(trade.id, now))
            self._in_flight[task] = trade.id
            task.add_done_callback(lambda t: self._in_flight.pop(t, None))
            tasks.append(task)

        for trade, result in zip(due, await asyncio.gather(*tasks)):
            if result == TICKED:
                summary.ticked += 1
                summary.trade_ids.append(trade.id)
            elif result == EXPIRED:
                summary.expired += 1
            elif result == FAILED:
                summary.failed += 1
            else:
                summary.skipped += 1

        if due:
            logger.info(
                f"[{key}] Cycle done: {summary.ticked} ticked, {summary.skipped} skipped, "
                f"{summary.failed} failed, {summary.expired} expired"
            )
        return summary

    async def _get_trade_lock(self, trade_id: int) -> asyncio.Lock:
        async with self._trade_locks_guard:
            lock = self._trade_locks.get(trade_id)
            if lock is None:
                lock = asyncio.Lock()
                self._trade_locks[trade_id] = lock
            return lock

    async def _guarded_tick(self, trade_id: int, now: datetime | None) -> str:
        """Run one tick, skipping if a prior tick for the same trade is still in-flight."""
        lock = await self._get_trade_lock(trade_id)
        if lock.locked():
            logger.warning(f"[trade {trade_id}] Skipping overlapping tick")
            return SKIPPED

        async with lock:
            async with self._semaphore:
                # Re-read under the lock so the tick never starts from a stale phase
                trade = self.store.get(trade_id)
                if trade is None:
                    return SKIPPED
                return await self._tick_once(trade, now or utcnow())

    async def _tick_once(self, trade: Trade, now: datetime) -> str:
        label = trade_label(trade)
        if self._expire_if_ended(trade, now):
            return EXPIRED

        try:
            quote = await self.gateway.get_quote(trade.venue_market_id, trade.venue_selection_id)
            if quote is None:
                logger.warning(f"[{label}] No book for market {trade.venue_market_id}")
                return SKIPPED
            await self.machine.tick(trade, quote, now)
            return TICKED
        except VenueUnavailableError as e:
            logger.warning(f"[{label}] Venue unavailable, tick abandoned: {e}")
            return FAILED
        except Exception as e:
            logger.error(f"[{label}] Tick error: {e}", exc_info=True)
            await self.machine.alert(f"[{label}] ERROR: {e}")
            self._record_failure(trade, e, now)
            return FAILED

    def _expire_if_ended(self, trade: Trade, now: datetime) -> bool:
        """Cancel trades that never risked capital once the match must be over."""
        if trade.status not in (STATUS_SCHEDULED, STATUS_WATCHING):
            return False
        elapsed = minutes_since(trade.kickoff_at, now)
        if elapsed is None or elapsed <= self.config.max_match_minutes:
            return False

        self.store.commit(
            trade.id,
            Cancelled(reason="match over without entry"),
            {"last_error": "GAME_ENDED"},
            [(EVENT_GAME_ENDED, {"minutes_since_kickoff": round(elapsed, 1)}, now)],
        )
        logger.info(f"[{trade_label(trade)}] Game ended after {elapsed:.0f} min, cancelled")
        return True

    def _record_failure(self, trade: Trade, error: Exception, now: datetime):
        try:
            self.store.commit(
                trade.id,
                fields={"last_error": f"TICK_ERROR: {error}"},
                events=[(EVENT_TICK_FAILED, {"error": str(error), "type": type(error).__name__}, now)],
            )
        except Exception as e:
            logger.error(f"[{trade_label(trade)}] Could not record tick failure: {e}", exc_info=True)

    async def drain(self, timeout: float) -> bool:
        """Stop starting ticks and wait for the ones in flight.

        Ticks still running after the timeout are cancelled. Every order
        placement is checkpointed before its verification wait, so a
        cancelled tick resumes from the stored bet id on restart.
        """
        self._stopping = True
        pending = set(self._in_flight)
        if not pending:
            return True

        logger.info(f"[{self.config.strategy_key}] Waiting for {len(pending)} in-flight ticks")
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        if not still_running:
            return True

        logger.warning(
            f"[{self.config.strategy_key}] Cancelling {len(still_running)} ticks after {timeout}s: "
            f"trades {sorted(self._in_flight.get(t) for t in still_running)}"
        )
        for task in still_running:
            task.cancel()
        await asyncio.gather(*still_running, return_exceptions=True)
        return False
