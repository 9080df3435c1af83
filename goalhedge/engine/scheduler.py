"""APScheduler integration for FastAPI.

Each enabled strategy gets two jobs on the shared AsyncIOScheduler: a
one-shot wake job that decides when the engine next needs to look at the
venue, and an interval poll job that runs trade cycles while any trade
needs sub-minute attention. Outside match windows only the wake job
exists, so the venue is not queried at all.
"""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlmodel import Session

from goalhedge.config import settings
from goalhedge.engine.fixtures import sync_trades_from_fixtures
from goalhedge.engine.gateway import VenueGateway
from goalhedge.engine.trade_job import CycleSummary, TradeRunner
from goalhedge.engine.trade_store import TradeStore, TradeTiming
from goalhedge.engine.venue import MarketVenue, load_venue
from goalhedge.schemas.strategy_config import StrategyConfig, load_strategy_config
from goalhedge.utils.clock import utcnow
from goalhedge.utils.constants import ACTIVE_STATUSES, STATUS_SCHEDULED

logger = logging.getLogger(__name__)

scheduler = AsyncIOScheduler()

MIN_SLEEP = timedelta(minutes=1)
MAX_SLEEP = timedelta(hours=24)


def compute_next_wake(timings: list[TradeTiming], now: datetime, config: StrategyConfig) -> timedelta:
    """How long the engine may sleep; zero means run now.

    In priority order: any active (or still monitored) trade wakes
    immediately; so does a scheduled trade whose kickoff lies within the
    trailing window. Otherwise sleep until the nearest kickoff minus the
    lead time, clamped to [1 minute, 24 hours], or 24 hours if there is
    nothing ahead.
    """
    if any(t.status in ACTIVE_STATUSES or t.monitor_active for t in timings):
        return timedelta(0)

    trailing = timedelta(minutes=config.trailing_kickoff_window_minutes)
    scheduled = [t.kickoff_at for t in timings if t.status == STATUS_SCHEDULED and t.kickoff_at]
    if any(now - trailing <= kickoff <= now for kickoff in scheduled):
        return timedelta(0)

    upcoming = [kickoff for kickoff in scheduled if kickoff > now]
    if not upcoming:
        return MAX_SLEEP
    delay = min(upcoming) - timedelta(minutes=config.kickoff_lead_minutes) - now
    return max(MIN_SLEEP, min(delay, MAX_SLEEP))


def needs_fast_polling(timings: list[TradeTiming], now: datetime, config: StrategyConfig) -> bool:
    """True while some trade needs sub-minute attention."""
    trailing = timedelta(minutes=config.trailing_kickoff_window_minutes)
    lookahead = timedelta(minutes=config.fast_poll_lookahead_minutes)
    for t in timings:
        if t.status in ACTIVE_STATUSES or t.monitor_active:
            return True
        if t.status == STATUS_SCHEDULED and t.kickoff_at and now - trailing <= t.kickoff_at <= now + lookahead:
            return True
    return False


class StrategyScheduler:
    def __init__(
        self,
        config: StrategyConfig,
        gateway: VenueGateway,
        store: TradeStore,
        aps: AsyncIOScheduler | None = None,
    ):
        self.config = config
        self.store = store
        self.scheduler = aps or scheduler
        self.runner = TradeRunner(config, gateway, store)
        self.next_wake_at: datetime | None = None
        self.last_fixture_sync: datetime | None = None

    @property
    def key(self) -> str:
        return self.config.strategy_key

    @property
    def wake_job_id(self) -> str:
        return f"{self.key}_wake"

    @property
    def poll_job_id(self) -> str:
        return f"{self.key}_poll"

    @property
    def polling(self) -> bool:
        return self.scheduler.get_job(self.poll_job_id) is not None

    def _timings(self, now: datetime) -> list[TradeTiming]:
        horizon = timedelta(minutes=max(self.config.trailing_kickoff_window_minutes, self.config.max_match_minutes))
        return self.store.timings(self.key, now, horizon)

    def start(self):
        """Queue an immediate wake; the wake decides everything after that."""
        self._schedule_wake(utcnow())

    def _schedule_wake(self, when: datetime):
        self.next_wake_at = when
        self.scheduler.add_job(
            self.wake,
            trigger=DateTrigger(run_date=when),
            id=self.wake_job_id,
            name=f"Wake {self.key}",
            replace_existing=True,
            misfire_grace_time=60,
        )
        logger.info(f"[{self.key}] Next wake at {when.isoformat()}")

    async def wake(self, now: datetime | None = None) -> timedelta:
        """Refresh trades from fixtures, then either start polling or sleep."""
        if self.runner.stopping:
            return MAX_SLEEP
        now = now or utcnow()
        self._sync_fixtures(now)

        delay = compute_next_wake(self._timings(now), now, self.config)
        if delay == timedelta(0):
            self.next_wake_at = None
            self.start_active_polling()
        else:
            self._schedule_wake(now + delay)
        return delay

    def _sync_fixtures(self, now: datetime) -> int:
        created = sync_trades_from_fixtures(self.store, self.config, now)
        self.last_fixture_sync = now
        if created:
            logger.info(f"[{self.key}] {created} new trades from fixtures")
        return created

    def _fixture_sync_due(self, now: datetime) -> bool:
        if self.last_fixture_sync is None:
            return True
        return now - self.last_fixture_sync >= timedelta(minutes=self.config.fixture_sync_minutes)

    def start_active_polling(self) -> bool:
        """Start the poll job. Returns False if it was already running."""
        if self.polling:
            return False
        self.scheduler.add_job(
            self.poll,
            trigger=IntervalTrigger(seconds=self.config.poll_interval_seconds),
            id=self.poll_job_id,
            name=f"Poll {self.key}",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=60,
            next_run_time=utcnow(),
        )
        logger.info(f"[{self.key}] Active polling every {self.config.poll_interval_seconds}s")
        return True

    def stop_active_polling(self) -> bool:
        """Stop the poll job. Returns False if it was not running."""
        if not self.polling:
            return False
        self.scheduler.remove_job(self.poll_job_id)
        logger.info(f"[{self.key}] Active polling stopped")
        return True

    async def poll(self, now: datetime | None = None) -> CycleSummary:
        check_time = now or utcnow()
        # Fixtures keep changing during long match windows
        if not self.runner.stopping and self._fixture_sync_due(check_time):
            self._sync_fixtures(check_time)
        summary = await self.runner.run_cycle(now)
        if not self.runner.stopping and not needs_fast_polling(self._timings(check_time), check_time, self.config):
            self.stop_active_polling()
            await self.wake(now)
        return summary

    async def run_now(self) -> CycleSummary:
        """Manual cycle: sync fixtures, tick once, and keep polling if needed."""
        now = utcnow()
        self._sync_fixtures(now)
        summary = await self.runner.run_cycle()
        if needs_fast_polling(self._timings(now), now, self.config):
            self.start_active_polling()
        return summary

    def reload_config(self, config: StrategyConfig):
        self.config = config
        self.runner.update_config(config)
        if self.polling:
            self.scheduler.reschedule_job(
                self.poll_job_id,
                trigger=IntervalTrigger(seconds=config.poll_interval_seconds),
            )
        logger.info(f"[{self.key}] Config reloaded")

    async def shutdown(self, timeout: float) -> bool:
        self.stop_active_polling()
        if self.scheduler.get_job(self.wake_job_id):
            self.scheduler.remove_job(self.wake_job_id)
        self.next_wake_at = None
        return await self.runner.drain(timeout)

    def status(self) -> dict:
        return {
            "polling": self.polling,
            "next_wake_at": self.next_wake_at.isoformat() if self.next_wake_at else None,
            "in_flight_trades": self.runner.in_flight,
            "poll_interval_seconds": self.config.poll_interval_seconds,
        }


_strategies: dict[str, StrategyScheduler] = {}


def start_scheduler(venue: MarketVenue | None = None, store: TradeStore | None = None):
    """Start the scheduler with one wake job per enabled strategy."""
    venue = venue or load_venue(settings.venue_factory)
    gateway = VenueGateway(venue)
    store = store or TradeStore()

    with Session(store.engine) as session:
        for key in settings.strategies:
            config = load_strategy_config(session, key)
            if not config.enabled:
                logger.info(f"[{key}] Strategy disabled, not scheduling")
                continue
            strategy = StrategyScheduler(config, gateway, store)
            _strategies[key] = strategy
            strategy.start()

    scheduler.start()
    logger.info(f"Scheduler started for {len(_strategies)} strategies")


async def stop_scheduler(timeout: float | None = None):
    """Drain in-flight ticks, then shut the scheduler down."""
    grace = settings.shutdown_grace_seconds if timeout is None else timeout
    for strategy in list(_strategies.values()):
        clean = await strategy.shutdown(grace)
        if not clean:
            logger.warning(f"[{strategy.key}] Shut down with ticks cancelled; they resume on restart")
    _strategies.clear()
    if scheduler.running:
        scheduler.shutdown(wait=False)
    logger.info("Scheduler stopped")


async def run_strategy_cycle(strategy_key: str) -> CycleSummary:
    strategy = _strategies.get(strategy_key)
    if strategy is None:
        raise KeyError(strategy_key)
    return await strategy.run_now()


def reload_strategy_config(strategy_key: str) -> StrategyConfig:
    """Re-read and validate settings; raises ValidationError and keeps the old config on bad input."""
    strategy = _strategies.get(strategy_key)
    if strategy is None:
        raise KeyError(strategy_key)
    with Session(strategy.store.engine) as session:
        config = load_strategy_config(session, strategy_key)
    strategy.reload_config(config)
    return config


def get_scheduler_status() -> dict:
    """Return current scheduler state for the API."""
    jobs = scheduler.get_jobs()
    return {
        "running": scheduler.running,
        "job_count": len(jobs),
        "jobs": [
            {
                "id": j.id,
                "name": j.name,
                "next_run": str(j.next_run_time) if j.next_run_time else None,
                "trigger": str(j.trigger),
            }
            for j in jobs
        ],
        "strategies": {key: s.status() for key, s in _strategies.items()},
    }
