"""
contest_engine.py — Orchestrator for the Fantasy Contest Engine.

Wires the components together:

    MarketDataGateway ──ticks──► PortfolioLedger.apply_price_update
                                        │
                                        ▼
    ContestScheduler ──lock──►   participant snapshots ──► leaderboard.rank

Background tasks (start/stop):
  - phase scheduler loop       every phase_check_interval_seconds
  - EOD refresh check          every eod_check_interval_seconds
  - tick subscription          every tick_interval_seconds

Every contest and portfolio mutation is written through to the StateStore so
load() can rebuild the engine after a restart.

Usage:
    engine = ContestEngine(EngineConfig.from_env())
    engine.load()
    contest = engine.create_contest("Nifty Sprint", t1, t2, t3, t4)
    participant = engine.join_contest(contest.contest_id, "u-1", "Asha")
    result = await engine.buy(participant.portfolio_id, "INFY", 10)
    await engine.start()
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger

from config import EngineConfig
from contest_models import Contest, ContestPhase, Participant
from contest_scheduler import ContestScheduler, PhaseFlags, PhaseTransition, phase_flags
from errors import ContestError, ContestNotFound, InvalidOrder
from leaderboard import rank, standings_with_prizes
from market_data import CRYPTO_SYMBOLS, MarketDataGateway
from market_hours import Clock, utc_now
from market_models import DataSource, Instrument, Quote
from portfolio_ledger import LedgerResult, PortfolioLedger
from sectors import symbol_in_sector
from state_store import StateStore
from tick_stream import TickSubscription


class ContestEngine:
    """
    Owns contests, their participants' ledgers and the background loops.

    Parameters
    ----------
    config : EngineConfig, optional
    store : StateStore, optional
        Defaults to StateStore(config.state_db_path).
    gateway : MarketDataGateway, optional
        Defaults to one built from config sharing the same store and clock.
    clock : Clock
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        store: Optional[StateStore] = None,
        gateway: Optional[MarketDataGateway] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or EngineConfig()
        self.clock = clock
        self.store = store or StateStore(self.config.state_db_path)
        self.gateway = gateway or MarketDataGateway(self.config, store=self.store, clock=clock)
        self.contests: Dict[str, Contest] = {}
        self.ledgers: Dict[str, PortfolioLedger] = {}
        self.final_standings: Dict[str, List[Dict[str, Any]]] = {}

        self.scheduler = ContestScheduler(
            ledgers_for=self.ledgers_for_contest,
            clock=clock,
            interval=self.config.phase_check_interval_seconds,
        )
        self.scheduler.add_listener(self._on_transition)

        self._running = False
        self._eod_task: Optional[asyncio.Task] = None
        self._ticks: Optional[TickSubscription] = None

    # ── Lookups ───────────────────────────────────────────────────────────

    def get_contest(self, contest_id: str) -> Contest:
        contest = self.contests.get(contest_id)
        if contest is None:
            raise ContestNotFound(f"Unknown contest {contest_id!r}")
        return contest

    def get_ledger(self, portfolio_id: str) -> PortfolioLedger:
        ledger = self.ledgers.get(portfolio_id)
        if ledger is None:
            raise ContestNotFound(f"Unknown portfolio {portfolio_id!r}")
        return ledger

    def ledgers_for_contest(self, contest_id: str) -> List[PortfolioLedger]:
        return [l for l in self.ledgers.values() if l.contest_id == contest_id]

    def flags(self, contest_id: str, now: Optional[datetime] = None) -> PhaseFlags:
        return phase_flags(now or self.clock(), self.get_contest(contest_id))

    async def contest_instruments(self, contest_id: str) -> List[Instrument]:
        """Instruments a contest's participants may buy (asset type and sector)."""
        contest = self.get_contest(contest_id)
        exchanges = ["CRYPTO"] if contest.asset_type == "crypto" else None
        return await self.gateway.list_instruments(exchanges, sector=contest.sector_focus)

    # ── Contests ──────────────────────────────────────────────────────────

    def create_contest(
        self,
        title: str,
        registration_deadline: datetime,
        market_start_time: datetime,
        market_end_time: datetime,
        end_time: datetime,
        contest_id: Optional[str] = None,
        **options: Any,
    ) -> Contest:
        """Create and schedule a contest. Extra options are Contest fields."""
        contest_id = contest_id or f"contest-{uuid.uuid4().hex[:10]}"
        if contest_id in self.contests:
            raise ContestError(f"Contest {contest_id!r} already exists")
        if options.get("asset_type", "stock") == "stock":
            status = self.gateway.market_status()
            if not status.can_create_stock_contest:
                raise ContestError(f"Stock contests cannot be created now: {status.reason}")
        contest = Contest(
            contest_id=contest_id,
            title=title,
            registration_deadline=registration_deadline,
            market_start_time=market_start_time,
            market_end_time=market_end_time,
            end_time=end_time,
            **options,
        )
        self.contests[contest_id] = contest
        self.scheduler.register(contest)
        self.scheduler.evaluate(contest, self.clock())
        self._persist_contest(contest)
        logger.info("Contest {} created: {!r} ({}, phase={})",
                    contest_id, title, contest.asset_type, contest.phase.value)
        return contest

    def join_contest(
        self,
        contest_id: str,
        user_id: str,
        display_name: str,
        avatar: Optional[str] = None,
    ) -> Participant:
        contest = self.get_contest(contest_id)
        now = self.clock()
        if not phase_flags(now, contest).registration_open:
            raise ContestError(f"Registration for contest {contest_id} is closed")
        if contest.participant(user_id) is not None:
            raise ContestError(f"User {user_id} already joined contest {contest_id}")
        if contest.is_full:
            raise ContestError(f"Contest {contest_id} is full ({contest.max_participants} participants)")

        portfolio_id = f"{contest_id}:{user_id}"
        ledger = PortfolioLedger(
            portfolio_id=portfolio_id,
            contest_id=contest_id,
            user_id=user_id,
            initial_value=contest.virtual_cash,
            clock=self.clock,
        )
        participant = Participant(
            user_id=user_id,
            display_name=display_name,
            portfolio_id=portfolio_id,
            joined_at=now,
            avatar=avatar,
            portfolio_value=contest.virtual_cash,
        )
        self.ledgers[portfolio_id] = ledger
        contest.participants.append(participant)
        self.refresh_standings(contest_id)
        self._persist_ledger(ledger)
        self._persist_contest(contest)
        logger.info("User {} joined contest {} (portfolio {})", user_id, contest_id, portfolio_id)
        return contest.participant(user_id)

    # ── Portfolio actions ─────────────────────────────────────────────────

    async def buy(
        self,
        portfolio_id: str,
        symbol: str,
        quantity: float,
        price: Optional[float] = None,
    ) -> LedgerResult:
        """
        Buy at `price`, or at the gateway's current quote when omitted.

        The quote is fetched before the ledger is touched, so the ledger
        mutation itself never awaits.
        """
        ledger = self.get_ledger(portfolio_id)
        contest = self.get_contest(ledger.contest_id)
        self.scheduler.evaluate(contest, self.clock())
        symbol = symbol.upper()
        is_crypto = symbol in CRYPTO_SYMBOLS
        if (contest.asset_type == "crypto") != is_crypto:
            return LedgerResult.failure(InvalidOrder(
                f"{symbol} cannot be traded in a {contest.asset_type} contest"
            ))
        if not symbol_in_sector(contest.sector_focus, symbol):
            return LedgerResult.failure(InvalidOrder(
                f"{symbol} is outside the {contest.sector_focus} sector of contest {contest.contest_id}"
            ))

        quote: Optional[Quote] = None
        if price is None:
            quote = (await self.gateway.get_quotes([symbol]))[symbol]
            price = quote.last_price

        instrument = self.gateway.instrument(symbol)
        result = ledger.buy(symbol, quantity, price, name=instrument.name)
        if result:
            if quote is not None:
                ledger.apply_price_update(symbol, quote.last_price, quote.day_change, quote.day_change_pct)
            self.gateway.track([symbol])
            self.refresh_standings(contest.contest_id)
            self._persist_ledger(ledger)
            self._persist_contest(contest)
        return result

    def set_top_picks(
        self,
        portfolio_id: str,
        first: Optional[str] = None,
        second: Optional[str] = None,
        third: Optional[str] = None,
    ) -> LedgerResult:
        ledger = self.get_ledger(portfolio_id)
        self.scheduler.evaluate(self.get_contest(ledger.contest_id), self.clock())
        result = ledger.set_top_picks(first, second, third)
        if result:
            self.refresh_standings(ledger.contest_id)
            self._persist_ledger(ledger)
            self._persist_contest(self.get_contest(ledger.contest_id))
        return result

    # ── Valuation ─────────────────────────────────────────────────────────

    def apply_quote(self, quote: Quote) -> int:
        """Revalue every ledger holding quote.symbol. Returns ledgers updated."""
        return self.apply_quotes([quote])

    def apply_quotes(self, quotes: Iterable[Quote]) -> int:
        """
        Revalue ledgers from quotes, skipping contests whose valuation is
        frozen at `now` (see revalues).
        """
        now = self.clock()
        quotes = list(quotes)
        touched = set()
        updated = 0
        for ledger in self.ledgers.values():
            contest = self.contests.get(ledger.contest_id)
            if contest is None:
                continue
            for quote in quotes:
                if not self.revalues(contest, quote, now):
                    continue
                if ledger.apply_price_update(
                    quote.symbol, quote.last_price, quote.day_change, quote.day_change_pct
                ):
                    updated += 1
                    touched.add(ledger.contest_id)
        for contest_id in touched:
            self.refresh_standings(contest_id)
        return updated

    @staticmethod
    def revalues(contest: Contest, quote: Quote, now: datetime) -> bool:
        """
        Whether `quote` may move this contest's valuations at `now`.

        From market_end_time on, holdings keep their closing prices through
        settlement. Once the market has started, closed-market EOD quotes
        (zero change, previous close) are ignored.
        """
        if now >= contest.market_end_time:
            return False
        return not (quote.source is DataSource.EOD and now >= contest.market_start_time)

    def refresh_standings(self, contest_id: str) -> List[Participant]:
        """Copy ledger snapshots onto participants and re-rank from scratch."""
        contest = self.get_contest(contest_id)
        for participant in contest.participants:
            ledger = self.ledgers.get(participant.portfolio_id)
            if ledger is None:
                continue
            snap = ledger.snapshot()
            participant.update_valuation(snap.value, snap.profit, snap.profit_pct, snap.multiplier_bonus)
        contest.participants = rank(contest.participants)
        return contest.participants

    def leaderboard(self, contest_id: str) -> List[Dict[str, Any]]:
        contest = self.get_contest(contest_id)
        if contest_id in self.final_standings:
            return self.final_standings[contest_id]
        return standings_with_prizes(contest.participants, contest.prize_pool)

    def _on_transition(self, contest: Contest, transition: PhaseTransition) -> None:
        if transition.current is ContestPhase.COMPLETED:
            self.refresh_standings(contest.contest_id)
            standings = standings_with_prizes(contest.participants, contest.prize_pool)
            self.final_standings[contest.contest_id] = standings
            if standings:
                top = standings[0]
                logger.info("Contest {} completed; winner {} ({:+.4f}%)",
                            contest.contest_id, top["user_id"], top["total_return"])
        self._persist_contest(contest)

    # ── Background loops ──────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("ContestEngine already running")
            return
        self._running = True
        logger.info("ContestEngine starting ({} contests, {} portfolios, live={})",
                    len(self.contests), len(self.ledgers), self.gateway.is_live_source_configured())
        await self.scheduler.start()
        self._eod_task = asyncio.create_task(self._eod_loop())
        self._ticks = self.gateway.subscribe_ticks(self.apply_quote)

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("ContestEngine stopping…")
        self._running = False
        if self._ticks is not None:
            await self._ticks.aclose()
            self._ticks = None
        if self._eod_task is not None:
            self._eod_task.cancel()
            try:
                await self._eod_task
            except asyncio.CancelledError:
                pass
            self._eod_task = None
        await self.scheduler.stop()
        await self.gateway.aclose()
        self.save()
        logger.info("ContestEngine stopped")

    async def _eod_loop(self) -> None:
        while self._running:
            try:
                await self.gateway.refresh_eod_prices_if_stale()
            except Exception as exc:
                logger.exception("EOD refresh check failed: {}", exc)
            if self._running:
                await asyncio.sleep(self.config.eod_check_interval_seconds)

    @property
    def is_running(self) -> bool:
        return self._running

    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "contests": len(self.contests),
            "portfolios": len(self.ledgers),
            "scheduler_ticks": self.scheduler.ticks,
            "stored": {
                "contests": self.store.count("contest"),
                "portfolios": self.store.count("portfolio"),
            },
            "market": self.gateway.market_status().to_dict(),
            "data": self.gateway.data_provenance(),
        }

    # ── Persistence ───────────────────────────────────────────────────────

    def _persist_contest(self, contest: Contest) -> None:
        try:
            self.store.save_snapshot("contest", contest.contest_id, contest.to_dict())
        except Exception as exc:
            logger.warning("Could not save contest {}: {}", contest.contest_id, exc)

    def _persist_ledger(self, ledger: PortfolioLedger) -> None:
        try:
            self.store.save_snapshot("portfolio", ledger.portfolio_id, ledger.to_dict())
        except Exception as exc:
            logger.warning("Could not save portfolio {}: {}", ledger.portfolio_id, exc)

    def save(self) -> None:
        for contest in self.contests.values():
            self._persist_contest(contest)
        for ledger in self.ledgers.values():
            self._persist_ledger(ledger)
        logger.debug("Saved {} contests, {} portfolios", len(self.contests), len(self.ledgers))

    def load(self) -> int:
        """Restore contests and portfolios from the store. Returns contests loaded."""
        for data in self.store.load_all("portfolio"):
            ledger = PortfolioLedger.from_dict(data, clock=self.clock)
            self.ledgers[ledger.portfolio_id] = ledger
            self.gateway.track(ledger.holdings)
        for data in self.store.load_all("contest"):
            contest = Contest.from_dict(data)
            self.contests[contest.contest_id] = contest
            self.scheduler.register(contest)
        if self.contests:
            logger.info("Loaded {} contests, {} portfolios from store",
                        len(self.contests), len(self.ledgers))
        return len(self.contests)
