"""
Tests for contest_engine.py — contest lifecycle wired to ledgers, ticks and the store.
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from config import EngineConfig
from contest_engine import ContestEngine
from contest_models import ContestPhase
from errors import ContestError, ContestNotFound
from market_data import MarketDataGateway
from market_models import DataSource, Quote
from market_sources import SimulatedSource
from state_store import StateStore

T0 = datetime(2025, 1, 15, 2, 0, tzinfo=timezone.utc)      # 07:30 IST, pre-market
T1 = datetime(2025, 1, 15, 3, 45, tzinfo=timezone.utc)     # registration deadline
T2 = datetime(2025, 1, 15, 4, 0, tzinfo=timezone.utc)      # 09:30 IST market start
T3 = datetime(2025, 1, 15, 10, 0, tzinfo=timezone.utc)     # 15:30 IST market end
T4 = datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc)    # contest end
SATURDAY = datetime(2025, 1, 18, 6, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def build_engine(clock, store):
    config = EngineConfig()
    gateway = MarketDataGateway(
        config,
        store=store,
        clock=clock,
        source=SimulatedSource(seed=1, clock=clock),
        fallback=SimulatedSource(seed=2, clock=clock),
    )
    return ContestEngine(config, store=store, gateway=gateway, clock=clock)


@pytest.fixture
def clock():
    return FakeClock(T0)


@pytest.fixture
def store():
    s = StateStore()
    yield s
    s.close()


@pytest.fixture
def engine(clock, store):
    return build_engine(clock, store)


def sprint(engine, **options):
    return engine.create_contest("Nifty Sprint", T1, T2, T3, T4, contest_id="c1", **options)


# ─── Contests ─────────────────────────────────────────────────────────────────

class TestCreateContest:

    def test_created_in_registration(self, engine, store):
        contest = sprint(engine, prize_pool=1000)
        assert contest.phase is ContestPhase.REGISTRATION
        assert engine.flags("c1").registration_open
        assert store.load_snapshot("contest", "c1")["title"] == "Nifty Sprint"

    def test_generated_id(self, engine):
        contest = engine.create_contest("Open", T1, T2, T3, T4)
        assert contest.contest_id.startswith("contest-")

    def test_duplicate_id_rejected(self, engine):
        sprint(engine)
        with pytest.raises(ContestError, match="already exists"):
            sprint(engine)

    def test_bad_ordering_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.create_contest("Broken", T2, T1, T3, T4)

    def test_stock_contest_blocked_on_weekend(self, store):
        engine = build_engine(FakeClock(SATURDAY), store)
        with pytest.raises(ContestError, match="Weekend"):
            engine.create_contest("Weekend", SATURDAY + timedelta(hours=1),
                                  SATURDAY + timedelta(hours=2), SATURDAY + timedelta(hours=3),
                                  SATURDAY + timedelta(hours=4))

    def test_crypto_contest_allowed_on_weekend(self, store):
        engine = build_engine(FakeClock(SATURDAY), store)
        contest = engine.create_contest("Coins", SATURDAY + timedelta(hours=1),
                                        SATURDAY + timedelta(hours=2), SATURDAY + timedelta(hours=3),
                                        SATURDAY + timedelta(hours=4), asset_type="crypto")
        assert contest.asset_type == "crypto"

    def test_created_late_starts_in_current_phase(self, engine, clock):
        clock.now = T2 + timedelta(minutes=5)
        contest = sprint(engine)
        assert contest.phase is ContestPhase.LIVE
        assert engine.scheduler.is_locked("c1")

    def test_unknown_contest(self, engine):
        with pytest.raises(ContestNotFound):
            engine.get_contest("nope")


class TestJoinContest:

    def test_join_creates_ledger(self, engine, store):
        sprint(engine)
        participant = engine.join_contest("c1", "u1", "Asha")
        assert participant.portfolio_id == "c1:u1"
        assert participant.rank == 1
        assert participant.portfolio_value == 1_000_000
        assert engine.get_ledger("c1:u1").cash == 1_000_000
        assert store.count("portfolio") == 1

    def test_duplicate_join_rejected(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        with pytest.raises(ContestError, match="already joined"):
            engine.join_contest("c1", "u1", "Asha")

    def test_full_contest_rejected(self, engine):
        sprint(engine, max_participants=1)
        engine.join_contest("c1", "u1", "Asha")
        with pytest.raises(ContestError, match="full"):
            engine.join_contest("c1", "u2", "Ravi")

    def test_join_after_deadline_rejected(self, engine, clock):
        sprint(engine)
        clock.now = T1
        with pytest.raises(ContestError, match="closed"):
            engine.join_contest("c1", "u1", "Asha")


# ─── Portfolio actions ────────────────────────────────────────────────────────

class TestBuy:

    @pytest.mark.asyncio
    async def test_buy_at_given_price(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        result = await engine.buy("c1:u1", "reliance", 100, 2780.45)
        assert result.ok
        ledger = engine.get_ledger("c1:u1")
        assert ledger.cash == pytest.approx(721_955.0)
        assert ledger.holdings["RELIANCE"].name == "Reliance Industries Ltd"

    @pytest.mark.asyncio
    async def test_buy_at_market_quote(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        result = await engine.buy("c1:u1", "INFY", 10)
        assert result.ok
        holding = engine.get_ledger("c1:u1").holdings["INFY"]
        # pre-market: priced from the last close
        assert holding.average_price == 1432.15
        assert holding.day_change_pct == 0

    @pytest.mark.asyncio
    async def test_bought_symbol_tracked(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "NEWCO", 5, 100.0)
        assert "NEWCO" in engine.gateway.tracked_symbols

    @pytest.mark.asyncio
    async def test_concentration_rejection_passes_through(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        result = await engine.buy("c1:u1", "RELIANCE", 110, 2780.45)
        assert not result.ok
        assert result.error.code == "concentration_limit_exceeded"
        assert engine.get_ledger("c1:u1").cash == 1_000_000

    @pytest.mark.asyncio
    async def test_crypto_rejected_in_stock_contest(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        result = await engine.buy("c1:u1", "BTC", 1, 100.0)
        assert result.error.code == "invalid_order"

    @pytest.mark.asyncio
    async def test_crypto_contest_buys_simulated_quote(self, store):
        engine = build_engine(FakeClock(SATURDAY), store)
        engine.create_contest("Coins", SATURDAY + timedelta(hours=1),
                              SATURDAY + timedelta(hours=2), SATURDAY + timedelta(hours=3),
                              SATURDAY + timedelta(hours=4), contest_id="cc", asset_type="crypto")
        engine.join_contest("cc", "u1", "Asha")
        assert (await engine.buy("cc:u1", "btc", 0.01)).ok
        assert (await engine.buy("cc:u1", "TCS", 1, 100.0)).error.code == "invalid_order"

    @pytest.mark.asyncio
    async def test_top_picks(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        for symbol, qty, price in (("RELIANCE", 10, 2780.45), ("TCS", 10, 3456.20), ("INFY", 10, 1432.15)):
            await engine.buy("c1:u1", symbol, qty, price)
        assert engine.set_top_picks("c1:u1", "RELIANCE", "TCS", "INFY").ok
        assert engine.get_ledger("c1:u1").top_picks == {"first": "RELIANCE", "second": "TCS", "third": "INFY"}
        assert engine.set_top_picks("c1:u1", "WIPRO").error.code == "invalid_pick"

    @pytest.mark.asyncio
    async def test_buy_after_market_start_locked_without_scheduler_tick(self, engine, clock):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        clock.now = T2 + timedelta(seconds=30)
        assert engine.flags("c1").is_locked

        result = await engine.buy("c1:u1", "RELIANCE", 10, 2780.45)

        assert result.error.code == "locked"
        assert engine.get_contest("c1").phase is ContestPhase.LIVE
        assert engine.get_ledger("c1:u1").holdings == {}

    @pytest.mark.asyncio
    async def test_top_picks_locked_at_deadline_without_scheduler_tick(self, engine, clock):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "INFY", 10, 1432.15)
        clock.now = T1

        result = engine.set_top_picks("c1:u1", "INFY")

        assert result.error.code == "locked"
        assert engine.get_ledger("c1:u1").holdings["INFY"].multiplier is None


class TestSectorContests:

    @pytest.mark.asyncio
    async def test_buys_restricted_to_sector(self, engine):
        contest = sprint(engine, sector_focus="banking")
        assert contest.sector_focus == "Banking"
        engine.join_contest("c1", "u1", "Asha")

        assert (await engine.buy("c1:u1", "HDFCBANK", 10, 1543.65)).ok
        result = await engine.buy("c1:u1", "INFY", 10, 1432.15)

        assert result.error.code == "invalid_order"
        assert "Banking" in result.error.message
        assert set(engine.get_ledger("c1:u1").holdings) == {"HDFCBANK"}

    @pytest.mark.asyncio
    async def test_all_sectors_unrestricted(self, engine):
        sprint(engine, sector_focus="All Sectors")
        engine.join_contest("c1", "u1", "Asha")
        assert (await engine.buy("c1:u1", "INFY", 10, 1432.15)).ok
        assert (await engine.buy("c1:u1", "SBIN", 10, 634.50)).ok

    def test_unknown_sector_rejected(self, engine):
        with pytest.raises(ValueError, match="Unknown sector"):
            sprint(engine, sector_focus="Shipping")

    def test_stock_sector_rejected_for_crypto_contest(self, engine):
        with pytest.raises(ValueError):
            sprint(engine, sector_focus="IT Services", asset_type="crypto")

    @pytest.mark.asyncio
    async def test_contest_instruments(self, engine):
        sprint(engine, sector_focus="IT Services")
        symbols = {i.symbol for i in await engine.contest_instruments("c1")}
        assert symbols == {"TCS", "INFY", "HCLTECH", "WIPRO"}


# ─── Valuation & ranking ──────────────────────────────────────────────────────

class TestStandings:

    @pytest.mark.asyncio
    async def test_price_update_reranks(self, engine):
        sprint(engine, prize_pool=1000)
        engine.join_contest("c1", "u1", "Asha")
        engine.join_contest("c1", "u2", "Ravi")
        await engine.buy("c1:u1", "RELIANCE", 100, 2780.45)
        await engine.buy("c1:u2", "TCS", 50, 3456.20)

        updated = engine.apply_quote(Quote("RELIANCE", 2900.0, 119.55, 4.3, DataSource.LIVE))
        assert updated == 1

        board = engine.leaderboard("c1")
        assert [(r["user_id"], r["rank"], r["prize"]) for r in board] == [("u1", 1, 400), ("u2", 2, 200)]
        assert board[0]["profit_pct"] == pytest.approx(1.1955)

    def test_unheld_symbol_updates_nothing(self, engine):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        assert engine.apply_quote(Quote("WIPRO", 440.0, 7.4, 1.7, DataSource.LIVE)) == 0


# ─── Phase side effects ───────────────────────────────────────────────────────

class TestPhases:

    @pytest.mark.asyncio
    async def test_deadline_locks_portfolios(self, engine, clock):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "RELIANCE", 10, 2780.45)

        clock.now = T1
        transitions = engine.scheduler.tick()
        assert [t.current for t in transitions] == [ContestPhase.PORTFOLIO_SELECTION]
        assert engine.get_ledger("c1:u1").is_locked

        result = await engine.buy("c1:u1", "TCS", 1, 3456.20)
        assert result.error.code == "locked"
        assert engine.apply_quote(Quote("RELIANCE", 2800.0, 19.55, 0.7, DataSource.LIVE)) == 1

    @pytest.mark.asyncio
    async def test_completion_freezes_standings(self, engine, clock):
        sprint(engine, prize_pool=1000)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "RELIANCE", 10, 2780.45)

        clock.now = T4
        engine.scheduler.tick()
        assert engine.get_contest("c1").phase is ContestPhase.COMPLETED
        assert "c1" in engine.final_standings
        frozen = engine.leaderboard("c1")
        engine.apply_quote(Quote("RELIANCE", 3000.0, 219.55, 7.9, DataSource.LIVE))
        assert engine.leaderboard("c1") == frozen

    @pytest.mark.asyncio
    async def test_settlement_window_keeps_closing_valuation(self, engine, clock):
        sprint(engine, prize_pool=1000)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "RELIANCE", 100, 2780.45)
        engine.set_top_picks("c1:u1", "RELIANCE")

        clock.now = T2 + timedelta(hours=1)
        engine.scheduler.tick()
        assert engine.apply_quote(Quote("RELIANCE", 2900.0, 119.55, 4.3, DataSource.LIVE)) == 1
        at_close = engine.get_ledger("c1:u1").snapshot()
        assert at_close.profit_pct == pytest.approx(1.1955)
        assert at_close.multiplier_bonus == pytest.approx(0.215)

        clock.now = T3 + timedelta(minutes=1)
        engine.scheduler.tick()
        assert engine.apply_quote(Quote("RELIANCE", 2780.45, 0.0, 0.0, DataSource.EOD)) == 0
        assert engine.apply_quote(Quote("RELIANCE", 2950.0, 169.55, 6.1, DataSource.LIVE)) == 0
        assert engine.get_ledger("c1:u1").snapshot() == at_close

        clock.now = T4
        engine.scheduler.tick()
        [winner] = engine.final_standings["c1"]
        assert winner["profit_pct"] == pytest.approx(1.1955)
        assert winner["multiplier_bonus"] == pytest.approx(0.215)

    @pytest.mark.asyncio
    async def test_eod_quotes_ignored_once_market_started(self, engine, clock):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "INFY", 10, 1432.15)
        eod = Quote("INFY", 1400.0, 0.0, 0.0, DataSource.EOD)

        assert engine.apply_quote(eod) == 1
        clock.now = T2 + timedelta(minutes=5)
        assert engine.apply_quote(Quote("INFY", 1450.0, 17.85, 1.25, DataSource.LIVE)) == 1
        assert engine.apply_quote(eod) == 0
        assert engine.get_ledger("c1:u1").holdings["INFY"].current_price == 1450.0


# ─── Persistence & lifecycle ──────────────────────────────────────────────────

class TestPersistence:

    @pytest.mark.asyncio
    async def test_load_restores_state(self, engine, clock, store):
        sprint(engine)
        engine.join_contest("c1", "u1", "Asha")
        await engine.buy("c1:u1", "RELIANCE", 100, 2780.45)

        restored = build_engine(clock, store)
        assert restored.load() == 1
        assert restored.get_ledger("c1:u1").cash == pytest.approx(721_955.0)
        assert restored.get_contest("c1").participant("u1").display_name == "Asha"

        clock.now = T1
        restored.scheduler.tick()
        assert restored.get_ledger("c1:u1").is_locked

    @pytest.mark.asyncio
    async def test_start_stop(self, engine):
        sprint(engine)
        await engine.start()
        assert engine.is_running
        assert engine.scheduler.is_running
        await asyncio.sleep(0.01)
        assert engine.status()["running"] is True
        assert engine.status()["stored"] == {"contests": 1, "portfolios": 0}
        await engine.stop()
        assert not engine.is_running
        assert not engine.scheduler.is_running
        await engine.stop()
