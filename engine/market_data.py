"""
market_data.py — Market Data Gateway for the Fantasy Contest Engine.

One entry point for everything price-related:
- broker session lifecycle (delegated to SessionManager)
- instrument universe with a built-in fallback list
- quotes and indices with a market-hours policy:
    open   → live upstream (cached for poll_interval) or simulated ticks
    closed → EOD cache with zero change
- once-per-day EOD price refresh, persisted to the state store
- periodic tick subscriptions

Upstream failures never reach callers: every DataSourceFailure is logged and
replaced by a simulated or cached value, so each requested symbol always gets
a quote. Only session establishment failures propagate (SessionError).

Usage:
    gateway = MarketDataGateway(EngineConfig.from_env(), store=store)
    quotes = await gateway.get_quotes(["INFY", "TCS"])
    await gateway.refresh_eod_prices_if_stale()
    sub = gateway.subscribe_ticks(on_tick)
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import httpx
from loguru import logger

from broker_session import BrokerSession, SessionManager
from config import DEFAULT_EXCHANGE, EngineConfig
from eod_cache import DEFAULT_INDEX_CLOSES, INDEX_CACHE_KEYS, EodCache
from errors import DataSourceFailure
from market_hours import Clock, MarketHours, MarketStatus, utc_now
from market_models import OHLC, DataSource, Instrument, MarketIndex, Quote
from market_sources import (
    BASE_PRICES,
    CRYPTO_INSTRUMENTS,
    DEFAULT_BASE_PRICE,
    DEFAULT_INSTRUMENTS,
    MarketSource,
    SimulatedSource,
    builtin_instruments,
    select_source,
)
from sectors import sector_symbols
from state_store import StateStore
from tick_stream import TickCallback, TickSubscription

EOD_SNAPSHOT_KEY = "default"
CRYPTO_SYMBOLS = frozenset(i.symbol for i in CRYPTO_INSTRUMENTS)


class MarketDataGateway:
    """
    Unified market data access with live/simulated/EOD fallbacks.

    Parameters
    ----------
    config : EngineConfig
    sessions : SessionManager, optional
        Built from config.credentials when omitted.
    store : StateStore, optional
        Persists the EOD cache and broker tokens.
    clock : Clock
        Injected time source; defaults to utc_now.
    source : MarketSource, optional
        Overrides the capability-based choice made by select_source().
    transport : httpx transport, optional
        Passed to the live source (tests use httpx.MockTransport).
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        sessions: Optional[SessionManager] = None,
        store: Optional[StateStore] = None,
        clock: Clock = utc_now,
        market_hours: Optional[MarketHours] = None,
        source: Optional[MarketSource] = None,
        fallback: Optional[MarketSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config or EngineConfig()
        self.store = store
        self.clock = clock
        self.hours = market_hours or MarketHours(
            self.config.market_timezone, extra_holidays=self.config.extra_holidays
        )
        self.sessions = sessions or SessionManager(
            self.config.credentials,
            store=store,
            clock=clock,
            validity_hours=self.config.session_validity_hours,
        )
        self.source = source or select_source(
            self.config, self.sessions.ensure_session, clock, transport
        )
        self.fallback = fallback or SimulatedSource(clock=clock)

        self.eod = self._load_eod_cache()
        self._eod_lock = asyncio.Lock()
        self._instruments: Dict[str, Instrument] = {i.symbol: i for i in DEFAULT_INSTRUMENTS}
        self._tracked: List[str] = [i.symbol for i in DEFAULT_INSTRUMENTS]
        self._live_cache: Dict[str, Quote] = {}
        self._latest: Dict[str, Quote] = {}
        self._last_update: Optional[datetime] = None
        self._last_source: DataSource = (
            DataSource.LIVE if self.is_live_source_configured() else DataSource.SIMULATED
        )
        self.upstream_failures = 0
        self.fallback_quotes = 0

    # ── Session ───────────────────────────────────────────────────────────

    async def ensure_session(self) -> BrokerSession:
        """Establish or reuse the broker session. Raises SessionError."""
        return await self.sessions.ensure_session()

    def invalidate_session(self) -> None:
        self.sessions.invalidate()
        self._live_cache.clear()

    def is_live_source_configured(self) -> bool:
        return self.source.source_tag is DataSource.LIVE

    # ── Status / provenance ───────────────────────────────────────────────

    def market_status(self, now: Optional[datetime] = None) -> MarketStatus:
        return self.hours.status(now or self.clock())

    def is_market_open(self, now: Optional[datetime] = None) -> bool:
        return self.hours.is_open(now or self.clock())

    def data_provenance(self) -> Dict[str, Any]:
        """Source tag and freshness of the most recent data handed out."""
        return {
            "source": self._last_source.value,
            "last_update_time": self._last_update.isoformat() if self._last_update else None,
            "live_configured": self.is_live_source_configured(),
            "eod_as_of": self.eod.as_of.isoformat() if self.eod.as_of else None,
            "eod_symbols": len(self.eod.symbols()),
        }

    def latest_quote(self, symbol: str) -> Optional[Quote]:
        return self._latest.get(symbol)

    # ── Instruments ───────────────────────────────────────────────────────

    def track(self, symbols: Iterable[str]) -> None:
        """Add symbols to the default tick universe (equities also get EOD closes)."""
        for symbol in symbols:
            if symbol not in self._tracked:
                self._tracked.append(symbol)

    @property
    def tracked_symbols(self) -> List[str]:
        return list(self._tracked)

    async def list_instruments(
        self,
        exchange_filter: Optional[Iterable[str]] = None,
        sector: Optional[str] = None,
    ) -> List[Instrument]:
        """Tradable instruments, optionally narrowed to one sector's symbols."""
        allowed = sector_symbols(sector)
        exchanges = [e.upper() for e in exchange_filter] if exchange_filter else [DEFAULT_EXCHANGE]
        try:
            instruments = await self.source.fetch_instruments(exchanges)
        except DataSourceFailure as exc:
            self.upstream_failures += 1
            logger.warning("Instrument list unavailable, using built-in universe: {}", exc)
            instruments = builtin_instruments(exchanges)
        for inst in instruments:
            self._instruments[inst.symbol] = inst
            cached = self.eod.get(inst.symbol)
            if cached and inst.last_price <= 0:
                inst.last_price = cached
        if allowed is not None:
            instruments = [i for i in instruments if i.symbol in allowed]
        return instruments

    def instrument(self, symbol: str) -> Instrument:
        """Known instrument for symbol, or a placeholder at its reference price."""
        inst = self._instruments.get(symbol)
        if inst is not None:
            return inst
        return Instrument(0, symbol, symbol, BASE_PRICES.get(symbol, DEFAULT_BASE_PRICE))

    # ── Quotes ────────────────────────────────────────────────────────────

    async def get_quotes(self, symbols: Iterable[str]) -> Dict[str, Quote]:
        """
        Symbol → quote for each distinct requested symbol, in request order.

        Crypto symbols trade around the clock and are always simulated.
        """
        wanted = list(dict.fromkeys(symbols))
        if not wanted:
            return {}
        now = self.clock()
        stocks = [s for s in wanted if s not in CRYPTO_SYMBOLS]
        crypto = [s for s in wanted if s in CRYPTO_SYMBOLS]

        result: Dict[str, Quote] = {}
        if stocks:
            if self.hours.is_open(now):
                result.update(await self._open_market_quotes(stocks, now))
            else:
                result.update(self._closed_market_quotes(stocks, now))
        if crypto:
            result.update(await self.fallback.fetch_quotes(crypto, self._reference(), "CRYPTO"))

        quotes = {s: result[s] for s in wanted}
        self._record(quotes.values(), now)
        return quotes

    def _reference(self) -> Dict[str, float]:
        ref = dict(self.eod.prices)
        for symbol, quote in self._latest.items():
            ref.setdefault(symbol, quote.ohlc.close or quote.last_price)
        return ref

    async def _open_market_quotes(self, symbols: List[str], now: datetime) -> Dict[str, Quote]:
        reference = self._reference()
        quotes: Dict[str, Quote] = {}

        pending = symbols
        if self.is_live_source_configured():
            ttl = self.config.poll_interval_seconds
            pending = []
            for symbol in symbols:
                cached = self._live_cache.get(symbol)
                if cached is not None and (now - cached.timestamp).total_seconds() < ttl:
                    quotes[symbol] = cached
                else:
                    pending.append(symbol)

        if pending:
            try:
                fetched = await self.source.fetch_quotes(pending, reference, DEFAULT_EXCHANGE)
            except DataSourceFailure as exc:
                self.upstream_failures += 1
                logger.warning("Quote fetch failed for {} symbols, using simulated: {}",
                               len(pending), exc)
                fetched = {}
            for symbol in pending:
                quote = fetched.get(symbol)
                if quote is None:
                    self.fallback_quotes += 1
                    quote = (await self.fallback.fetch_quotes([symbol], reference))[symbol]
                elif quote.source is DataSource.LIVE:
                    quote.timestamp = now
                    self._live_cache[symbol] = quote
                quotes[symbol] = quote
        return quotes

    def _closed_market_quotes(self, symbols: List[str], now: datetime) -> Dict[str, Quote]:
        quotes: Dict[str, Quote] = {}
        for symbol in symbols:
            price = self.eod.get(symbol) or self._last_close(symbol)
            quotes[symbol] = Quote(
                symbol=symbol,
                last_price=price,
                day_change=0.0,
                day_change_pct=0.0,
                source=DataSource.EOD,
                ohlc=OHLC(open=price, high=price, low=price, close=price),
                timestamp=now,
            )
        return quotes

    def _last_close(self, symbol: str) -> float:
        """Close to show before the EOD cache knows a symbol."""
        latest = self._latest.get(symbol)
        if latest is not None:
            return latest.last_price
        return self.instrument(symbol).last_price or DEFAULT_BASE_PRICE

    def _record(self, quotes: Iterable[Quote], now: datetime) -> None:
        for quote in quotes:
            self._latest[quote.symbol] = quote
        sources = {q.source for q in quotes}
        for tag in (DataSource.SIMULATED, DataSource.EOD, DataSource.LIVE):
            if tag in sources:
                self._last_source = tag
                break
        self._last_update = now

    # ── Indices ───────────────────────────────────────────────────────────

    async def get_indices(self) -> List[MarketIndex]:
        now = self.clock()
        if not self.hours.is_open(now):
            return [
                MarketIndex(
                    name=name,
                    value=self.eod.get(key) or DEFAULT_INDEX_CLOSES[key],
                    change=0.0,
                    change_pct=0.0,
                    source=DataSource.EOD,
                )
                for name, key in INDEX_CACHE_KEYS.items()
            ]
        reference = dict(DEFAULT_INDEX_CLOSES)
        reference.update({k: v for k, v in self.eod.prices.items() if k in DEFAULT_INDEX_CLOSES})
        try:
            indices = await self.source.fetch_indices(reference)
        except DataSourceFailure as exc:
            self.upstream_failures += 1
            logger.warning("Index fetch failed, using simulated values: {}", exc)
            indices = []
        by_name = {i.name: i for i in indices}
        missing = [n for n in INDEX_CACHE_KEYS if n not in by_name]
        if missing:
            for index in await self.fallback.fetch_indices(reference):
                by_name.setdefault(index.name, index)
        return [by_name[n] for n in INDEX_CACHE_KEYS]

    # ── EOD cache ─────────────────────────────────────────────────────────

    def _load_eod_cache(self) -> EodCache:
        if self.store is None:
            return EodCache()
        data = self.store.load_snapshot("eod_cache", EOD_SNAPSHOT_KEY)
        if not data:
            return EodCache()
        cache = EodCache.from_dict(data)
        logger.info("Restored EOD cache: {} prices as of {}", len(cache), cache.as_of)
        return cache

    async def refresh_eod_prices_if_stale(self) -> bool:
        """
        Refresh the EOD cache unless it already holds today's closes.

        Returns True when a refresh ran. One historical fetch per tracked
        instrument; failed symbols keep their previous close (or the
        instrument's reference price).
        """
        today = self.hours.local_date(self.clock())
        if self.eod.is_fresh(today):
            return False
        async with self._eod_lock:
            if self.eod.is_fresh(today):
                return False

            prices: Dict[str, float] = {}
            failures = 0
            for symbol in [s for s in self._tracked if s not in CRYPTO_SYMBOLS]:
                inst = self.instrument(symbol)
                try:
                    prices[symbol] = await self.source.fetch_daily_close(inst, today)
                except DataSourceFailure as exc:
                    failures += 1
                    logger.debug("EOD close for {} unavailable: {}", symbol, exc)
                    prices[symbol] = self.eod.get(symbol) or inst.last_price or DEFAULT_BASE_PRICE

            reference = {k: self.eod.get(k) or v for k, v in DEFAULT_INDEX_CLOSES.items()}
            try:
                for index in await self.source.fetch_indices(reference):
                    prices[INDEX_CACHE_KEYS[index.name]] = index.value
            except DataSourceFailure as exc:
                failures += 1
                logger.debug("EOD index closes unavailable: {}", exc)
            for key, value in reference.items():
                prices.setdefault(key, value)

            if failures:
                self.upstream_failures += failures
                logger.warning("EOD refresh: {} upstream failures, previous closes kept", failures)

            self.eod.replace(prices, today)
            self._persist_eod()
            logger.info("EOD cache refreshed: {} prices for {}", len(self.eod), today)
            return True

    def _persist_eod(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save_snapshot("eod_cache", EOD_SNAPSHOT_KEY, self.eod.to_dict())
        except Exception as exc:
            logger.warning("Failed to persist EOD cache: {}", exc)

    # ── Ticks ─────────────────────────────────────────────────────────────

    def subscribe_ticks(
        self,
        on_tick: TickCallback,
        symbols: Optional[Iterable[str]] = None,
        interval: Optional[float] = None,
    ) -> TickSubscription:
        """
        Deliver quotes to on_tick every tick interval until closed.

        While the equity market is closed the EOD snapshot of stock symbols
        is delivered once per closed period; later polls carry crypto only.

        Must be called from inside a running event loop.
        """
        watch = list(symbols) if symbols is not None else None
        delivered_for: Dict[str, Optional[datetime]] = {"next_open": None}

        async def fetch() -> List[Quote]:
            wanted = watch if watch is not None else list(self._tracked)
            now = self.clock()
            if self.hours.is_open(now):
                delivered_for["next_open"] = None
            else:
                next_open = self.hours.next_open(now)
                if delivered_for["next_open"] == next_open:
                    wanted = [s for s in wanted if s in CRYPTO_SYMBOLS]
                else:
                    delivered_for["next_open"] = next_open
            if not wanted:
                return []
            return list((await self.get_quotes(wanted)).values())

        sub = TickSubscription(
            fetch=fetch,
            on_tick=on_tick,
            interval=interval if interval is not None else self.config.tick_interval_seconds,
            name=",".join(watch[:3]) if watch else "tracked",
        )
        return sub.start()

    async def aclose(self) -> None:
        await self.source.aclose()
