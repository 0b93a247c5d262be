"""
market_sources.py — Upstream market data strategies.

Two implementations of one MarketSource interface:

  LiveSource       Kite-style broker REST API over httpx
                   (instruments CSV, /quote, /instruments/historical)
  SimulatedSource  random walk around reference closes, no network

The gateway picks one at construction time with select_source() and always
keeps a SimulatedSource for per-symbol fallback. Sources raise
DataSourceFailure on any upstream problem; they never substitute data
themselves.
"""

from __future__ import annotations

import abc
import csv
import io
import random
from datetime import date, datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

import httpx
from loguru import logger

from broker_session import BrokerSession
from config import EngineConfig
from eod_cache import DEFAULT_INDEX_CLOSES, INDEX_CACHE_KEYS
from errors import DataSourceFailure, SessionError
from market_hours import Clock, utc_now
from market_models import OHLC, DataSource, Instrument, MarketIndex, Quote, change_from_close


# ─── Built-in Universe ────────────────────────────────────────────────────────

DEFAULT_INSTRUMENTS: List[Instrument] = [
    Instrument(256265, "RELIANCE", "Reliance Industries Ltd", 2780.45),
    Instrument(265, "TCS", "Tata Consultancy Services Ltd", 3456.20),
    Instrument(269, "HDFCBANK", "HDFC Bank Ltd", 1543.65),
    Instrument(274, "INFY", "Infosys Ltd", 1432.15),
    Instrument(275, "ICICIBANK", "ICICI Bank Ltd", 1089.75),
    Instrument(276, "HINDUNILVR", "Hindustan Unilever Ltd", 2456.80),
    Instrument(277, "ZOMATO", "Zomato Ltd", 89.45),
    Instrument(278, "PAYTM", "One 97 Communications Ltd", 456.30),
    Instrument(279, "GODREJCP", "Godrej Consumer Products Ltd", 1234.50),
    Instrument(280, "DABUR", "Dabur India Ltd", 567.80),
    Instrument(281, "HCLTECH", "HCL Technologies Ltd", 1456.75),
    Instrument(282, "WIPRO", "Wipro Ltd", 432.60),
    Instrument(283, "SBIN", "State Bank of India", 634.50),
    Instrument(284, "AXISBANK", "Axis Bank Ltd", 1123.45),
    Instrument(285, "BAJFINANCE", "Bajaj Finance Ltd", 6789.01),
]

# INR prices; traded around the clock
CRYPTO_INSTRUMENTS: List[Instrument] = [
    Instrument(900001, "BTC", "Bitcoin", 4_200_000.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900002, "ETH", "Ethereum", 280_000.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900003, "BNB", "BNB", 45_000.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900004, "SOL", "Solana", 18_500.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900005, "XRP", "XRP", 210.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900006, "DOGE", "Dogecoin", 28.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900007, "ADA", "Cardano", 85.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900008, "AVAX", "Avalanche", 3_200.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900009, "DOT", "Polkadot", 650.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900010, "LINK", "Chainlink", 1_850.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
    Instrument(900011, "LTC", "Litecoin", 8_500.0, exchange="CRYPTO", segment="CRYPTO", instrument_type="COIN"),
]

BASE_PRICES: Dict[str, float] = {
    i.symbol: i.last_price for i in (*DEFAULT_INSTRUMENTS, *CRYPTO_INSTRUMENTS)
}
DEFAULT_BASE_PRICE = 1000.0

# Display name → broker quote key
INDEX_QUOTE_KEYS: Dict[str, str] = {
    "NIFTY 50": "NSE:NIFTY 50",
    "SENSEX": "BSE:SENSEX",
    "BANK NIFTY": "NSE:NIFTY BANK",
}


def builtin_instruments(exchange_filter: Optional[Iterable[str]] = None) -> List[Instrument]:
    universe = [*DEFAULT_INSTRUMENTS, *CRYPTO_INSTRUMENTS]
    if exchange_filter:
        wanted = {e.upper() for e in exchange_filter}
        universe = [i for i in universe if i.exchange in wanted]
    return [Instrument(**i.to_dict()) for i in universe]


# ─── Interface ────────────────────────────────────────────────────────────────

class MarketSource(abc.ABC):
    """Strategy interface for an upstream price source."""

    source_tag: DataSource

    @abc.abstractmethod
    async def fetch_instruments(self, exchanges: Iterable[str]) -> List[Instrument]:
        ...

    @abc.abstractmethod
    async def fetch_quotes(
        self,
        symbols: Iterable[str],
        reference: Mapping[str, float],
        exchange: str = "NSE",
    ) -> Dict[str, Quote]:
        """Quotes for as many symbols as possible; missing keys mean per-symbol failure."""

    @abc.abstractmethod
    async def fetch_indices(self, reference: Mapping[str, float]) -> List[MarketIndex]:
        ...

    @abc.abstractmethod
    async def fetch_daily_close(self, instrument: Instrument, day: date) -> float:
        """Most recent daily close on or before `day`."""

    async def aclose(self) -> None:
        return None


# ─── Simulated Source ─────────────────────────────────────────────────────────

class SimulatedSource(MarketSource):
    """
    Random-walk quotes around a reference close.

    Live ticks move ±0.5% (σ) around the previous close; indices move
    ±0.25%. Pass a seed for deterministic tests.
    """

    source_tag = DataSource.SIMULATED

    def __init__(
        self,
        seed: Optional[int] = None,
        clock: Clock = utc_now,
        tick_sigma: float = 0.005,
        index_sigma: float = 0.0025,
    ) -> None:
        self._rng = random.Random(seed)
        self._clock = clock
        self.tick_sigma = tick_sigma
        self.index_sigma = index_sigma

    def reference_price(self, symbol: str, reference: Mapping[str, float]) -> float:
        price = reference.get(symbol)
        if price and price > 0:
            return price
        return BASE_PRICES.get(symbol, DEFAULT_BASE_PRICE)

    def quote(self, symbol: str, prev_close: float) -> Quote:
        """One simulated tick with a guaranteed non-zero move."""
        move = self._rng.gauss(0.0, self.tick_sigma)
        if move == 0.0:
            move = self.tick_sigma / 10
        last = max(prev_close * (1 + move), 0.01)
        change, change_pct = change_from_close(last, prev_close)
        spread = abs(last - prev_close) + prev_close * 0.005
        return Quote(
            symbol=symbol,
            last_price=round(last, 2) or 0.01,
            day_change=change,
            day_change_pct=change_pct,
            source=DataSource.SIMULATED,
            volume=self._rng.randint(10_000, 1_010_000),
            ohlc=OHLC(
                open=round(prev_close * (1 + self._rng.uniform(-0.002, 0.002)), 2),
                high=round(max(last, prev_close) + spread / 2, 2),
                low=round(min(last, prev_close) - spread / 2, 2),
                close=prev_close,
            ),
            timestamp=self._clock(),
        )

    async def fetch_instruments(self, exchanges: Iterable[str]) -> List[Instrument]:
        return builtin_instruments(exchanges)

    async def fetch_quotes(
        self,
        symbols: Iterable[str],
        reference: Mapping[str, float],
        exchange: str = "NSE",
    ) -> Dict[str, Quote]:
        return {s: self.quote(s, self.reference_price(s, reference)) for s in symbols}

    async def fetch_indices(self, reference: Mapping[str, float]) -> List[MarketIndex]:
        indices = []
        for name, key in INDEX_CACHE_KEYS.items():
            base = reference.get(key) or DEFAULT_INDEX_CLOSES[key]
            change = base * self._rng.gauss(0.0, self.index_sigma) or base * 0.0001
            indices.append(MarketIndex(
                name=name,
                value=base + change,
                change=change,
                change_pct=change / base * 100.0,
                source=DataSource.SIMULATED,
            ))
        return indices

    async def fetch_daily_close(self, instrument: Instrument, day: date) -> float:
        base = BASE_PRICES.get(instrument.symbol) or instrument.last_price or DEFAULT_BASE_PRICE
        open_ = base * (1 + self._rng.uniform(-0.005, 0.005))
        return round(open_ * (1 + self._rng.uniform(-0.025, 0.025)), 2)


# ─── Live Source ──────────────────────────────────────────────────────────────

SessionProvider = Callable[[], Awaitable[BrokerSession]]


class LiveSource(MarketSource):
    """
    Broker REST client (Kite Connect v3 shapes).

    Every request asks the session provider for an active session first; a
    SessionError there becomes a DataSourceFailure so the gateway can fall
    back. Pass `transport` (e.g. httpx.MockTransport) for tests.
    """

    source_tag = DataSource.LIVE
    API_VERSION = "3"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        session_provider: SessionProvider,
        timeout: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self._session_provider = session_provider
        self._timeout = timeout
        self._transport = transport
        self._clock = clock
        self._tokens: Dict[str, int] = {i.symbol: i.token for i in DEFAULT_INSTRUMENTS}

    async def _get(self, path: str, params=None) -> httpx.Response:
        try:
            session = await self._session_provider()
        except SessionError as exc:
            raise DataSourceFailure(f"No broker session: {exc}") from exc

        headers = {"X-Kite-Version": self.API_VERSION}
        headers.update(session.auth_header(self.api_key))
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self._timeout,
                transport=self._transport,
            ) as client:
                resp = await client.get(path, params=params, headers=headers)
                resp.raise_for_status()
                return resp
        except httpx.HTTPError as exc:
            raise DataSourceFailure(f"GET {path} failed: {exc}") from exc

    async def _get_data(self, path: str, params=None) -> dict:
        resp = await self._get(path, params)
        try:
            body = resp.json()
        except ValueError as exc:
            raise DataSourceFailure(f"GET {path} returned non-JSON body") from exc
        if body.get("status") != "success" or "data" not in body:
            raise DataSourceFailure(f"GET {path} error: {body.get('message', body)}")
        return body["data"]

    # ── Instruments ───────────────────────────────────────────────────────

    async def fetch_instruments(self, exchanges: Iterable[str]) -> List[Instrument]:
        instruments: List[Instrument] = []
        for exchange in exchanges:
            resp = await self._get(f"/instruments/{exchange}")
            instruments.extend(self._parse_instruments_csv(resp.text))
        if not instruments:
            raise DataSourceFailure("Broker returned an empty instrument list")
        for inst in instruments:
            self._tokens[inst.symbol] = inst.token
        logger.debug("LiveSource: {} instruments", len(instruments))
        return instruments

    @staticmethod
    def _parse_instruments_csv(text: str) -> List[Instrument]:
        rows = csv.DictReader(io.StringIO(text))
        result = []
        for row in rows:
            try:
                if row.get("instrument_type", "EQ") != "EQ":
                    continue
                result.append(Instrument(
                    token=int(row["instrument_token"]),
                    symbol=row["tradingsymbol"],
                    name=row.get("name") or row["tradingsymbol"],
                    last_price=float(row.get("last_price") or 0.0),
                    exchange=row.get("exchange", "NSE"),
                    segment=row.get("segment", "NSE"),
                    instrument_type=row.get("instrument_type", "EQ"),
                    tick_size=float(row.get("tick_size") or 0.05),
                    lot_size=int(float(row.get("lot_size") or 1)),
                ))
            except (KeyError, ValueError) as exc:
                logger.debug("Skipping malformed instrument row {}: {}", row, exc)
        return result

    # ── Quotes ────────────────────────────────────────────────────────────

    async def fetch_quotes(
        self,
        symbols: Iterable[str],
        reference: Mapping[str, float],
        exchange: str = "NSE",
    ) -> Dict[str, Quote]:
        keys = [f"{exchange}:{s}" for s in symbols]
        if not keys:
            return {}
        data = await self._get_data("/quote", params=[("i", k) for k in keys])
        quotes: Dict[str, Quote] = {}
        for key, raw in data.items():
            symbol = key.split(":", 1)[1] if ":" in key else key
            try:
                quotes[symbol] = self._parse_quote(symbol, raw, reference)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("LiveSource: bad quote payload for {}: {}", symbol, exc)
        return quotes

    def _parse_quote(self, symbol: str, raw: dict, reference: Mapping[str, float]) -> Quote:
        ohlc = OHLC.from_dict(raw.get("ohlc"))
        last = float(raw["last_price"])
        prev_close = ohlc.close or reference.get(symbol) or last
        change, change_pct = change_from_close(last, prev_close)
        ts = raw.get("timestamp")
        timestamp = self._clock()
        if isinstance(ts, str):
            try:
                timestamp = datetime.fromisoformat(ts)
            except ValueError:
                pass
        return Quote(
            symbol=symbol,
            last_price=last,
            day_change=change,
            day_change_pct=change_pct,
            source=DataSource.LIVE,
            volume=int(raw.get("volume") or 0),
            ohlc=ohlc,
            timestamp=timestamp,
        )

    async def fetch_indices(self, reference: Mapping[str, float]) -> List[MarketIndex]:
        data = await self._get_data("/quote", params=[("i", k) for k in INDEX_QUOTE_KEYS.values()])
        indices = []
        for name, key in INDEX_QUOTE_KEYS.items():
            raw = data.get(key)
            if not raw:
                continue
            last = float(raw["last_price"])
            prev_close = OHLC.from_dict(raw.get("ohlc")).close or last
            change, change_pct = change_from_close(last, prev_close)
            indices.append(MarketIndex(name, last, change, change_pct, DataSource.LIVE))
        if not indices:
            raise DataSourceFailure("Broker returned no index quotes")
        return indices

    # ── Historical ────────────────────────────────────────────────────────

    async def fetch_daily_close(self, instrument: Instrument, day: date) -> float:
        token = instrument.token or self._tokens.get(instrument.symbol)
        if not token:
            raise DataSourceFailure(f"No instrument token for {instrument.symbol}")
        data = await self._get_data(
            f"/instruments/historical/{token}/day",
            params={"from": (day - timedelta(days=5)).isoformat(), "to": day.isoformat()},
        )
        candles = data.get("candles") or []
        if not candles:
            raise DataSourceFailure(f"No candles for {instrument.symbol}")
        # [timestamp, open, high, low, close, volume]
        return float(candles[-1][4])


def select_source(
    config: EngineConfig,
    session_provider: SessionProvider,
    clock: Clock,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> MarketSource:
    """Capability check: live when credentials are present, else simulated."""
    if config.live_source_enabled:
        logger.info("Market data: live broker feed at {}", config.credentials.base_url)
        return LiveSource(
            base_url=config.credentials.base_url,
            api_key=config.credentials.api_key,
            session_provider=session_provider,
            timeout=config.http_timeout_seconds,
            transport=transport,
            clock=clock,
        )
    logger.info("Market data: simulated mode (broker credentials not configured)")
    return SimulatedSource(clock=clock)
