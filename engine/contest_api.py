"""
contest_api.py — FastAPI surface of the Fantasy Contest Engine.

Endpoints:
    GET  /health                          engine status
    GET  /market/status                   open/closed, reason, next open, provenance
    GET  /market/quotes?symbols=A,B       quotes (source-tagged)
    GET  /market/indices                  NIFTY 50 / SENSEX / BANK NIFTY
    GET  /market/instruments              tradable universe (?exchange=, ?sector=)
    GET  /market/sectors                  sector names for sector_focus
    GET  /contests                        contest list with phase flags
    POST /contests                        create a contest
    GET  /contests/{id}                   contest detail with participants
    GET  /contests/{id}/instruments       what the contest's participants may buy
    GET  /contests/{id}/leaderboard       ranked standings with prizes
    POST /contests/{id}/join              join with external identity
    GET  /portfolios/{id}                 valuation snapshot
    POST /portfolios/{id}/buy             buy (ledger rules apply)
    POST /portfolios/{id}/top-picks       assign 5X / 3X / 2X

Ledger rejections come back as 4xx with {"code", "message"} in `detail`.

Usage:
    app = create_app(engine)
    uvicorn.run(app, port=8001)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel, Field

from contest_engine import ContestEngine
from errors import ContestError, ContestNotFound, LedgerError
from portfolio_ledger import LedgerResult
from sectors import list_sectors


# ─── Request Schemas ──────────────────────────────────────────────────────────

class ContestCreateIn(BaseModel):
    title: str = Field(min_length=1, max_length=160)
    registration_deadline: datetime
    market_start_time: datetime
    market_end_time: datetime
    end_time: datetime
    contest_id: Optional[str] = None
    entry_fee: float = Field(default=100.0, ge=0)
    prize_pool: float = Field(default=0.0, ge=0)
    virtual_cash: float = Field(default=1_000_000.0, gt=0)
    asset_type: str = "stock"
    description: str = ""
    contest_type: str = "daily"
    max_participants: Optional[int] = Field(default=None, ge=1)
    sector_focus: Optional[str] = None


class JoinIn(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    display_name: str = Field(min_length=1, max_length=128)
    avatar: Optional[str] = None


class BuyIn(BaseModel):
    symbol: str = Field(min_length=1, max_length=32)
    quantity: float = Field(gt=0)
    price: Optional[float] = Field(default=None, gt=0)


class TopPicksIn(BaseModel):
    first: Optional[str] = None
    second: Optional[str] = None
    third: Optional[str] = None


# ─── App & Engine ─────────────────────────────────────────────────────────────

app = FastAPI(
    title="Fantasy Contest Engine API",
    description="Contests, portfolios, leaderboards and market data",
    version="1.0.0",
)

_engine: Optional[ContestEngine] = None

LEDGER_STATUS = {
    "locked": 409,
    "insufficient_funds": 422,
    "concentration_limit_exceeded": 422,
    "invalid_pick": 422,
    "invalid_order": 422,
}


def get_engine() -> ContestEngine:
    if _engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialised")
    return _engine


def set_engine(engine: Optional[ContestEngine]) -> None:
    """Install the engine served by the routes (tests pass their own)."""
    global _engine
    _engine = engine


def create_app(engine: ContestEngine) -> FastAPI:
    set_engine(engine)
    return app


def _ledger_response(result: LedgerResult, engine: ContestEngine, portfolio_id: str) -> Dict[str, Any]:
    if not result:
        error: LedgerError = result.error
        raise HTTPException(status_code=LEDGER_STATUS.get(error.code, 400), detail=error.to_dict())
    return {"ok": True, "portfolio": engine.get_ledger(portfolio_id).valuation()}


def _contest_view(engine: ContestEngine, contest_id: str, include_participants: bool) -> Dict[str, Any]:
    contest = engine.get_contest(contest_id)
    data = contest.to_dict(include_participants=include_participants)
    data["flags"] = engine.flags(contest_id).to_dict()
    return data


# ─── Routes: Market ───────────────────────────────────────────────────────────

@app.get("/health")
async def health() -> Dict[str, Any]:
    engine = get_engine()
    return {"status": "ok", **engine.status()}


@app.get("/market/status")
async def market_status() -> Dict[str, Any]:
    gateway = get_engine().gateway
    data = gateway.market_status().to_dict()
    data["provenance"] = gateway.data_provenance()
    return data


@app.get("/market/quotes")
async def market_quotes(symbols: str) -> Dict[str, Any]:
    wanted = [s.strip().upper() for s in symbols.split(",") if s.strip()]
    if not wanted:
        raise HTTPException(status_code=422, detail="symbols must name at least one symbol")
    gateway = get_engine().gateway
    quotes = await gateway.get_quotes(wanted)
    return {"quotes": [q.to_dict() for q in quotes.values()], "provenance": gateway.data_provenance()}


@app.get("/market/indices")
async def market_indices() -> List[Dict[str, Any]]:
    indices = await get_engine().gateway.get_indices()
    return [i.to_dict() for i in indices]


@app.get("/market/instruments")
async def market_instruments(
    exchange: Optional[str] = None, sector: Optional[str] = None
) -> List[Dict[str, Any]]:
    exchanges = [exchange] if exchange else None
    try:
        instruments = await get_engine().gateway.list_instruments(exchanges, sector=sector)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return [i.to_dict() for i in instruments]


@app.get("/market/sectors")
async def market_sectors() -> List[str]:
    return list_sectors()


# ─── Routes: Contests ─────────────────────────────────────────────────────────

@app.get("/contests")
async def list_contests() -> List[Dict[str, Any]]:
    engine = get_engine()
    return [_contest_view(engine, cid, include_participants=False) for cid in engine.contests]


@app.post("/contests", status_code=201)
async def create_contest(payload: ContestCreateIn) -> Dict[str, Any]:
    engine = get_engine()
    options = payload.model_dump()
    try:
        contest = engine.create_contest(
            options.pop("title"),
            options.pop("registration_deadline"),
            options.pop("market_start_time"),
            options.pop("market_end_time"),
            options.pop("end_time"),
            contest_id=options.pop("contest_id"),
            **options,
        )
    except ContestError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _contest_view(engine, contest.contest_id, include_participants=True)


@app.get("/contests/{contest_id}")
async def get_contest(contest_id: str) -> Dict[str, Any]:
    return _contest_view(get_engine(), contest_id, include_participants=True)


@app.get("/contests/{contest_id}/instruments")
async def contest_instruments(contest_id: str) -> List[Dict[str, Any]]:
    instruments = await get_engine().contest_instruments(contest_id)
    return [i.to_dict() for i in instruments]


@app.get("/contests/{contest_id}/leaderboard")
async def contest_leaderboard(contest_id: str) -> Dict[str, Any]:
    engine = get_engine()
    contest = engine.get_contest(contest_id)
    return {
        "contest_id": contest_id,
        "phase": contest.phase.value,
        "standings": engine.leaderboard(contest_id),
    }


@app.post("/contests/{contest_id}/join", status_code=201)
async def join_contest(contest_id: str, payload: JoinIn) -> Dict[str, Any]:
    engine = get_engine()
    participant = engine.join_contest(contest_id, payload.user_id, payload.display_name, payload.avatar)
    return participant.to_dict()


# ─── Routes: Portfolios ───────────────────────────────────────────────────────

@app.get("/portfolios/{portfolio_id}")
async def get_portfolio(portfolio_id: str) -> Dict[str, Any]:
    return get_engine().get_ledger(portfolio_id).valuation()


@app.post("/portfolios/{portfolio_id}/buy")
async def buy(portfolio_id: str, payload: BuyIn) -> Dict[str, Any]:
    engine = get_engine()
    result = await engine.buy(portfolio_id, payload.symbol, payload.quantity, payload.price)
    return _ledger_response(result, engine, portfolio_id)


@app.post("/portfolios/{portfolio_id}/top-picks")
async def top_picks(portfolio_id: str, payload: TopPicksIn) -> Dict[str, Any]:
    engine = get_engine()
    result = engine.set_top_picks(portfolio_id, payload.first, payload.second, payload.third)
    return _ledger_response(result, engine, portfolio_id)


# ─── Error Handlers ───────────────────────────────────────────────────────────

@app.exception_handler(ContestNotFound)
async def not_found_handler(request: Any, exc: ContestNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ContestError)
async def contest_error_handler(request: Any, exc: ContestError) -> JSONResponse:
    logger.info("Contest request rejected: {}", exc)
    return JSONResponse(status_code=409, content={"detail": str(exc)})
