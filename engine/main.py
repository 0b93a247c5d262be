#!/usr/bin/env python3
"""
main.py — Fantasy Contest Engine Entry Point

Starts the contest engine:
1. Loads configuration from the environment (.env supported)
2. Restores contests and portfolios from the state store
3. Establishes the broker session when live credentials are configured
4. Runs the phase scheduler, EOD refresh and tick loops
5. Optionally serves the HTTP API with uvicorn

Usage:
    python main.py [--serve] [--port 8001] [--simulated] [--once]

Environment:
    See config.py for the variables read.
"""

import argparse
import asyncio
import json
import os
import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger

from config import EngineConfig
from contest_api import create_app
from contest_engine import ContestEngine
from errors import SessionError

load_dotenv()


def setup_logging(log_level: str = "INFO") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    logger.add(
        "logs/engine.log",
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )


async def run_once(engine: ContestEngine) -> None:
    """Refresh EOD prices, tick the scheduler once and print status."""
    await engine.gateway.refresh_eod_prices_if_stale()
    engine.scheduler.tick()
    quotes = await engine.gateway.get_quotes(engine.gateway.tracked_symbols)
    engine.apply_quotes(quotes.values())
    engine.save()
    print(json.dumps(engine.status(), indent=2, default=str))


async def serve(engine: ContestEngine, port: int) -> None:
    """Run the engine loops and the API server on one event loop."""
    server = uvicorn.Server(uvicorn.Config(create_app(engine), host="0.0.0.0", port=port, log_level="warning"))
    await engine.start()
    try:
        await server.serve()
    finally:
        await engine.stop()


async def run_forever(engine: ContestEngine) -> None:
    await engine.start()
    try:
        while engine.is_running:
            await asyncio.sleep(3600)
    finally:
        await engine.stop()


async def main() -> None:
    parser = argparse.ArgumentParser(description="Fantasy Contest Engine")
    parser.add_argument("--serve", action="store_true",
                        help="Serve the HTTP API alongside the engine loops")
    parser.add_argument("--port", type=int, default=None,
                        help="API port (default: API_PORT or 8001)")
    parser.add_argument("--simulated", action="store_true",
                        help="Force simulated market data even if credentials are set")
    parser.add_argument("--db", default=None,
                        help="State database path (default: STATE_DB_PATH or in-memory)")
    parser.add_argument("--once", action="store_true",
                        help="Run one refresh/tick cycle then exit")
    args = parser.parse_args()

    config = EngineConfig.from_env()
    if args.simulated:
        config.use_simulated_data = True
    if args.db:
        config.state_db_path = args.db

    # Create logs directory
    os.makedirs("logs", exist_ok=True)
    setup_logging(config.log_level)

    engine = ContestEngine(config)
    engine.load()

    if engine.gateway.is_live_source_configured():
        try:
            await engine.gateway.ensure_session()
        except SessionError as e:
            logger.error(f"Startup failed: {e}")
            sys.exit(1)
    else:
        logger.info("Broker credentials not configured; using simulated market data")

    status = engine.gateway.market_status()
    logger.info(f"Market: {status.reason}")

    try:
        if args.once:
            await run_once(engine)
        elif args.serve:
            await serve(engine, args.port or config.api_port)
        else:
            await run_forever(engine)
    except KeyboardInterrupt:
        logger.info("Engine shutting down...")


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
