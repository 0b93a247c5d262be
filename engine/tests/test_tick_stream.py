"""
Tests for tick_stream.py — delivery, callback kinds, error survival, close.
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import asyncio

import pytest

from market_models import DataSource, Quote
from tick_stream import TickSubscription


def make_quotes():
    return [
        Quote("INFY", 1432.15, 1.0, 0.07, DataSource.SIMULATED),
        Quote("TCS", 3456.20, -2.0, -0.06, DataSource.SIMULATED),
    ]


async def fetch():
    return make_quotes()


class TestTickSubscription:

    @pytest.mark.asyncio
    async def test_sync_callback_receives_ticks(self):
        received = []
        sub = TickSubscription(fetch, received.append, interval=0.01).start()
        await asyncio.sleep(0.05)
        await sub.aclose()
        assert len(received) >= 2
        assert received[0].symbol == "INFY"
        assert sub.delivered == len(received)

    @pytest.mark.asyncio
    async def test_async_callback(self):
        received = []

        async def on_tick(quote):
            received.append(quote.symbol)

        sub = TickSubscription(fetch, on_tick, interval=0.01).start()
        await asyncio.sleep(0.03)
        await sub.aclose()
        assert received[:2] == ["INFY", "TCS"]

    @pytest.mark.asyncio
    async def test_fetch_errors_do_not_stop_stream(self):
        calls = {"n": 0}

        async def flaky():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("upstream down")
            return make_quotes()

        received = []
        sub = TickSubscription(flaky, received.append, interval=0.01).start()
        await asyncio.sleep(0.06)
        await sub.aclose()
        assert calls["n"] >= 2
        assert received

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        received = []
        sub = TickSubscription(fetch, received.append, interval=0.01).start()
        await asyncio.sleep(0.02)
        sub.close()
        sub.close()
        await sub.aclose()
        count = len(received)
        await asyncio.sleep(0.03)
        assert sub.is_closed
        assert len(received) == count

    @pytest.mark.asyncio
    async def test_closed_subscription_does_not_start(self):
        sub = TickSubscription(fetch, lambda q: None, interval=0.01)
        sub.close()
        sub.start()
        await asyncio.sleep(0.02)
        assert sub.delivered == 0
