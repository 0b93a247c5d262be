"""
tick_stream.py — Periodic quote delivery to a single subscriber.

A TickSubscription owns one background asyncio task that asks the gateway
for a batch of quotes every `interval` seconds and hands each quote to the
callback. The callback may be a plain function or a coroutine function.

    sub = gateway.subscribe_ticks(on_tick, symbols=["INFY", "TCS"])
    ...
    sub.close()     # stops delivery; calling again is a no-op
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Awaitable, Callable, List, Optional, Union

from loguru import logger

from market_models import Quote

TickCallback = Callable[[Quote], Union[None, Awaitable[None]]]
BatchFetcher = Callable[[], Awaitable[List[Quote]]]


class TickSubscription:
    """Handle for a running tick stream."""

    def __init__(
        self,
        fetch: BatchFetcher,
        on_tick: TickCallback,
        interval: float,
        name: str = "ticks",
    ) -> None:
        self._fetch = fetch
        self._on_tick = on_tick
        self.interval = interval
        self.name = name
        self.delivered = 0
        self._closed = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "TickSubscription":
        """Schedule the delivery task on the running loop."""
        if self._task is None and not self._closed:
            self._task = asyncio.create_task(self._run(), name=f"tick-subscription:{self.name}")
            logger.debug("Tick subscription {} started ({}s)", self.name, self.interval)
        return self

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop delivery. Idempotent."""
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.debug("Tick subscription {} closed after {} ticks", self.name, self.delivered)

    async def aclose(self) -> None:
        """close() and wait for the task to finish unwinding."""
        self.close()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _deliver(self, quote: Quote) -> None:
        result = self._on_tick(quote)
        if inspect.isawaitable(result):
            await result
        self.delivered += 1

    async def _run(self) -> None:
        while not self._closed:
            try:
                quotes = await self._fetch()
                for quote in quotes:
                    if self._closed:
                        return
                    await self._deliver(quote)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error("Tick subscription {} error: {}", self.name, exc)
            await asyncio.sleep(self.interval)
