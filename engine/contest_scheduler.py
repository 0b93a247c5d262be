"""
contest_scheduler.py — Time-driven contest phases.

    registration → portfolio_selection → live → completed

derive_phase() is pure: the phase for an instant depends only on that
instant and the contest's four timestamps, so a scheduler that misses ticks
catches up on the next one. ContestScheduler applies the side effects:
  - records the observed phase, never moving it backwards
  - locks every participant ledger once the contest leaves registration
  - notifies transition listeners (the engine settles on `completed`)

Usage:
    scheduler = ContestScheduler(ledgers_for=engine.ledgers_for_contest)
    scheduler.register(contest)
    scheduler.tick(now)              # or: await scheduler.start()
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from loguru import logger

from contest_models import Contest, ContestPhase
from market_hours import Clock, utc_now
from portfolio_ledger import PortfolioLedger

DEFAULT_PHASE_CHECK_INTERVAL = 60.0


# ─── Pure Phase Derivation ────────────────────────────────────────────────────

def derive_phase(now: datetime, contest: Contest) -> ContestPhase:
    if now < contest.registration_deadline:
        return ContestPhase.REGISTRATION
    if now < contest.market_start_time:
        return ContestPhase.PORTFOLIO_SELECTION
    if now < contest.end_time:
        return ContestPhase.LIVE
    return ContestPhase.COMPLETED


@dataclass(frozen=True)
class PhaseFlags:
    """Booleans the UI uses to gate controls."""
    phase: ContestPhase
    registration_open: bool
    selection_open: bool
    market_live: bool
    is_locked: bool

    def to_dict(self) -> dict:
        return {
            "phase": self.phase.value,
            "registration_open": self.registration_open,
            "selection_open": self.selection_open,
            "market_live": self.market_live,
            "is_locked": self.is_locked,
        }


def phase_flags(now: datetime, contest: Contest) -> PhaseFlags:
    """
    Flags for an instant. The market is live only between market_start_time
    and market_end_time; the remainder of `live` up to end_time is the
    settlement window.
    """
    phase = derive_phase(now, contest)
    return PhaseFlags(
        phase=phase,
        registration_open=phase is ContestPhase.REGISTRATION,
        selection_open=phase is ContestPhase.REGISTRATION,
        market_live=phase is ContestPhase.LIVE and now < contest.market_end_time,
        is_locked=phase is not ContestPhase.REGISTRATION,
    )


@dataclass(frozen=True)
class PhaseTransition:
    contest_id: str
    previous: ContestPhase
    current: ContestPhase
    at: datetime

    def to_dict(self) -> dict:
        return {
            "contest_id": self.contest_id,
            "previous": self.previous.value,
            "current": self.current.value,
            "at": self.at.isoformat(),
        }


TransitionListener = Callable[[Contest, PhaseTransition], None]
LedgerProvider = Callable[[str], Iterable[PortfolioLedger]]


# ─── Scheduler ────────────────────────────────────────────────────────────────

class ContestScheduler:
    """
    Periodically re-derives contest phases and applies their side effects.

    Parameters
    ----------
    ledgers_for : callable
        contest_id → iterable of that contest's PortfolioLedgers.
    clock : Clock
    interval : float
        Seconds between ticks when run as a background task.
    """

    def __init__(
        self,
        ledgers_for: LedgerProvider,
        clock: Clock = utc_now,
        interval: float = DEFAULT_PHASE_CHECK_INTERVAL,
    ) -> None:
        self._ledgers_for = ledgers_for
        self.clock = clock
        self.interval = interval
        self._contests: Dict[str, Contest] = {}
        self._locked: Set[str] = set()
        self._listeners: List[TransitionListener] = []
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    # ── Registration ──────────────────────────────────────────────────────

    def register(self, contest: Contest) -> None:
        self._contests[contest.contest_id] = contest
        # A restored contest past registration already had its ledgers locked
        if contest.phase.order >= ContestPhase.PORTFOLIO_SELECTION.order:
            self._locked.add(contest.contest_id)

    def unregister(self, contest_id: str) -> None:
        self._contests.pop(contest_id, None)
        self._locked.discard(contest_id)

    def add_listener(self, listener: TransitionListener) -> None:
        self._listeners.append(listener)

    def is_locked(self, contest_id: str) -> bool:
        return contest_id in self._locked

    # ── Tick ──────────────────────────────────────────────────────────────

    def tick(self, now: Optional[datetime] = None) -> List[PhaseTransition]:
        """Evaluate every registered contest at `now`; return the transitions applied."""
        now = now or self.clock()
        self.ticks += 1
        transitions = []
        for contest in list(self._contests.values()):
            transition = self.evaluate(contest, now)
            if transition is not None:
                transitions.append(transition)
        return transitions

    def evaluate(self, contest: Contest, now: datetime) -> Optional[PhaseTransition]:
        """Advance one contest to its phase at `now` and lock its ledgers if due."""
        transition = self._advance(contest, now)
        if (
            contest.phase.order >= ContestPhase.PORTFOLIO_SELECTION.order
            and contest.contest_id not in self._locked
        ):
            self._lock_ledgers(contest)
        return transition

    def _advance(self, contest: Contest, now: datetime) -> Optional[PhaseTransition]:
        derived = derive_phase(now, contest)
        if derived is contest.phase:
            return None
        if derived.order < contest.phase.order:
            logger.warning(
                "Contest {}: ignoring phase regression {} → {} at {}",
                contest.contest_id, contest.phase.value, derived.value, now.isoformat(),
            )
            return None

        transition = PhaseTransition(contest.contest_id, contest.phase, derived, now)
        contest.phase = derived
        logger.info("Contest {} phase {} → {}", contest.contest_id,
                    transition.previous.value, transition.current.value)
        for listener in self._listeners:
            try:
                listener(contest, transition)
            except Exception as exc:
                logger.exception("Phase listener failed for contest {}: {}", contest.contest_id, exc)
        return transition

    def _lock_ledgers(self, contest: Contest) -> None:
        count = 0
        for ledger in self._ledgers_for(contest.contest_id):
            ledger.lock()
            count += 1
        self._locked.add(contest.contest_id)
        logger.info("Contest {}: locked {} portfolios", contest.contest_id, count)

    # ── Background Loop ───────────────────────────────────────────────────

    async def start(self) -> None:
        if self._running:
            logger.warning("ContestScheduler already running")
            return
        self._running = True
        logger.info("ContestScheduler starting (interval={}s, contests={})",
                    self.interval, len(self._contests))
        self._task = asyncio.create_task(self.run())

    async def run(self) -> None:
        self._running = True
        while self._running:
            try:
                self.tick()
            except Exception as exc:
                logger.exception("Unhandled error in phase tick: {}", exc)
            if self._running:
                await asyncio.sleep(self.interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("ContestScheduler stopped after {} ticks", self.ticks)

    @property
    def is_running(self) -> bool:
        return self._running
